from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import shutil
import uuid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutputPlan:
    source: Path
    target: Path
    write_path: Path

    @property
    def in_place(self) -> bool:
        return self.write_path != self.target


class ReplaceManager:
    """Decides where a codec writes and swaps in-place results over the source.

    When the requested output is the source itself the codec writes a uniquely
    named temporary file instead. The scratch directory defaults to the
    source's own directory so the final swap is a single ``os.replace``.
    """

    def __init__(self, scratch_dir: Path | None = None) -> None:
        self.scratch_dir = scratch_dir

    def plan(self, requested_output: Path, source: Path) -> OutputPlan:
        if not _same_path(requested_output, source):
            return OutputPlan(source, requested_output, requested_output)
        scratch = self.scratch_dir or source.parent
        temp = scratch / f".minipng-{uuid.uuid4().hex}{source.suffix.lower()}"
        return OutputPlan(source, source, temp)

    def commit(self, plan: OutputPlan) -> Path:
        if not plan.in_place:
            return plan.target
        if _same_device(plan.write_path, plan.target):
            os.replace(plan.write_path, plan.target)
        else:
            # Not crash-safe: the original is gone until the move completes.
            plan.target.unlink()
            shutil.move(str(plan.write_path), str(plan.target))
        logger.debug("已替换原文件 %s", plan.target)
        return plan.target

    def discard(self, plan: OutputPlan) -> None:
        if not plan.in_place:
            return
        try:
            plan.write_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("无法删除临时文件 %s: %s", plan.write_path, exc)


def _same_path(left: Path, right: Path) -> bool:
    return os.path.normcase(os.path.abspath(left)) == os.path.normcase(os.path.abspath(right))


def _same_device(left: Path, right: Path) -> bool:
    try:
        return left.parent.stat().st_dev == right.parent.stat().st_dev
    except OSError:
        return False
