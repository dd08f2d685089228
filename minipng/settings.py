from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from PySide6.QtCore import QSettings

from .compress import Compressor
from .models import DEFAULT_QUALITY, Quality, normalize_quality
from .replace import ReplaceManager
from .scheduler import DEFAULT_CONCURRENCY, JobScheduler
from .tools import ToolRegistry
from .tracker import JobTracker

ORGANIZATION = "MiniPNG"
APPLICATION = "MiniPNG"


@dataclass(frozen=True)
class EngineSettings:
    quality: Quality = DEFAULT_QUALITY
    replace_original: bool = False
    concurrency: int = DEFAULT_CONCURRENCY
    scratch_dir: Path | None = None
    fallback: bool = False


def open_store() -> QSettings:
    return QSettings(ORGANIZATION, APPLICATION)


def load_settings(store: QSettings | None = None) -> EngineSettings:
    if store is None:
        store = open_store()
    scratch_dir = str(store.value("scratch_dir", "") or "")
    return EngineSettings(
        quality=normalize_quality(store.value("quality", DEFAULT_QUALITY.value)),
        replace_original=to_bool(store.value("replace_original", False)),
        concurrency=to_int(store.value("concurrency", DEFAULT_CONCURRENCY), DEFAULT_CONCURRENCY),
        scratch_dir=Path(scratch_dir) if scratch_dir else None,
        fallback=to_bool(store.value("fallback", False)),
    )


def save_settings(values: EngineSettings, store: QSettings | None = None) -> None:
    if store is None:
        store = open_store()
    store.setValue("quality", values.quality.value)
    store.setValue("replace_original", values.replace_original)
    store.setValue("concurrency", values.concurrency)
    store.setValue("scratch_dir", str(values.scratch_dir) if values.scratch_dir else "")
    store.setValue("fallback", values.fallback)
    store.sync()


def to_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def to_int(value: object, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 1 else default


def create_tracker(values: EngineSettings, tools: ToolRegistry | None = None) -> JobTracker:
    compressor = Compressor(
        tools or ToolRegistry(),
        replacer=ReplaceManager(values.scratch_dir),
        fallback=values.fallback,
    )
    return JobTracker(
        JobScheduler(compressor),
        quality=values.quality,
        replace_original=values.replace_original,
    )
