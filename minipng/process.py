from __future__ import annotations

from pathlib import Path
import logging
import subprocess
import sys
import threading
from typing import Sequence

from .errors import ProcessFailed

logger = logging.getLogger(__name__)

WINDOWS_CREATIONFLAGS = (
    getattr(subprocess, "CREATE_NO_WINDOW", 0) if sys.platform.startswith("win") else 0
)


def run_tool(executable: Path, args: Sequence[str], accepted: Sequence[int] = (0,)) -> int:
    """Run a single codec tool, raising ProcessFailed unless its exit code is accepted."""
    command = [str(executable), *args]
    logger.debug("运行: %s", command)
    try:
        result = subprocess.run(
            command,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            creationflags=WINDOWS_CREATIONFLAGS,
        )
    except OSError as exc:
        raise ProcessFailed(f"无法启动 {executable.name}: {exc}, 路径: {executable}") from exc
    if result.returncode not in accepted:
        message = _decode(result.stderr) or "未知错误"
        raise ProcessFailed(message, result.returncode)
    return result.returncode


def run_pipeline(
    producer: Path,
    producer_args: Sequence[str],
    consumer: Path,
    consumer_args: Sequence[str],
) -> None:
    """Run ``producer | consumer``.

    The producer's stdout feeds the consumer's stdin through an OS pipe and each
    stderr is captured on its own. The consumer is never started when the
    producer cannot be launched, and the producer is terminated when the
    consumer cannot be launched. A failing producer is reported in preference
    to a failing consumer.
    """
    producer_command = [str(producer), *producer_args]
    consumer_command = [str(consumer), *consumer_args]
    logger.debug("运行管道: %s | %s", producer_command, consumer_command)
    try:
        first = subprocess.Popen(
            producer_command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            creationflags=WINDOWS_CREATIONFLAGS,
        )
    except OSError as exc:
        raise ProcessFailed(
            f"无法启动 {producer.name}: {exc}, 路径: {producer}", stage="producer"
        ) from exc
    try:
        second = subprocess.Popen(
            consumer_command,
            stdin=first.stdout,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            creationflags=WINDOWS_CREATIONFLAGS,
        )
    except OSError as exc:
        first.terminate()
        first.communicate()
        raise ProcessFailed(
            f"无法启动 {consumer.name}: {exc}, 路径: {consumer}", stage="consumer"
        ) from exc
    # The consumer holds its own copy; closing ours lets the producer see EPIPE.
    first.stdout.close()
    producer_errors: list[bytes] = []
    reader = threading.Thread(
        target=lambda: producer_errors.append(first.stderr.read()),
        daemon=True,
    )
    reader.start()
    _, consumer_stderr = second.communicate()
    first.wait()
    reader.join()
    first.stderr.close()
    if first.returncode != 0:
        message = _decode(b"".join(producer_errors)) or f"{producer.name} 解码失败"
        raise ProcessFailed(
            f"{producer.name} 错误 ({first.returncode}): {message}",
            first.returncode,
            stage="producer",
        )
    if second.returncode != 0:
        message = _decode(consumer_stderr) or f"{consumer.name} 编码失败"
        raise ProcessFailed(
            f"{consumer.name} 错误 ({second.returncode}): {message}",
            second.returncode,
            stage="consumer",
        )


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace").strip()
