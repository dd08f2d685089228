from __future__ import annotations

import argparse
from dataclasses import replace
import logging
from pathlib import Path
import sys

from PySide6.QtCore import QCoreApplication, QObject, QThread, Signal

from .models import BatchAggregate, JobStatus, JobView, Quality
from .scheduler import Dispatched, Finished, SchedulerEvent
from .settings import EngineSettings, create_tracker, load_settings, save_settings
from .tracker import JobTracker

logger = logging.getLogger(__name__)


class BatchWorker(QObject):
    dispatched = Signal(str)
    progress = Signal(int, object)
    finished = Signal(object)
    failed = Signal(str)

    def __init__(self, tracker: JobTracker, concurrency: int) -> None:
        super().__init__()
        self.tracker = tracker
        self.concurrency = concurrency
        self.total = 0
        self.done = 0

    def run(self) -> None:
        self.total = sum(
            1 for view in self.tracker.views() if view.status in {JobStatus.PENDING, JobStatus.FAILED}
        )
        self.done = 0
        try:
            summary = self.tracker.run(self.concurrency, self.on_event)
        except Exception as exc:
            logger.exception("批量压缩中断")
            self.failed.emit(str(exc))
            return
        self.finished.emit(summary)

    def on_event(self, event: SchedulerEvent, view: JobView | None) -> None:
        if isinstance(event, Dispatched):
            self.dispatched.emit(event.job_id)
        elif isinstance(event, Finished) and view is not None:
            self.done += 1
            percent = int(self.done * 100 / self.total) if self.total else 100
            self.progress.emit(percent, view)


class BatchRunner(QObject):
    def __init__(self, app: QCoreApplication, tracker: JobTracker, concurrency: int) -> None:
        super().__init__()
        self.app = app
        self.tracker = tracker
        self.concurrency = concurrency
        self.thread: QThread | None = None
        self.worker: BatchWorker | None = None
        self.summary: BatchAggregate | None = None
        self.error: str | None = None

    def start(self) -> None:
        if self.thread is not None:
            return
        self.thread = QThread()
        self.worker = BatchWorker(self.tracker, self.concurrency)
        self.worker.moveToThread(self.thread)
        self.thread.started.connect(self.worker.run)
        self.worker.progress.connect(self.on_progress)
        self.worker.finished.connect(self.on_finished)
        self.worker.failed.connect(self.on_failed)
        self.worker.finished.connect(self.thread.quit)
        self.worker.failed.connect(self.thread.quit)
        self.thread.finished.connect(self.on_thread_finished)
        self.thread.start()

    def on_progress(self, percent: int, view: JobView) -> None:
        if view.status is JobStatus.COMPLETED:
            ratio = view.compression_ratio or 0.0
            logger.info("[%3d%%] %s 压缩完成，节省 %.1f%%（%s）", percent, view.file_name, ratio, view.engine)
        else:
            logger.warning("[%3d%%] %s 压缩失败：%s", percent, view.file_name, view.error)

    def on_finished(self, summary: BatchAggregate) -> None:
        self.summary = summary

    def on_failed(self, message: str) -> None:
        self.error = message

    def on_thread_finished(self) -> None:
        if self.thread is not None:
            self.thread.wait()
        self.thread = None
        self.worker = None
        self.app.quit()


def format_tool_status(tracker: JobTracker) -> str:
    status = tracker.scheduler.compressor.tools.status()
    parts = [f"{name}={'可用' if available else '缺失'}" for name, available in status.items()]
    return f"压缩工具：{'，'.join(parts)}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="minipng",
        description="批量压缩 PNG / JPEG / WebP / GIF 图片",
    )
    parser.add_argument("paths", nargs="*", type=Path, help="图片文件或目录")
    parser.add_argument("--quality", choices=[quality.value for quality in Quality], help="压缩质量")
    parser.add_argument("--replace", action="store_true", default=None, help="直接替换原文件")
    parser.add_argument("--concurrency", type=positive_int, help="最大并发数")
    parser.add_argument("--scratch-dir", type=Path, help="替换模式下临时文件目录")
    parser.add_argument("--fallback", action="store_true", default=None, help="缺少工具时使用 Pillow")
    parser.add_argument("--save-settings", action="store_true", help="保存本次选项为默认值")
    parser.add_argument("--tools", action="store_true", help="显示压缩工具状态")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    return parser


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("必须为正整数")
    return number


def apply_arguments(values: EngineSettings, args: argparse.Namespace) -> EngineSettings:
    overrides: dict[str, object] = {}
    if args.quality is not None:
        overrides["quality"] = Quality(args.quality)
    if args.replace is not None:
        overrides["replace_original"] = args.replace
    if args.concurrency is not None:
        overrides["concurrency"] = args.concurrency
    if args.scratch_dir is not None:
        overrides["scratch_dir"] = args.scratch_dir
    if args.fallback is not None:
        overrides["fallback"] = args.fallback
    return replace(values, **overrides)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = QCoreApplication.instance() or QCoreApplication([])
    values = apply_arguments(load_settings(), args)
    if args.save_settings:
        save_settings(values)
    tracker = create_tracker(values)
    logger.info(format_tool_status(tracker))
    if args.tools:
        return 0
    if not tracker.add_sources(args.paths):
        logger.error("未找到可压缩图片")
        return 1
    runner = BatchRunner(app, tracker, values.concurrency)
    runner.start()
    app.exec()
    if runner.error is not None:
        logger.error("压缩中断：%s", runner.error)
        return 1
    summary = runner.summary or tracker.aggregate()
    logger.info(
        "完成：成功 %d 张，失败 %d 张，节省 %s，平均压缩率 %.1f%%",
        summary.completed_count,
        summary.failed_count,
        summary.formatted_saved,
        summary.average_ratio,
    )
    return 2 if summary.failed_count else 0


if __name__ == "__main__":
    sys.exit(main())
