from __future__ import annotations

from contextlib import closing
from pathlib import Path
import logging
import queue
import threading
from typing import Callable, Iterable, Optional

from .errors import BatchRunning, InvalidTransition
from .models import (
    DEFAULT_QUALITY,
    BatchAggregate,
    CompressionJob,
    ImageFormat,
    JobStatus,
    JobView,
    Quality,
    iter_image_files,
)
from .scheduler import DEFAULT_CONCURRENCY, Command, Dispatched, Finished, JobScheduler, SchedulerEvent

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: {JobStatus.PENDING},
    JobStatus.FAILED: {JobStatus.PENDING},
}

EventCallback = Callable[[SchedulerEvent, Optional[JobView]], None]


class JobTracker:
    """Owns the batch's jobs and is the only code that changes their status.

    While :meth:`run` is in progress, changes requested from other threads are
    posted to the coordinator's channel and applied between completions. When
    no batch is running they apply immediately.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        quality: Quality = DEFAULT_QUALITY,
        replace_original: bool = False,
    ) -> None:
        self.scheduler = scheduler
        self.quality = quality
        self.replace_original = replace_original
        self._jobs: list[CompressionJob] = []
        self._channel: queue.Queue = queue.Queue()
        self._lock = threading.RLock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def add_sources(self, paths: Iterable[Path]) -> list[str]:
        """Queue image files, expanding directories; returns the new job ids."""
        candidates: list[Path] = []
        for path in paths:
            path = Path(path)
            if path.is_dir():
                candidates.extend(iter_image_files(path))
            elif path.is_file():
                candidates.append(path)
            else:
                logger.warning("跳过不存在的路径 %s", path)
        known = {job.source.resolve() for job in list(self._jobs)}
        jobs: list[CompressionJob] = []
        for path in candidates:
            key = path.resolve()
            if key in known:
                continue
            known.add(key)
            try:
                size = path.stat().st_size
            except OSError as exc:
                logger.warning("无法读取文件大小 %s: %s", path, exc)
                continue
            jobs.append(CompressionJob(source=path, original_size=size, image_format=ImageFormat.from_path(path)))
        if jobs:
            self._submit(lambda: self._append(jobs))
        return [job.job_id for job in jobs]

    def remove(self, job_id: str) -> None:
        with self._lock:
            if self._running:
                raise BatchRunning("压缩进行中，无法移除图片")
            self._jobs = [job for job in self._jobs if job.job_id != job_id]

    def clear(self) -> None:
        with self._lock:
            if self._running:
                raise BatchRunning("压缩进行中，无法清空列表")
            self._jobs = []

    def set_quality(self, quality: Quality) -> None:
        self._submit(lambda: self._apply_quality(quality))

    def reset_completed(self) -> None:
        self._submit(self._reset_completed)

    def set_replace_original(self, replace_original: bool) -> None:
        def apply() -> None:
            self.replace_original = replace_original

        self._submit(apply)

    def output_path_for(self, job: CompressionJob | JobView) -> Path:
        if self.replace_original:
            return job.source
        return job.source.with_name(f"{job.source.stem}-min{job.source.suffix}")

    def views(self) -> list[JobView]:
        return [job.snapshot() for job in list(self._jobs)]

    def view(self, job_id: str) -> JobView | None:
        job = self._find(job_id)
        return job.snapshot() if job is not None else None

    def aggregate(self) -> BatchAggregate:
        return BatchAggregate.from_views(self.views())

    def run(self, concurrency: int = DEFAULT_CONCURRENCY, on_event: EventCallback | None = None) -> BatchAggregate:
        """Compress every job that is not already completed, blocking until done."""
        with self._lock:
            if self._running:
                raise BatchRunning("压缩已在进行中")
            self._running = True
        try:
            quality = self.quality
            queued = []
            for job in self._jobs:
                if job.status is JobStatus.FAILED:
                    self._transition(job, JobStatus.PENDING, error=None)
                if job.status is JobStatus.PENDING:
                    job.output = self.output_path_for(job)
                    queued.append(job.snapshot())
            logger.info("开始压缩 %d 张图片（%s，并发 %d）", len(queued), quality.display_name, concurrency)
            with closing(self.scheduler.run(queued, quality, concurrency, channel=self._channel)) as events:
                for event in events:
                    view = self._apply(event)
                    if on_event is not None:
                        on_event(event, view)
        finally:
            with self._lock:
                self._running = False
                self._drain()
                self._fail_interrupted()
        summary = self.aggregate()
        logger.info(
            "完成：成功 %d 张，失败 %d 张，节省 %s",
            summary.completed_count,
            summary.failed_count,
            summary.formatted_saved,
        )
        return summary

    def _submit(self, action: Callable[[], None]) -> None:
        with self._lock:
            if self._running:
                self._channel.put(Command(action))
                return
            action()

    def _drain(self) -> None:
        while True:
            try:
                event = self._channel.get_nowait()
            except queue.Empty:
                return
            self._apply(event)

    def _fail_interrupted(self) -> None:
        for job in self._jobs:
            if job.status is JobStatus.RUNNING:
                logger.warning("%s 压缩被中断", job.source.name)
                self._transition(job, JobStatus.FAILED, error="压缩被中断")

    def _apply(self, event: SchedulerEvent) -> JobView | None:
        if isinstance(event, Command):
            event.action()
            return None
        job = self._find(event.job_id)
        if job is None:
            return None
        if isinstance(event, Dispatched):
            self._transition(job, JobStatus.RUNNING)
        elif isinstance(event, Finished):
            if event.success:
                self._transition(
                    job,
                    JobStatus.COMPLETED,
                    output=event.output,
                    compressed_size=event.compressed_size,
                    engine=event.engine,
                )
            else:
                self._transition(job, JobStatus.FAILED, error=event.error)
        return job.snapshot()

    def _append(self, jobs: list[CompressionJob]) -> None:
        known = {job.source.resolve() for job in self._jobs}
        for job in jobs:
            key = job.source.resolve()
            if key in known:
                continue
            known.add(key)
            self._jobs.append(job)

    def _apply_quality(self, quality: Quality) -> None:
        if quality is self.quality:
            return
        self.quality = quality
        self._reset_completed()

    def _reset_completed(self) -> None:
        for job in self._jobs:
            if job.status is JobStatus.COMPLETED:
                self._transition(job, JobStatus.PENDING, compressed_size=None, output=None, engine=None)

    def _find(self, job_id: str) -> CompressionJob | None:
        for job in list(self._jobs):
            if job.job_id == job_id:
                return job
        return None

    @staticmethod
    def _transition(job: CompressionJob, status: JobStatus, **fields: object) -> None:
        if status not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransition(f"{job.source.name}: {job.status.value} -> {status.value}")
        for name, value in fields.items():
            setattr(job, name, value)
        job.status = status
