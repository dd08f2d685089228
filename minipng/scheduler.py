from __future__ import annotations

from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
import logging
import queue
from typing import Callable, Iterable, Iterator, Protocol, Union

from .errors import CompressionError
from .models import CompressResult, JobStatus, JobView, Quality

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4


class SupportsCompress(Protocol):
    def compress(self, job: JobView, quality: Quality) -> CompressResult: ...


@dataclass(frozen=True)
class Dispatched:
    job_id: str


@dataclass(frozen=True)
class Finished:
    job_id: str
    output: Path | None = None
    compressed_size: int | None = None
    engine: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Command:
    action: Callable[[], None]


SchedulerEvent = Union[Dispatched, Finished, Command]


class JobScheduler:
    """Keeps up to ``concurrency`` jobs compressing at once.

    :meth:`run` is a generator consumed by the coordinating thread. It yields
    ``Dispatched`` right before a job is handed to the worker pool and
    ``Finished`` as each worker reports back, refilling the freed slot from the
    pending queue. Workers never touch job state; they only post to the channel,
    which may also carry ``Command`` events from the owner of the jobs.
    """

    def __init__(self, compressor: SupportsCompress) -> None:
        self.compressor = compressor

    def run(
        self,
        jobs: Iterable[JobView],
        quality: Quality,
        concurrency: int = DEFAULT_CONCURRENCY,
        channel: queue.Queue | None = None,
    ) -> Iterator[SchedulerEvent]:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        pending = deque(job for job in jobs if job.status is JobStatus.PENDING)
        if not pending:
            return
        channel = channel if channel is not None else queue.Queue()
        in_flight = 0
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="minipng") as pool:
            while pending and in_flight < concurrency:
                job = pending.popleft()
                yield Dispatched(job.job_id)
                pool.submit(self._work, job, quality, channel)
                in_flight += 1
            while in_flight:
                event = channel.get()
                if not isinstance(event, Finished):
                    yield event
                    continue
                in_flight -= 1
                yield event
                if pending:
                    job = pending.popleft()
                    yield Dispatched(job.job_id)
                    pool.submit(self._work, job, quality, channel)
                    in_flight += 1

    def _work(self, job: JobView, quality: Quality, channel: queue.Queue) -> None:
        logger.info("开始压缩 %s", job.source)
        try:
            result = self.compressor.compress(job, quality)
        except CompressionError as exc:
            logger.warning("%s 压缩失败：%s", job.source.name, exc)
            channel.put(Finished(job.job_id, error=str(exc)))
        except Exception as exc:
            logger.exception("%s 压缩时发生意外错误", job.source.name)
            channel.put(Finished(job.job_id, error=str(exc) or type(exc).__name__))
        else:
            logger.info("%s 压缩完成：%d -> %d 字节", job.source.name, job.original_size, result.compressed_size)
            channel.put(
                Finished(
                    job.job_id,
                    output=result.output,
                    compressed_size=result.compressed_size,
                    engine=result.engine,
                )
            )
