from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable
import uuid

SUPPORTED_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".gif"}


class ImageFormat(Enum):
    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"
    GIF = "gif"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_path(cls, path: Path) -> ImageFormat:
        suffix = path.suffix.lower()
        if suffix == ".png":
            return cls.PNG
        if suffix in {".jpg", ".jpeg"}:
            return cls.JPEG
        if suffix == ".webp":
            return cls.WEBP
        if suffix == ".gif":
            return cls.GIF
        return cls.UNSUPPORTED

    @property
    def display_name(self) -> str:
        return {
            ImageFormat.PNG: "PNG",
            ImageFormat.JPEG: "JPEG",
            ImageFormat.WEBP: "WebP",
            ImageFormat.GIF: "GIF",
            ImageFormat.UNSUPPORTED: "未知",
        }[self]


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def display_name(self) -> str:
        return {
            JobStatus.PENDING: "等待中",
            JobStatus.RUNNING: "压缩中...",
            JobStatus.COMPLETED: "已完成",
            JobStatus.FAILED: "失败",
        }[self]


@dataclass(frozen=True)
class QualityProfile:
    png_range: str
    jpeg_quality: int
    webp_quality: int
    gif_level: int


class Quality(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def profile(self) -> QualityProfile:
        return _PROFILES[self]

    @property
    def display_name(self) -> str:
        return {
            Quality.LOW: "高压缩",
            Quality.MEDIUM: "均衡",
            Quality.HIGH: "高质量",
        }[self]


_PROFILES = {
    Quality.LOW: QualityProfile(png_range="40-60", jpeg_quality=60, webp_quality=60, gif_level=3),
    Quality.MEDIUM: QualityProfile(png_range="60-80", jpeg_quality=75, webp_quality=75, gif_level=2),
    Quality.HIGH: QualityProfile(png_range="75-90", jpeg_quality=85, webp_quality=85, gif_level=1),
}
DEFAULT_QUALITY = Quality.MEDIUM


def normalize_quality(value: object) -> Quality:
    if isinstance(value, Quality):
        return value
    text = str(value or "").strip().lower()
    for quality in Quality:
        if quality.value == text:
            return quality
    return DEFAULT_QUALITY


@dataclass
class CompressionJob:
    source: Path
    original_size: int
    image_format: ImageFormat
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    output: Path | None = None
    compressed_size: int | None = None
    error: str | None = None
    engine: str | None = None

    def snapshot(self) -> JobView:
        return JobView(
            job_id=self.job_id,
            source=self.source,
            output=self.output,
            image_format=self.image_format,
            original_size=self.original_size,
            status=self.status,
            compressed_size=self.compressed_size,
            error=self.error,
            engine=self.engine,
        )


@dataclass(frozen=True)
class JobView:
    job_id: str
    source: Path
    output: Path | None
    image_format: ImageFormat
    original_size: int
    status: JobStatus
    compressed_size: int | None = None
    error: str | None = None
    engine: str | None = None

    @property
    def file_name(self) -> str:
        return self.source.name

    @property
    def compression_ratio(self) -> float | None:
        if self.compressed_size is None or self.original_size <= 0:
            return None
        return (self.original_size - self.compressed_size) / self.original_size * 100

    @property
    def status_text(self) -> str:
        if self.status is JobStatus.FAILED and self.error:
            return f"失败: {self.error}"
        return self.status.display_name


@dataclass(frozen=True)
class CompressResult:
    output: Path
    compressed_size: int
    engine: str


@dataclass(frozen=True)
class BatchAggregate:
    total_count: int
    completed_count: int
    failed_count: int
    pending_count: int
    running_count: int
    total_saved: int
    average_ratio: float

    @classmethod
    def from_views(cls, views: Iterable[JobView]) -> BatchAggregate:
        views = list(views)
        completed = [view for view in views if view.status is JobStatus.COMPLETED]
        saved = sum(
            view.original_size - view.compressed_size
            for view in completed
            if view.compressed_size is not None
        )
        ratios = [view.compression_ratio for view in completed if view.compression_ratio is not None]
        return cls(
            total_count=len(views),
            completed_count=len(completed),
            failed_count=sum(1 for view in views if view.status is JobStatus.FAILED),
            pending_count=sum(1 for view in views if view.status is JobStatus.PENDING),
            running_count=sum(1 for view in views if view.status is JobStatus.RUNNING),
            total_saved=saved,
            average_ratio=sum(ratios) / len(ratios) if ratios else 0.0,
        )

    @property
    def formatted_saved(self) -> str:
        return format_size(self.total_saved)


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1000 or unit == "GB":
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1000
    return f"{value:.1f} GB"


def iter_image_files(root: Path) -> list[Path]:
    files = []
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if path.is_file() and path.suffix.lower() in SUPPORTED_SUFFIXES:
            files.append(path)
    return files
