from __future__ import annotations


class CompressionError(Exception):
    """Base class for failures that mark a single job as failed."""


class ToolNotFound(CompressionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"未找到压缩工具: {name}")
        self.name = name


class ProcessFailed(CompressionError):
    def __init__(self, message: str, exit_code: int | None = None, stage: str | None = None) -> None:
        super().__init__(f"压缩失败: {message}")
        self.message = message
        self.exit_code = exit_code
        self.stage = stage


class InvalidImage(CompressionError):
    def __init__(self, message: str = "无法读取图片") -> None:
        super().__init__(message)


class UnsupportedFormat(CompressionError):
    def __init__(self, message: str = "不支持的图片格式") -> None:
        super().__init__(message)


class CannotCreateDestination(CompressionError):
    def __init__(self, message: str = "无法创建输出文件") -> None:
        super().__init__(message)


class CompressionFailed(CompressionError):
    def __init__(self, message: str = "压缩失败") -> None:
        super().__init__(message)


class BatchRunning(RuntimeError):
    """Raised when the job list is modified while a batch is running."""


class InvalidTransition(RuntimeError):
    pass
