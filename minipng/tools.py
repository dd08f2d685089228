from __future__ import annotations

from pathlib import Path
import logging
import os
import platform
import shutil
import sys
from typing import Iterable

from .errors import ToolNotFound

logger = logging.getLogger(__name__)

TOOL_NAMES = ("pngquant", "oxipng", "djpeg", "cjpeg", "cwebp", "gifsicle")
SYSTEM_TOOL_DIRS = (
    Path("/opt/homebrew/bin"),
    Path("/opt/homebrew/opt/mozjpeg/bin"),
    Path("/usr/local/bin"),
    Path("/usr/local/opt/mozjpeg/bin"),
    Path("/usr/bin"),
)


class ToolRegistry:
    """Maps codec tool names to executables.

    Every known tool is resolved once when the registry is built. A tool that
    cannot be found is recorded as ``None``; the error only surfaces through
    :meth:`require` when a job actually needs it.
    """

    def __init__(
        self,
        resource_dirs: Iterable[Path] | None = None,
        system_dirs: Iterable[Path] = SYSTEM_TOOL_DIRS,
        use_path: bool = True,
        names: Iterable[str] = TOOL_NAMES,
    ) -> None:
        self.resource_dirs = list(default_resource_dirs() if resource_dirs is None else resource_dirs)
        self.system_dirs = list(system_dirs)
        self.use_path = use_path
        self._entries: dict[str, Path | None] = {}
        for name in names:
            self._entries[name] = self._find(name)
            logger.debug("工具 %s -> %s", name, self._entries[name])

    def resolve(self, name: str) -> Path | None:
        if name in self._entries:
            return self._entries[name]
        return self._find(name)

    def require(self, name: str) -> Path:
        path = self.resolve(name)
        if path is None:
            raise ToolNotFound(name)
        return path

    def status(self) -> dict[str, bool]:
        return {name: path is not None for name, path in self._entries.items()}

    def _find(self, name: str) -> Path | None:
        for base in self.resource_dirs:
            for path in _candidates(base / "bin", name):
                if path.is_file():
                    return path.resolve()
        for base in self.system_dirs:
            for path in _candidates(base, name):
                if path.is_file():
                    return path
        if self.use_path:
            system_path = shutil.which(name)
            if system_path:
                return Path(system_path)
        return None


def _candidates(base: Path, name: str) -> list[Path]:
    if sys.platform.startswith("win"):
        return [base / f"{name}.exe", base / name]
    return [base / name]


def default_resource_dirs() -> list[Path]:
    resource_dirs: list[Path] = []
    meipass = getattr(sys, "_MEIPASS", None)
    if meipass:
        resource_dirs.append(Path(meipass))
    vendor_root = Path(__file__).resolve().parent.parent / "vendor"
    platform_key = detect_platform()
    arch_key = detect_arch()
    resource_dirs.extend(
        [
            vendor_root / platform_key / arch_key,
            vendor_root / platform_key,
            vendor_root,
        ]
    )
    return resource_dirs


def detect_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def detect_arch() -> str:
    if hasattr(os, "uname"):
        machine = os.uname().machine.lower()
    else:
        machine = platform.machine().lower()
    if machine in {"arm64", "aarch64"}:
        return "arm64"
    if machine in {"x86_64", "amd64"}:
        return "x64"
    return machine
