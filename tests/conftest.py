import stat
import sys
import textwrap
import time
from pathlib import Path

import pytest
from PySide6.QtCore import QCoreApplication

from minipng.tools import ToolRegistry

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="fake tools are POSIX shell scripts")

PNGQUANT = """\
#!/bin/sh
printf '%s\\n' "$*" >> "$0.args"
out=""
src=""
while [ $# -gt 0 ]; do
  case "$1" in
    --output) out="$2"; shift 2 ;;
    --*) shift ;;
    *) src="$1"; shift ;;
  esac
done
head -c 40 "$src" > "$out"
exit {code}
"""

CWEBP = """\
#!/bin/sh
printf '%s\\n' "$*" >> "$0.args"
out=""
src=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    -q|-m) shift 2 ;;
    *) src="$1"; shift ;;
  esac
done
head -c 30 "$src" > "$out"
"""

GIFSICLE = """\
#!/bin/sh
printf '%s\\n' "$*" >> "$0.args"
out=""
src=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    --colors) shift 2 ;;
    -O*) shift ;;
    *) src="$1"; shift ;;
  esac
done
head -c 20 "$src" > "$out"
"""

DJPEG = """\
#!/bin/sh
printf '%s\\n' "$*" >> "$0.args"
cat "$1"
"""

CJPEG = """\
#!/bin/sh
printf '%s\\n' "$*" >> "$0.args"
out=""
while [ $# -gt 0 ]; do
  case "$1" in
    -outfile) out="$2"; shift 2 ;;
    -quality) shift 2 ;;
    *) shift ;;
  esac
done
cat > "$out"
"""

FAIL = """\
#!/bin/sh
printf '%s\\n' "$*" >> "$0.args"
echo "{message}" >&2
exit {code}
"""


class FakeTools:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.bin_dir = root / "bin"
        self.bin_dir.mkdir(parents=True, exist_ok=True)

    def add(self, name: str, body: str) -> Path:
        path = self.bin_dir / name
        path.write_text(textwrap.dedent(body))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    def add_standard(self, pngquant_code: int = 0) -> None:
        self.add("pngquant", PNGQUANT.format(code=pngquant_code))
        self.add("cwebp", CWEBP)
        self.add("gifsicle", GIFSICLE)
        self.add("djpeg", DJPEG)
        self.add("cjpeg", CJPEG)

    def add_failing(self, name: str, code: int = 3, message: str = "boom") -> Path:
        return self.add(name, FAIL.format(code=code, message=message))

    def args(self, name: str) -> list[str]:
        log = self.bin_dir / f"{name}.args"
        if not log.exists():
            return []
        return log.read_text().splitlines()

    def registry(self) -> ToolRegistry:
        return ToolRegistry(resource_dirs=[self.root], system_dirs=(), use_path=False)


@pytest.fixture(scope="session")
def qapp():
    return QCoreApplication.instance() or QCoreApplication([])


@pytest.fixture
def fake_tools(tmp_path):
    return FakeTools(tmp_path / "resources")


@pytest.fixture
def images(tmp_path):
    directory = tmp_path / "images"
    directory.mkdir()
    return directory


def write_file(path: Path, size: int = 100) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(bytes(range(256)) * (size // 256) + bytes(range(size % 256)))
    return path


def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached before timeout")
