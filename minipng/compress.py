from __future__ import annotations

from pathlib import Path
import logging
import shutil
from typing import Callable

from PIL import Image, UnidentifiedImageError

from .errors import (
    CannotCreateDestination,
    CompressionFailed,
    InvalidImage,
    ProcessFailed,
    ToolNotFound,
    UnsupportedFormat,
)
from .models import CompressResult, ImageFormat, JobView, Quality
from .process import run_pipeline, run_tool
from .replace import ReplaceManager
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

PNGQUANT_ACCEPTED = (0, 99)

Codec = Callable[[ToolRegistry, Path, Path, Quality, bool], str]


class Compressor:
    def __init__(
        self,
        tools: ToolRegistry,
        replacer: ReplaceManager | None = None,
        fallback: bool = False,
        codecs: dict[ImageFormat, Codec] | None = None,
    ) -> None:
        self.tools = tools
        self.replacer = replacer or ReplaceManager()
        self.fallback = fallback
        self.codecs = dict(codecs) if codecs is not None else get_codec_registry()

    def compress(self, job: JobView, quality: Quality) -> CompressResult:
        codec = self.codecs.get(job.image_format)
        if codec is None:
            raise UnsupportedFormat(f"不支持的图片格式: {job.source.suffix or job.source.name}")
        if job.output is None:
            raise CannotCreateDestination("未指定输出路径")
        plan = self.replacer.plan(job.output, job.source)
        try:
            plan.write_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CannotCreateDestination(f"无法创建输出目录: {exc}") from exc
        try:
            engine = codec(self.tools, job.source, plan.write_path, quality, self.fallback)
            if not plan.write_path.exists():
                raise CompressionFailed(f"{engine} 未生成输出文件")
            output = self.replacer.commit(plan)
        except BaseException:
            self.replacer.discard(plan)
            raise
        return CompressResult(output, output.stat().st_size, engine)


def compress_png(tools: ToolRegistry, source: Path, output: Path, quality: Quality, fallback: bool) -> str:
    pngquant = tools.resolve("pngquant")
    if pngquant is None:
        if fallback:
            return compress_png_with_pillow(source, output, quality)
        raise ToolNotFound("pngquant")
    code = run_tool(
        pngquant,
        [
            f"--quality={quality.profile.png_range}",
            "--force",
            "--output",
            str(output),
            str(source),
        ],
        accepted=PNGQUANT_ACCEPTED,
    )
    if code == 99 and not output.exists():
        logger.info("%s 已达质量下限，保留原图", source.name)
        shutil.copy2(source, output)
    oxipng = tools.resolve("oxipng")
    if oxipng is not None:
        try:
            run_tool(oxipng, ["-o", "2", "-q", str(output)])
        except ProcessFailed as exc:
            logger.warning("oxipng 优化失败，保留 pngquant 结果: %s", exc)
    return "pngquant"


def compress_jpeg(tools: ToolRegistry, source: Path, output: Path, quality: Quality, fallback: bool) -> str:
    djpeg = tools.resolve("djpeg")
    cjpeg = tools.resolve("cjpeg")
    if djpeg is None or cjpeg is None:
        if fallback:
            return compress_jpeg_with_pillow(source, output, quality)
        raise ToolNotFound("djpeg" if djpeg is None else "cjpeg")
    run_pipeline(
        djpeg,
        [str(source)],
        cjpeg,
        [
            "-quality",
            str(quality.profile.jpeg_quality),
            "-optimize",
            "-progressive",
            "-outfile",
            str(output),
        ],
    )
    return "mozjpeg"


def compress_webp(tools: ToolRegistry, source: Path, output: Path, quality: Quality, fallback: bool) -> str:
    cwebp = tools.resolve("cwebp")
    if cwebp is None:
        if fallback:
            return compress_webp_with_pillow(source, output, quality)
        raise ToolNotFound("cwebp")
    run_tool(
        cwebp,
        [
            "-q",
            str(quality.profile.webp_quality),
            "-m",
            "6",
            str(source),
            "-o",
            str(output),
        ],
    )
    return "cwebp"


def compress_gif(tools: ToolRegistry, source: Path, output: Path, quality: Quality, fallback: bool) -> str:
    gifsicle = tools.require("gifsicle")
    run_tool(
        gifsicle,
        [
            f"-O{quality.profile.gif_level}",
            "--colors",
            "256",
            str(source),
            "-o",
            str(output),
        ],
    )
    return "gifsicle"


def compress_jpeg_with_pillow(source: Path, output: Path, quality: Quality) -> str:
    with open_image(source) as image:
        save_image(
            image.convert("RGB"),
            output,
            format="JPEG",
            quality=quality.profile.jpeg_quality,
            optimize=True,
            progressive=True,
        )
    return "Pillow"


def compress_webp_with_pillow(source: Path, output: Path, quality: Quality) -> str:
    with open_image(source) as image:
        save_image(image, output, format="WEBP", quality=quality.profile.webp_quality, method=6)
    return "Pillow"


def compress_png_with_pillow(source: Path, output: Path, quality: Quality) -> str:
    _, high = quality.profile.png_range.split("-")
    colors = max(16, int(256 * int(high) / 100))
    with open_image(source) as image:
        save_image(quantize_image(image, colors), output, format="PNG", optimize=True)
    return "Pillow"


def quantize_image(image: Image.Image, colors: int) -> Image.Image:
    fast_octree = 2
    median_cut = 0
    if image.mode in {"RGBA", "LA"} or "transparency" in image.info:
        return image.convert("RGBA").quantize(colors=colors, method=fast_octree)
    return image.convert("RGB").quantize(colors=colors, method=median_cut)


def open_image(source: Path) -> Image.Image:
    try:
        image = Image.open(source)
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImage(f"无法读取图片: {source.name}") from exc
    try:
        image.load()
    except OSError as exc:
        image.close()
        raise InvalidImage(f"无法读取图片: {source.name}") from exc
    return image


def save_image(image: Image.Image, output: Path, **save_kwargs: object) -> None:
    try:
        image.save(output, **save_kwargs)
    except OSError as exc:
        raise CannotCreateDestination(f"无法创建输出文件: {exc}") from exc


def get_codec_registry() -> dict[ImageFormat, Codec]:
    return {
        ImageFormat.PNG: compress_png,
        ImageFormat.JPEG: compress_jpeg,
        ImageFormat.WEBP: compress_webp,
        ImageFormat.GIF: compress_gif,
    }
