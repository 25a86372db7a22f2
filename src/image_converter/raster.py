"""Raster pipeline: crop, orient, scale and re-encode a decoded image."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from io import BytesIO
from typing import Iterator

from PIL import Image, ImageColor

from .errors import InvalidCropError, InvalidSettings, UnsupportedConversionError
from .geometry import CropRect, compute_crop, compute_resize
from .models import ConversionSettings, CropSpec, OutputFormat

Color = tuple[int, int, int, int]

TRANSPARENT: Color = (0, 0, 0, 0)
WHITE: Color = (255, 255, 255, 255)

_PIL_FORMATS: dict[OutputFormat, str] = {
    OutputFormat.JPEG: "JPEG",
    OutputFormat.PNG: "PNG",
    OutputFormat.WEBP: "WEBP",
    OutputFormat.TIFF: "TIFF",
}


@dataclass(frozen=True, slots=True)
class RenderPlan:
    crop: CropRect
    rotation: float
    flip_horizontal: bool
    flip_vertical: bool
    draw_size: tuple[int, int]
    surface_size: tuple[int, int]
    background: Color

    @property
    def quarter_turns(self) -> int | None:
        normalized = self.rotation % 360
        if normalized % 90 == 0:
            return int(normalized // 90)
        return None


def parse_background(crop: CropSpec) -> Color:
    if crop.transparent:
        return TRANSPARENT
    try:
        red, green, blue = ImageColor.getrgb(crop.background)[:3]
    except ValueError as exc:
        raise InvalidSettings(f"Invalid background color: {crop.background}") from exc
    return (red, green, blue, 255)


def _resolve_rect(src_w: int, src_h: int, crop: CropSpec, source_scale: float) -> CropRect:
    if crop.rect is not None:
        x, y, width, height = crop.rect
        return CropRect(float(x), float(y), float(width), float(height)).scaled(source_scale)
    if crop.aspect_ratio is not None:
        return compute_crop(src_w, src_h, crop.aspect_ratio, crop.mode)
    return CropRect.identity(src_w, src_h)


def _round(value: float) -> int:
    return max(1, int(value + 0.5))


def plan_render(
    src_w: int,
    src_h: int,
    settings: ConversionSettings,
    *,
    square: int | None = None,
    source_scale: float = 1.0,
) -> RenderPlan:
    """Resolve crop, orientation and output size for a decoded source.

    ``source_scale`` is the factor the decoder already applied (vector sources
    rasterised at a larger scale); explicit crop rectangles and the nominal
    output size stay in unscaled source units.
    """
    crop = settings.crop or CropSpec()
    rect = _resolve_rect(src_w, src_h, crop, source_scale)
    if rect.is_degenerate:
        raise InvalidCropError(f"Crop rectangle is degenerate: {rect.width}x{rect.height}")

    base_w = _round(rect.width / source_scale)
    base_h = _round(rect.height / source_scale)
    if square is not None:
        # Icon frames: fit the crop inside the square, padded by the background.
        scale = square / max(rect.width, rect.height)
        draw_size = (min(square, _round(rect.width * scale)), min(square, _round(rect.height * scale)))
    elif crop.output_width is not None or crop.output_height is not None:
        width = crop.output_width or _round(crop.output_height * rect.width / rect.height)
        height = crop.output_height or _round(crop.output_width * rect.height / rect.width)
        draw_size = (width, height)
    else:
        draw_size = compute_resize(
            base_w,
            base_h,
            settings.max_width,
            settings.max_height,
            settings.maintain_aspect_ratio,
        )

    rotation = float(crop.rotation)
    surface_size = draw_size
    if square is not None:
        surface_size = (square, square)
    elif rotation % 180 == 90:
        surface_size = (draw_size[1], draw_size[0])
    background = parse_background(crop)
    if square is not None and settings.crop is None:
        background = TRANSPARENT
    return RenderPlan(
        crop=rect,
        rotation=rotation,
        flip_horizontal=crop.flip_horizontal,
        flip_vertical=crop.flip_vertical,
        draw_size=draw_size,
        surface_size=surface_size,
        background=background,
    )


class SurfacePool:
    """Single reusable RGBA surface shared by sequential render calls."""

    def __init__(self) -> None:
        self._surface: Image.Image | None = None
        self._checked_out = False
        self.allocations = 0

    @property
    def checked_out(self) -> bool:
        return self._checked_out

    @contextmanager
    def checkout(self, size: tuple[int, int], fill: Color) -> Iterator[Image.Image]:
        if self._checked_out:
            raise RuntimeError("Rendering surface is already checked out")
        if self._surface is None or self._surface.size != size:
            self._surface = Image.new("RGBA", size, fill)
            self.allocations += 1
        else:
            self._surface.paste(fill, (0, 0, size[0], size[1]))
        self._checked_out = True
        try:
            yield self._surface
        finally:
            self._checked_out = False

    def release(self) -> None:
        self._surface = None


def render(image: Image.Image, plan: RenderPlan, surfaces: SurfacePool | None = None) -> Image.Image:
    if plan.crop.is_degenerate:
        raise InvalidCropError("Crop rectangle is degenerate")
    pool = surfaces or SurfacePool()

    # Areas of the box outside the source come back transparent and show the background.
    region = image.convert("RGBA").crop(plan.crop.to_box())
    region = region.resize(plan.draw_size, Image.Resampling.LANCZOS)
    if plan.flip_horizontal:
        region = region.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
    if plan.flip_vertical:
        region = region.transpose(Image.Transpose.FLIP_TOP_BOTTOM)

    turns = plan.quarter_turns
    if turns == 1:
        region = region.transpose(Image.Transpose.ROTATE_270)
    elif turns == 2:
        region = region.transpose(Image.Transpose.ROTATE_180)
    elif turns == 3:
        region = region.transpose(Image.Transpose.ROTATE_90)
    elif turns is None:
        region = region.rotate(-plan.rotation, resample=Image.Resampling.BICUBIC, expand=False)

    with pool.checkout(plan.surface_size, plan.background) as surface:
        offset = (
            (plan.surface_size[0] - region.width) // 2,
            (plan.surface_size[1] - region.height) // 2,
        )
        surface.alpha_composite(region, dest=offset)
        return surface.copy()


def flatten(image: Image.Image, color: Color = WHITE) -> Image.Image:
    base = Image.new("RGB", image.size, color[:3])
    rgba = image.convert("RGBA")
    base.paste(rgba, mask=rgba.getchannel("A"))
    return base


def encode(
    image: Image.Image,
    output_format: OutputFormat,
    settings: ConversionSettings,
    *,
    exif: bytes | None = None,
    icc_profile: bytes | None = None,
) -> bytes:
    pil_format = _PIL_FORMATS.get(output_format)
    if pil_format is None:
        raise UnsupportedConversionError(f"Cannot encode raster output as {output_format.value}")

    options = settings.raster
    params: dict[str, object] = {}
    if output_format is OutputFormat.JPEG:
        prepared = flatten(image)
        params.update(quality=settings.quality, progressive=options.progressive, optimize=options.optimize)
    elif output_format is OutputFormat.PNG:
        prepared = _png_mode(image, options.color_type)
        params.update(compress_level=options.compression_level)
    elif output_format is OutputFormat.WEBP:
        prepared = image.convert("RGBA")
        params.update(quality=settings.quality, lossless=options.lossless, method=options.method)
    else:
        prepared = image.convert("RGBA")
        params.update(compression=options.tiff_compression)

    if not settings.strip_metadata:
        if exif and output_format is not OutputFormat.TIFF:
            params["exif"] = exif
        if icc_profile:
            params["icc_profile"] = icc_profile

    buffer = BytesIO()
    prepared.save(buffer, format=pil_format, **params)
    return buffer.getvalue()


def _png_mode(image: Image.Image, color_type: str) -> Image.Image:
    if color_type == "rgb":
        return flatten(image)
    if color_type == "grayscale":
        return image.convert("LA")
    if color_type == "palette":
        return image.convert("RGBA").quantize(colors=256, method=Image.Quantize.FASTOCTREE)
    return image.convert("RGBA")


__all__ = [
    "RenderPlan",
    "SurfacePool",
    "encode",
    "flatten",
    "parse_background",
    "plan_render",
    "render",
]
