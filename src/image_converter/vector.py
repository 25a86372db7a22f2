"""Colour-quantised contour tracing into SVG path documents."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Callable

import cv2
import numpy as np
import svg
from PIL import Image, ImageFilter
from sklearn.cluster import KMeans

from .errors import CancelledError, VectorizationFailure
from .models import ConversionSettings
from .raster import flatten

logger = logging.getLogger(__name__)

MAX_TRACE_DIMENSION = 1024
SAMPLE_LIMIT = 20_000
ALPHA_THRESHOLD = 128
FALLBACK_JPEG_QUALITY = 60
FALLBACK_WARNING = "VECTOR_FALLBACK"

Checkpoint = Callable[[], None]


@dataclass(frozen=True, slots=True)
class TracePreset:
    colors: int
    path_omit: float
    line_tolerance: float
    curve_tolerance: float
    min_color_ratio: float
    blur_radius: float = 0.0
    cycles: int = 3
    decimals: int = 1


def default_color_count(quality: int) -> int:
    if quality >= 90:
        return 32
    if quality >= 60:
        return 16
    return 8


def default_path_precision(quality: int) -> float:
    return 0.5 if quality >= 90 else 1.0


def resolve_preset(settings: ConversionSettings) -> TracePreset:
    options = settings.vector
    colors = options.colors or default_color_count(settings.quality)
    precision = options.path_precision or default_path_precision(settings.quality)
    cycles = 5 if settings.quality >= 80 else 3
    decimals = 2 if settings.quality >= 80 else 1

    if options.style == "simple":
        return TracePreset(min(colors, 8), 12, 2.0, 2.0, 0.05, 0.0, cycles, decimals)
    if options.style == "detailed":
        return TracePreset(colors, 2, 0.3, 0.3, 0.005, 0.0, cycles, decimals)
    if options.style == "artistic":
        return TracePreset(max(int(colors * 0.75), 6), 6, 1.5, 1.5, 0.03, 2.0, cycles, decimals)
    return TracePreset(colors, 8, precision, precision, 0.02, 0.0, cycles, decimals)


def downsample(image: Image.Image, ceiling: int = MAX_TRACE_DIMENSION) -> Image.Image:
    width, height = image.size
    if width <= ceiling and height <= ceiling:
        return image
    scale = ceiling / max(width, height)
    size = (max(1, int(width * scale + 0.5)), max(1, int(height * scale + 0.5)))
    return image.resize(size, Image.Resampling.LANCZOS)


def quantize(pixels: np.ndarray, colors: int, cycles: int) -> tuple[np.ndarray, np.ndarray]:
    """Cluster RGB pixels; returns per-pixel labels and the uint8 palette."""
    unique = np.unique(pixels, axis=0)
    clusters = min(colors, len(unique))
    if clusters <= 1:
        return np.zeros(len(pixels), dtype=np.int32), unique[:1].astype(np.uint8)

    sample = pixels
    if len(pixels) > SAMPLE_LIMIT:
        rng = np.random.default_rng(0)
        sample = pixels[np.sort(rng.choice(len(pixels), SAMPLE_LIMIT, replace=False))]
    model = KMeans(n_clusters=clusters, n_init=1, max_iter=cycles, random_state=0)
    model.fit(sample.astype(np.float64))
    labels = model.predict(pixels.astype(np.float64)).astype(np.int32)
    palette = np.clip(np.rint(model.cluster_centers_), 0, 255).astype(np.uint8)
    return labels, palette


def _segment_errors(points: np.ndarray) -> np.ndarray:
    start, end = points[0], points[-1]
    chord = end - start
    length = float(np.hypot(chord[0], chord[1]))
    offsets = points - start
    if length == 0:
        return np.hypot(offsets[:, 0], offsets[:, 1])
    return np.abs(chord[0] * offsets[:, 1] - chord[1] * offsets[:, 0]) / length


def _fit_quadratic(points: np.ndarray) -> tuple[np.ndarray, float]:
    steps = np.hypot(*np.diff(points, axis=0).T)
    total = steps.sum()
    if total == 0:
        return points[0], 0.0
    t = np.concatenate(([0.0], np.cumsum(steps) / total))
    start, end = points[0], points[-1]
    a = (1 - t) ** 2
    b = 2 * t * (1 - t)
    c = t**2
    residual = points - np.outer(a, start) - np.outer(c, end)
    denominator = float((b**2).sum())
    if denominator == 0:
        return (start + end) / 2, float("inf")
    control = (b[:, None] * residual).sum(axis=0) / denominator
    fitted = np.outer(a, start) + np.outer(b, control) + np.outer(c, end)
    error = float(np.hypot(*(points - fitted).T).max())
    return control, error


def fit_segments(points: np.ndarray, line_tolerance: float, curve_tolerance: float) -> list[tuple]:
    """Split an open point run into line and quadratic segments within tolerance.

    Returns ``("L", end)`` and ``("Q", control, end)`` tuples in path order.
    """
    segments: list[tuple] = []
    stack = [(0, len(points) - 1)]
    while stack:
        start, end = stack.pop()
        chunk = points[start : end + 1]
        if end - start < 2:
            segments.append(("L", points[end]))
            continue
        errors = _segment_errors(chunk)
        split = int(np.argmax(errors[1:-1])) + 1
        if errors[split] <= line_tolerance:
            segments.append(("L", points[end]))
            continue
        control, curve_error = _fit_quadratic(chunk)
        if curve_error <= curve_tolerance:
            segments.append(("Q", control, points[end]))
            continue
        stack.append((start + split, end))
        stack.append((start, start + split))
    return segments


def _contour_commands(contour: np.ndarray, preset: TracePreset) -> list[svg.PathData]:
    points = contour.reshape(-1, 2).astype(np.float64)
    closed = np.vstack([points, points[:1]])
    half = len(points) // 2
    digits = preset.decimals

    def fmt(value: float) -> float:
        return round(float(value), digits)

    commands: list[svg.PathData] = [svg.M(fmt(points[0][0]), fmt(points[0][1]))]
    for run in (closed[: half + 1], closed[half:]):
        for segment in fit_segments(run, preset.line_tolerance, preset.curve_tolerance):
            if segment[0] == "L":
                commands.append(svg.L(fmt(segment[1][0]), fmt(segment[1][1])))
            else:
                control, end = segment[1], segment[2]
                commands.append(svg.Q(fmt(control[0]), fmt(control[1]), fmt(end[0]), fmt(end[1])))
    commands.append(svg.Z())
    return commands


def trace(
    image: Image.Image,
    preset: TracePreset,
    *,
    output_size: tuple[int, int] | None = None,
    checkpoint: Checkpoint | None = None,
) -> str:
    """Trace ``image`` into an SVG document string.

    Raises :class:`VectorizationFailure` when nothing survives the omission
    thresholds.
    """
    output_size = output_size or image.size
    traced = downsample(image.convert("RGBA"))
    if preset.blur_radius > 0:
        traced = traced.filter(ImageFilter.GaussianBlur(preset.blur_radius))

    rgba = np.asarray(traced, dtype=np.uint8)
    height, width = rgba.shape[:2]
    opaque = rgba[:, :, 3] >= ALPHA_THRESHOLD
    opaque_total = int(opaque.sum())
    if opaque_total == 0:
        raise VectorizationFailure("Image has no opaque pixels to trace")

    labels, palette = quantize(rgba[opaque][:, :3], preset.colors, preset.cycles)
    label_grid = np.full((height, width), -1, dtype=np.int32)
    label_grid[opaque] = labels

    elements: list[svg.Element] = []
    for index, color in enumerate(palette):
        if checkpoint is not None:
            checkpoint()
        mask = (label_grid == index).astype(np.uint8) * 255
        area = int(np.count_nonzero(mask))
        if area == 0 or area / opaque_total < preset.min_color_ratio:
            continue
        contours, _ = cv2.findContours(mask, cv2.RETR_CCOMP, cv2.CHAIN_APPROX_NONE)
        commands: list[svg.PathData] = []
        for contour in contours:
            if len(contour) < 3 or cv2.arcLength(contour, True) < preset.path_omit:
                continue
            commands.extend(_contour_commands(contour, preset))
        if not commands:
            continue
        fill = "#{:02x}{:02x}{:02x}".format(*(int(channel) for channel in color))
        elements.append(svg.Path(d=commands, fill=fill, fill_rule="evenodd"))

    if not elements:
        raise VectorizationFailure("Tracing produced an empty document")
    document = svg.SVG(
        width=output_size[0],
        height=output_size[1],
        viewBox=svg.ViewBoxSpec(0, 0, width, height),
        elements=elements,
    )
    return document.as_str()


def embed_raster_svg(image: Image.Image, output_size: tuple[int, int] | None = None) -> str:
    """Wrap a reduced-quality JPEG of ``image`` in a single-node SVG document."""
    width, height = output_size or image.size
    buffer = BytesIO()
    flatten(image).save(buffer, format="JPEG", quality=FALLBACK_JPEG_QUALITY)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    document = svg.SVG(
        width=width,
        height=height,
        viewBox=svg.ViewBoxSpec(0, 0, width, height),
        elements=[
            svg.Image(
                href=f"data:image/jpeg;base64,{encoded}",
                x=0,
                y=0,
                width=width,
                height=height,
            )
        ],
    )
    return document.as_str()


def vectorize(
    image: Image.Image,
    settings: ConversionSettings,
    *,
    checkpoint: Checkpoint | None = None,
) -> tuple[bytes, list[str]]:
    preset = resolve_preset(settings)
    try:
        document = trace(image, preset, output_size=image.size, checkpoint=checkpoint)
    except CancelledError:
        raise
    except Exception as exc:  # any tracer failure falls back to the embedded raster
        logger.warning("Vector tracing failed, embedding raster instead: %s", exc)
        return embed_raster_svg(image).encode("utf-8"), [FALLBACK_WARNING]
    return document.encode("utf-8"), []


__all__ = [
    "FALLBACK_WARNING",
    "MAX_TRACE_DIMENSION",
    "TracePreset",
    "downsample",
    "embed_raster_svg",
    "fit_segments",
    "quantize",
    "resolve_preset",
    "trace",
    "vectorize",
]
