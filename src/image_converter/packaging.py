"""Container packaging: icon files, zip archives and multi-page PDF documents."""

from __future__ import annotations

import math
import zipfile
from io import BytesIO
from typing import Iterable, Sequence

from PIL import Image

from .errors import InvalidSettings
from .models import STANDARD_ICON_SIZES, DocumentOptions

FIXED_ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)
MM_PER_INCH = 25.4

PAGE_SIZES_MM: dict[str, tuple[float, float]] = {
    "A3": (297.0, 420.0),
    "A4": (210.0, 297.0),
    "A5": (148.0, 210.0),
    "Letter": (215.9, 279.4),
    "Legal": (215.9, 355.6),
    "Tabloid": (279.4, 431.8),
}


def package_icon(frames: Sequence[Image.Image]) -> bytes:
    """Pack one frame per size into a single ``.ico`` container."""
    if not frames:
        raise InvalidSettings("At least one icon frame is required")
    ordered = sorted((frame.convert("RGBA") for frame in frames), key=lambda f: f.width, reverse=True)
    base, rest = ordered[0], ordered[1:]
    buffer = BytesIO()
    base.save(
        buffer,
        format="ICO",
        sizes=[frame.size for frame in ordered],
        append_images=rest,
    )
    return buffer.getvalue()


def package_archive(entries: Iterable[tuple[str, bytes]]) -> bytes:
    buffer = BytesIO()
    seen: set[str] = set()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, payload in entries:
            unique = unique_name(name, seen)
            seen.add(unique)
            info = zipfile.ZipInfo(unique, date_time=FIXED_ZIP_TIMESTAMP)
            info.compress_type = zipfile.ZIP_DEFLATED
            archive.writestr(info, payload)
    return buffer.getvalue()


def unique_name(name: str, seen: set[str]) -> str:
    """Return ``name``, or ``stem-N.ext`` for the first N not already in ``seen``."""
    if name not in seen:
        return name
    stem, dot, suffix = name.rpartition(".")
    if not dot:
        stem, suffix = name, ""
    counter = 2
    while True:
        candidate = f"{stem}-{counter}.{suffix}" if suffix else f"{stem}-{counter}"
        if candidate not in seen:
            return candidate
        counter += 1


def page_dimensions(options: DocumentOptions) -> tuple[int, int]:
    if options.page_size == "Custom":
        width_mm, height_mm = options.custom_width_mm or 0.0, options.custom_height_mm or 0.0
    else:
        width_mm, height_mm = PAGE_SIZES_MM[options.page_size]
    if options.orientation == "landscape":
        width_mm, height_mm = max(width_mm, height_mm), min(width_mm, height_mm)
    else:
        width_mm, height_mm = min(width_mm, height_mm), max(width_mm, height_mm)
    return _mm_to_px(width_mm, options.dpi), _mm_to_px(height_mm, options.dpi)


def _mm_to_px(value: float, dpi: int) -> int:
    return max(1, int(value / MM_PER_INCH * dpi + 0.5))


def grid_shape(count: int, page_size: tuple[int, int], layout: str) -> tuple[int, int]:
    """Return ``(columns, rows)`` for ``count`` images on one page."""
    if count <= 1:
        return 1, 1
    major = math.ceil(math.sqrt(count))
    minor = math.ceil(count / major)
    if layout == "auto" and page_size[1] > page_size[0]:
        return minor, major
    return major, minor


def place_image(image: Image.Image, cell: tuple[int, int], placement: str) -> Image.Image:
    cell_w, cell_h = cell
    width, height = image.size
    if placement == "stretch":
        return image.resize((cell_w, cell_h), Image.Resampling.LANCZOS)
    if placement == "fill":
        scale = max(cell_w / width, cell_h / height)
        resized = image.resize(
            (max(1, round(width * scale)), max(1, round(height * scale))), Image.Resampling.LANCZOS
        )
        left = (resized.width - cell_w) // 2
        top = (resized.height - cell_h) // 2
        return resized.crop((left, top, left + cell_w, top + cell_h))
    scale = min(cell_w / width, cell_h / height)
    if placement == "center" and scale >= 1:
        return image
    return image.resize((max(1, round(width * scale)), max(1, round(height * scale))), Image.Resampling.LANCZOS)


def compose_pages(images: Sequence[Image.Image], options: DocumentOptions) -> list[Image.Image]:
    page_w, page_h = page_dimensions(options)
    margin = _mm_to_px(options.margin_mm, options.dpi) if options.margin_mm > 0 else 0
    inner_w = max(1, page_w - 2 * margin)
    inner_h = max(1, page_h - 2 * margin)
    per_page = options.images_per_page
    columns, rows = grid_shape(per_page, (page_w, page_h), options.page_layout)
    cell = (max(1, inner_w // columns), max(1, inner_h // rows))

    pages: list[Image.Image] = []
    for start in range(0, len(images), per_page):
        page = Image.new("RGB", (page_w, page_h), (255, 255, 255))
        for slot, image in enumerate(images[start : start + per_page]):
            column, row = slot % columns, slot // columns
            placed = place_image(image.convert("RGBA"), cell, options.image_placement)
            x = margin + column * cell[0] + (cell[0] - placed.width) // 2
            y = margin + row * cell[1] + (cell[1] - placed.height) // 2
            page.paste(placed, (x, y), placed)
        pages.append(page)
    return pages


def package_document(images: Sequence[Image.Image], options: DocumentOptions, quality: int) -> bytes:
    """Lay the rendered images out on pages and save them as one PDF."""
    if not images:
        raise InvalidSettings("A document needs at least one page image")
    pages = compose_pages(images, options)
    buffer = BytesIO()
    pages[0].save(
        buffer,
        format="PDF",
        save_all=True,
        append_images=pages[1:],
        resolution=float(options.dpi),
        quality=quality,
    )
    return buffer.getvalue()


__all__ = [
    "PAGE_SIZES_MM",
    "STANDARD_ICON_SIZES",
    "compose_pages",
    "grid_shape",
    "package_archive",
    "package_document",
    "package_icon",
    "page_dimensions",
    "place_image",
    "unique_name",
]
