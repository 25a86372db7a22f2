"""Resize and crop rectangle resolution."""

from __future__ import annotations

import math
from dataclasses import dataclass

from .errors import InvalidSettings

EXTEND_FACTOR = 1.2


def _round_px(value: float) -> int:
    return max(1, int(math.floor(value + 0.5)))


@dataclass(frozen=True, slots=True)
class CropRect:
    """Crop rectangle in source pixel space; origin may be negative."""

    x: float
    y: float
    width: float
    height: float

    @property
    def is_degenerate(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def to_box(self) -> tuple[int, int, int, int]:
        left = int(math.floor(self.x + 0.5))
        top = int(math.floor(self.y + 0.5))
        return (
            left,
            top,
            left + max(1, int(math.floor(self.width + 0.5))),
            top + max(1, int(math.floor(self.height + 0.5))),
        )

    def as_percent(self, src_w: int, src_h: int) -> tuple[float, float, float, float]:
        return (
            self.x / src_w * 100.0,
            self.y / src_h * 100.0,
            self.width / src_w * 100.0,
            self.height / src_h * 100.0,
        )

    def scaled(self, factor: float) -> CropRect:
        return CropRect(self.x * factor, self.y * factor, self.width * factor, self.height * factor)

    @classmethod
    def identity(cls, src_w: int, src_h: int) -> CropRect:
        return cls(0.0, 0.0, float(src_w), float(src_h))


def compute_resize(
    src_w: int,
    src_h: int,
    max_w: int | None = None,
    max_h: int | None = None,
    lock_aspect: bool = True,
) -> tuple[int, int]:
    """Return output dimensions that respect the optional bounds.

    With the aspect lock on, the image is only ever scaled down and the axis
    with the larger overflow decides the factor. Without it each axis is
    clamped on its own.
    """
    for name, bound in (("max width", max_w), ("max height", max_h)):
        if bound is not None and bound <= 0:
            raise InvalidSettings(f"{name} must be positive, got {bound}")
    if src_w <= 0 or src_h <= 0:
        raise InvalidSettings(f"Source dimensions must be positive, got {src_w}x{src_h}")
    if max_w is None and max_h is None:
        return src_w, src_h

    if not lock_aspect:
        width = min(src_w, max_w) if max_w is not None else src_w
        height = min(src_h, max_h) if max_h is not None else src_h
        return width, height

    scale = 1.0
    if max_w is not None:
        scale = min(scale, max_w / src_w)
    if max_h is not None:
        scale = min(scale, max_h / src_h)
    if scale >= 1.0:
        return src_w, src_h
    return _round_px(src_w * scale), _round_px(src_h * scale)


def compute_crop(src_w: int, src_h: int, target_aspect: float, mode: str) -> CropRect:
    if target_aspect is None or target_aspect <= 0:
        raise InvalidSettings(f"Target aspect ratio must be positive, got {target_aspect}")
    if src_w <= 0 or src_h <= 0:
        raise InvalidSettings(f"Source dimensions must be positive, got {src_w}x{src_h}")

    if mode == "fit":
        if src_w / src_h > target_aspect:
            height = float(src_h)
            width = height * target_aspect
        else:
            width = float(src_w)
            height = width / target_aspect
    elif mode in ("fill", "extend"):
        basis = float(max(src_w, src_h))
        if mode == "extend":
            basis *= EXTEND_FACTOR
        if target_aspect >= 1:
            width = basis
            height = width / target_aspect
        else:
            height = basis
            width = height * target_aspect
    else:
        raise InvalidSettings(f"Unknown crop mode: {mode}")

    return CropRect(
        x=(src_w - width) / 2,
        y=(src_h - height) / 2,
        width=width,
        height=height,
    )


__all__ = ["CropRect", "compute_crop", "compute_resize"]
