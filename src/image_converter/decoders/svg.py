from __future__ import annotations

from .base import DecodedImage, PillowDecoder
from ..errors import DecodeError


class SvgDecoder:
    """Rasterise SVG sources through cairosvg, optionally at a larger scale."""

    def __init__(self) -> None:
        try:
            import cairosvg
        except (ModuleNotFoundError, OSError) as exc:  # pragma: no cover - import guard
            raise RuntimeError("cairosvg and the cairo library are required to rasterise SVG sources") from exc

        self._cairosvg = cairosvg
        self._raster = PillowDecoder()

    def decode(self, data: bytes, *, scale: float = 1.0) -> DecodedImage:
        try:
            png = self._cairosvg.svg2png(bytestring=data, scale=scale)
        except Exception as exc:  # cairosvg raises parser-specific errors
            raise DecodeError(f"Unable to rasterise SVG: {exc}") from exc
        decoded = self._raster.decode(png)
        return DecodedImage(image=decoded.image, scale=scale)
