from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import DecodeError


@dataclass(slots=True)
class DecodedImage:
    image: Image.Image
    exif: bytes | None = None
    icc_profile: bytes | None = None
    # Factor a vector source was rasterised at relative to its intrinsic size.
    scale: float = 1.0

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size


class Decoder(Protocol):
    def decode(self, data: bytes, *, scale: float = 1.0) -> DecodedImage:  # pragma: no cover - interface
        ...


class PillowDecoder:
    """Decode any raster format Pillow can open into an RGBA buffer."""

    def decode(self, data: bytes, *, scale: float = 1.0) -> DecodedImage:
        try:
            with Image.open(BytesIO(data)) as opened:
                opened.load()
                icc = opened.info.get("icc_profile")
                oriented = ImageOps.exif_transpose(opened)
                exif = oriented.info.get("exif") or opened.info.get("exif")
                image = oriented.convert("RGBA")
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeError(f"Unable to decode image: {exc}") from exc
        if image.width <= 0 or image.height <= 0:
            raise DecodeError("Decoded image has no pixels")
        return DecodedImage(image=image, exif=exif, icc_profile=icc)
