from __future__ import annotations

from functools import lru_cache
from typing import Dict, Type

from .base import DecodedImage, Decoder, PillowDecoder
from .heic import HeicDecoder
from .svg import SvgDecoder
from ..detection import SourceKind

_DECODER_CLASSES: Dict[SourceKind, Type[Decoder]] = {
    SourceKind.JPEG: PillowDecoder,
    SourceKind.PNG: PillowDecoder,
    SourceKind.GIF: PillowDecoder,
    SourceKind.BMP: PillowDecoder,
    SourceKind.WEBP: PillowDecoder,
    SourceKind.TIFF: PillowDecoder,
    SourceKind.HEIC: HeicDecoder,
    SourceKind.SVG: SvgDecoder,
}


@lru_cache(maxsize=len(_DECODER_CLASSES))
def get_decoder(kind: SourceKind) -> Decoder:
    decoder_cls = _DECODER_CLASSES.get(kind)
    if not decoder_cls:
        raise KeyError(f"No decoder registered for {kind}")
    return decoder_cls()  # type: ignore[return-value]


__all__ = [
    "DecodedImage",
    "Decoder",
    "PillowDecoder",
    "get_decoder",
]
