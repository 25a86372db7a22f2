from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from enum import Enum

from .models import SourceAsset


class SourceKind(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    BMP = "bmp"
    WEBP = "webp"
    HEIC = "heic"
    TIFF = "tiff"
    SVG = "svg"

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @property
    def is_vector(self) -> bool:
        return self is SourceKind.SVG


@dataclass(slots=True)
class DetectionResult:
    kind: SourceKind
    mime_type: str
    sniffed: bool


EXTENSION_MAP: dict[str, SourceKind] = {
    ".jpg": SourceKind.JPEG,
    ".jpeg": SourceKind.JPEG,
    ".jpe": SourceKind.JPEG,
    ".png": SourceKind.PNG,
    ".gif": SourceKind.GIF,
    ".bmp": SourceKind.BMP,
    ".webp": SourceKind.WEBP,
    ".heic": SourceKind.HEIC,
    ".heif": SourceKind.HEIC,
    ".tif": SourceKind.TIFF,
    ".tiff": SourceKind.TIFF,
    ".svg": SourceKind.SVG,
}

MIME_MAP: dict[SourceKind, str] = {
    SourceKind.JPEG: "image/jpeg",
    SourceKind.PNG: "image/png",
    SourceKind.GIF: "image/gif",
    SourceKind.BMP: "image/bmp",
    SourceKind.WEBP: "image/webp",
    SourceKind.HEIC: "image/heic",
    SourceKind.TIFF: "image/tiff",
    SourceKind.SVG: "image/svg+xml",
}

_MIME_ALIASES: dict[str, SourceKind] = {
    "image/jpg": SourceKind.JPEG,
    "image/pjpeg": SourceKind.JPEG,
    "image/x-ms-bmp": SourceKind.BMP,
    "image/heif": SourceKind.HEIC,
    "image/heic-sequence": SourceKind.HEIC,
    "image/heif-sequence": SourceKind.HEIC,
}

HEIF_BRANDS = {b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1"}


class DetectionError(RuntimeError):
    """Raised when the source kind cannot be determined."""


def sniff_kind(data: bytes) -> SourceKind | None:
    header = data[:32]
    if header.startswith(b"\xff\xd8\xff"):
        return SourceKind.JPEG
    if header.startswith(b"\x89PNG\r\n\x1a\n"):
        return SourceKind.PNG
    if header.startswith((b"GIF87a", b"GIF89a")):
        return SourceKind.GIF
    if header.startswith(b"BM"):
        return SourceKind.BMP
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return SourceKind.WEBP
    if header.startswith((b"II*\x00", b"MM\x00*")):
        return SourceKind.TIFF
    if header[4:8] == b"ftyp" and header[8:12] in HEIF_BRANDS:
        return SourceKind.HEIC
    sample = data[:2048].lstrip().lower()
    if sample.startswith((b"<?xml", b"<svg", b"<!doctype svg", b"<!--")) and b"<svg" in sample:
        return SourceKind.SVG
    return None


def _kind_from_mime(mime_type: str | None) -> SourceKind | None:
    if not mime_type:
        return None
    normalized = mime_type.split(";", 1)[0].strip().lower()
    for kind, mime in MIME_MAP.items():
        if mime == normalized:
            return kind
    return _MIME_ALIASES.get(normalized)


def detect_source_kind(asset: SourceAsset) -> DetectionResult:
    sniffed = sniff_kind(asset.data)
    if sniffed is not None:
        return DetectionResult(kind=sniffed, mime_type=MIME_MAP[sniffed], sniffed=True)
    declared = _kind_from_mime(asset.mime_type)
    if declared is None:
        declared = EXTENSION_MAP.get(asset.suffix)
    if declared is None:
        guessed, _ = mimetypes.guess_type(asset.name)
        declared = _kind_from_mime(guessed)
    if declared is None:
        raise DetectionError(f"Unsupported source type: {asset.name} ({asset.mime_type or 'unknown'})")
    return DetectionResult(kind=declared, mime_type=MIME_MAP[declared], sniffed=False)


__all__ = [
    "DetectionError",
    "DetectionResult",
    "EXTENSION_MAP",
    "MIME_MAP",
    "SourceKind",
    "detect_source_kind",
    "sniff_kind",
]
