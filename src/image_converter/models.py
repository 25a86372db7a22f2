"""Domain models for image conversion jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Literal

from PIL import ImageColor

from .errors import InvalidSettings

if TYPE_CHECKING:
    from .logging import BatchSummary


CropMode = Literal["fit", "fill", "extend"]
VectorStyle = Literal["simple", "balanced", "detailed", "artistic"]

CROP_MODES: tuple[str, ...] = ("fit", "fill", "extend")
VECTOR_STYLES: tuple[str, ...] = ("simple", "balanced", "detailed", "artistic")
COLOR_TYPES: tuple[str, ...] = ("rgba", "rgb", "grayscale", "palette")
TIFF_COMPRESSIONS: tuple[str, ...] = ("raw", "tiff_lzw", "tiff_deflate", "packbits")
PAGE_SIZES: tuple[str, ...] = ("A3", "A4", "A5", "Letter", "Legal", "Tabloid", "Custom")
IMAGE_PLACEMENTS: tuple[str, ...] = ("fit", "fill", "center", "stretch")
PAGE_LAYOUTS: tuple[str, ...] = ("auto", "grid")


class OutputFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    SVG = "svg"
    ICO = "ico"
    PDF = "pdf"
    TIFF = "tiff"
    HEIC = "heic"

    @property
    def extension(self) -> str:
        if self is OutputFormat.JPEG:
            return ".jpg"
        return f".{self.value}"

    @property
    def mime_type(self) -> str:
        return _OUTPUT_MIME[self]

    @property
    def is_raster(self) -> bool:
        return self in {OutputFormat.JPEG, OutputFormat.PNG, OutputFormat.WEBP, OutputFormat.TIFF}

    @property
    def is_encodable(self) -> bool:
        return self is not OutputFormat.HEIC


_OUTPUT_MIME: dict[OutputFormat, str] = {
    OutputFormat.JPEG: "image/jpeg",
    OutputFormat.PNG: "image/png",
    OutputFormat.WEBP: "image/webp",
    OutputFormat.SVG: "image/svg+xml",
    OutputFormat.ICO: "image/x-icon",
    OutputFormat.PDF: "application/pdf",
    OutputFormat.TIFF: "image/tiff",
    OutputFormat.HEIC: "image/heic",
}

ARCHIVE_MIME = "application/zip"
STANDARD_ICON_SIZES: tuple[int, ...] = (16, 24, 32, 48, 64, 96, 128, 256)


@dataclass(frozen=True, slots=True)
class CropSpec:
    """Crop, orientation and output-resolution choices for one conversion."""

    aspect_ratio: float | None = None
    mode: CropMode = "fit"
    # Explicit crop rectangle in source pixels: (x, y, width, height).
    rect: tuple[float, float, float, float] | None = None
    rotation: float = 0.0
    flip_horizontal: bool = False
    flip_vertical: bool = False
    background: str = "#FFFFFF"
    transparent: bool = False
    output_width: int | None = None
    output_height: int | None = None

    @property
    def is_identity(self) -> bool:
        return (
            self.aspect_ratio is None
            and self.rect is None
            and self.rotation % 360 == 0
            and not self.flip_horizontal
            and not self.flip_vertical
            and self.output_width is None
            and self.output_height is None
        )


@dataclass(frozen=True, slots=True)
class RasterOptions:
    progressive: bool = False
    optimize: bool = True
    compression_level: int = 6
    color_type: Literal["rgba", "rgb", "grayscale", "palette"] = "rgba"
    lossless: bool = False
    method: int = 4
    tiff_compression: str = "tiff_lzw"


@dataclass(frozen=True, slots=True)
class VectorOptions:
    colors: int | None = None
    path_precision: float | None = None
    style: VectorStyle = "balanced"


@dataclass(frozen=True, slots=True)
class IconOptions:
    sizes: tuple[int, ...] = (16, 32, 48)
    include_all_sizes: bool = False
    export_mode: Literal["single", "multiple"] = "single"

    def resolved_sizes(self) -> tuple[int, ...]:
        if self.include_all_sizes:
            return STANDARD_ICON_SIZES
        return tuple(sorted(set(self.sizes)))


@dataclass(frozen=True, slots=True)
class DocumentOptions:
    page_size: str = "A4"
    orientation: Literal["portrait", "landscape"] = "portrait"
    dpi: int = 300
    image_placement: Literal["fit", "fill", "center", "stretch"] = "fit"
    margin_mm: float = 10.0
    images_per_page: int = 1
    page_layout: Literal["auto", "grid"] = "auto"
    merge: bool = True
    custom_width_mm: float | None = None
    custom_height_mm: float | None = None


@dataclass(frozen=True, slots=True)
class ConversionSettings:
    """Immutable settings snapshot applied to a single job."""

    output_format: OutputFormat = OutputFormat.PNG
    quality: int = 80
    max_width: int | None = None
    max_height: int | None = None
    maintain_aspect_ratio: bool = True
    crop: CropSpec | None = None
    raster: RasterOptions = field(default_factory=RasterOptions)
    vector: VectorOptions = field(default_factory=VectorOptions)
    icon: IconOptions = field(default_factory=IconOptions)
    document: DocumentOptions = field(default_factory=DocumentOptions)
    strip_metadata: bool = False

    @property
    def changes_geometry(self) -> bool:
        if self.max_width is not None or self.max_height is not None:
            return True
        return self.crop is not None and not self.crop.is_identity

    def validate(self) -> None:
        if not 0 <= self.quality <= 100:
            raise InvalidSettings(f"Quality must be between 0 and 100, got {self.quality}")
        for name, bound in (("max_width", self.max_width), ("max_height", self.max_height)):
            if bound is not None and bound <= 0:
                raise InvalidSettings(f"{name} must be positive, got {bound}")
        if self.crop is not None:
            _validate_crop(self.crop)
        _validate_raster(self.raster)
        _validate_vector(self.vector)
        _validate_icon(self.icon)
        _validate_document(self.document)


def _validate_crop(crop: CropSpec) -> None:
    if crop.aspect_ratio is not None and crop.aspect_ratio <= 0:
        raise InvalidSettings(f"Crop aspect ratio must be positive, got {crop.aspect_ratio}")
    if crop.mode not in CROP_MODES:
        raise InvalidSettings(f"Unknown crop mode: {crop.mode}")
    for name, value in (("output_width", crop.output_width), ("output_height", crop.output_height)):
        if value is not None and value <= 0:
            raise InvalidSettings(f"Crop {name} must be positive, got {value}")
    if crop.rect is not None and len(crop.rect) != 4:
        raise InvalidSettings("Crop rectangle must have four components")
    if not crop.transparent:
        try:
            ImageColor.getrgb(crop.background)
        except ValueError as exc:
            raise InvalidSettings(f"Invalid background color: {crop.background}") from exc


def _validate_raster(raster: RasterOptions) -> None:
    if not 0 <= raster.compression_level <= 9:
        raise InvalidSettings(f"PNG compression level must be 0-9, got {raster.compression_level}")
    if raster.color_type not in COLOR_TYPES:
        raise InvalidSettings(f"Unknown PNG color type: {raster.color_type}")
    if not 0 <= raster.method <= 6:
        raise InvalidSettings(f"WebP method must be 0-6, got {raster.method}")
    if raster.tiff_compression not in TIFF_COMPRESSIONS:
        raise InvalidSettings(f"Unknown TIFF compression: {raster.tiff_compression}")


def _validate_vector(vector: VectorOptions) -> None:
    if vector.style not in VECTOR_STYLES:
        raise InvalidSettings(f"Unknown vectorization style: {vector.style}")
    if vector.colors is not None and not 2 <= vector.colors <= 256:
        raise InvalidSettings(f"Vector color count must be 2-256, got {vector.colors}")
    if vector.path_precision is not None and vector.path_precision <= 0:
        raise InvalidSettings("Path precision must be positive")


def _validate_icon(icon: IconOptions) -> None:
    if icon.export_mode not in ("single", "multiple"):
        raise InvalidSettings(f"Unknown icon export mode: {icon.export_mode}")
    sizes = icon.resolved_sizes()
    if not sizes:
        raise InvalidSettings("At least one icon size is required")
    for size in sizes:
        if not 1 <= size <= 256:
            raise InvalidSettings(f"Icon sizes must be between 1 and 256, got {size}")


def _validate_document(document: DocumentOptions) -> None:
    if document.page_size not in PAGE_SIZES:
        raise InvalidSettings(f"Unknown page size: {document.page_size}")
    if document.page_size == "Custom" and not (
        document.custom_width_mm and document.custom_height_mm
        and document.custom_width_mm > 0 and document.custom_height_mm > 0
    ):
        raise InvalidSettings("Custom page size requires positive width and height")
    if document.orientation not in ("portrait", "landscape"):
        raise InvalidSettings(f"Unknown page orientation: {document.orientation}")
    if document.dpi <= 0:
        raise InvalidSettings(f"DPI must be positive, got {document.dpi}")
    if document.image_placement not in IMAGE_PLACEMENTS:
        raise InvalidSettings(f"Unknown image placement: {document.image_placement}")
    if document.page_layout not in PAGE_LAYOUTS:
        raise InvalidSettings(f"Unknown page layout: {document.page_layout}")
    if document.images_per_page < 1:
        raise InvalidSettings("Images per page must be at least 1")
    if document.margin_mm < 0:
        raise InvalidSettings("Margins cannot be negative")


@dataclass(frozen=True, slots=True)
class SourceAsset:
    """An in-memory source file with its declared name and MIME type."""

    name: str
    data: bytes
    mime_type: str | None = None

    @property
    def stem(self) -> str:
        base = self.name.rsplit("/", 1)[-1]
        if "." in base.lstrip("."):
            return base.rsplit(".", 1)[0]
        return base

    @property
    def suffix(self) -> str:
        base = self.name.rsplit("/", 1)[-1]
        if "." in base.lstrip("."):
            return "." + base.rsplit(".", 1)[1].lower()
        return ""


@dataclass(slots=True)
class ConversionArtifact:
    data: bytes
    file_name: str
    mime_type: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class ConversionOutput:
    """Result of a single pipeline run."""

    run_id: str
    artifact: ConversionArtifact
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchConversionResult:
    jobs: list
    summary: "BatchSummary"


__all__ = [
    "ARCHIVE_MIME",
    "BatchConversionResult",
    "ConversionArtifact",
    "ConversionOutput",
    "ConversionSettings",
    "CropSpec",
    "DocumentOptions",
    "IconOptions",
    "OutputFormat",
    "RasterOptions",
    "STANDARD_ICON_SIZES",
    "SourceAsset",
    "VectorOptions",
]
