"""Decision table mapping (source kind, output format, settings) to a pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .detection import SourceKind
from .errors import UnsupportedConversionError
from .models import ARCHIVE_MIME, ConversionSettings, OutputFormat


class Stage(str, Enum):
    COPY = "copy"
    RASTERIZE = "rasterize"
    DECODE = "decode"
    TRANSFORM = "transform"
    ENCODE = "encode"
    TRACE = "trace"
    PACKAGE = "package"


class Route(str, Enum):
    PASSTHROUGH = "passthrough"
    RASTER = "raster"
    TRACE = "trace"
    ICON = "icon"
    ICON_ARCHIVE = "icon_archive"
    DOCUMENT = "document"


@dataclass(frozen=True, slots=True)
class PipelineInvocation:
    route: Route
    stages: tuple[Stage, ...]
    input_kind: SourceKind
    output_format: OutputFormat
    sizes: tuple[int, ...] = ()

    @property
    def extension(self) -> str:
        if self.route is Route.ICON_ARCHIVE:
            return ".zip"
        return self.output_format.extension

    @property
    def mime_type(self) -> str:
        if self.route is Route.ICON_ARCHIVE:
            return ARCHIVE_MIME
        return self.output_format.mime_type


def plan_conversion(
    input_kind: SourceKind,
    output_format: OutputFormat,
    settings: ConversionSettings,
) -> PipelineInvocation:
    """Select the pipeline for one job or fail before any decode work."""
    settings.validate()
    if not isinstance(input_kind, SourceKind):
        raise UnsupportedConversionError(f"Unsupported source kind: {input_kind!r}")
    if not isinstance(output_format, OutputFormat) or not output_format.is_encodable:
        label = getattr(output_format, "value", output_format)
        raise UnsupportedConversionError(f"Output format {label} cannot be encoded")

    load = Stage.RASTERIZE if input_kind.is_vector else Stage.DECODE

    if output_format is OutputFormat.SVG:
        if input_kind.is_vector and not settings.changes_geometry:
            return PipelineInvocation(Route.PASSTHROUGH, (Stage.COPY,), input_kind, output_format)
        return PipelineInvocation(
            Route.TRACE, (load, Stage.TRANSFORM, Stage.TRACE), input_kind, output_format
        )
    if output_format.is_raster:
        return PipelineInvocation(
            Route.RASTER, (load, Stage.TRANSFORM, Stage.ENCODE), input_kind, output_format
        )
    if output_format is OutputFormat.ICO:
        if settings.icon.export_mode == "multiple":
            route, stages = Route.ICON_ARCHIVE, (load, Stage.TRANSFORM, Stage.ENCODE, Stage.PACKAGE)
        else:
            route, stages = Route.ICON, (load, Stage.TRANSFORM, Stage.PACKAGE)
        return PipelineInvocation(
            route,
            stages,
            input_kind,
            output_format,
            sizes=settings.icon.resolved_sizes(),
        )
    if output_format is OutputFormat.PDF:
        return PipelineInvocation(
            Route.DOCUMENT, (load, Stage.TRANSFORM, Stage.PACKAGE), input_kind, output_format
        )
    raise UnsupportedConversionError(f"No pipeline for {input_kind.value} -> {output_format.value}")


__all__ = ["PipelineInvocation", "Route", "Stage", "plan_conversion"]
