from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

from PIL import Image

from .config import AppConfig
from .decoders import DecodedImage, get_decoder
from .detection import DetectionError, DetectionResult, SourceKind, detect_source_kind
from .dispatch import PipelineInvocation, Route, Stage, plan_conversion
from .errors import CancelledError, ConversionError, DecodeError, UnsupportedConversionError
from .logging import RunLogEntry, RunLogger, StageTimings
from .models import (
    ConversionArtifact,
    ConversionOutput,
    ConversionSettings,
    OutputFormat,
    SourceAsset,
)
from .packaging import package_archive, package_document, package_icon
from .raster import SurfacePool, encode, plan_render, render
from .utils import derive_output_name, generate_run_id, size_within_limit
from .vector import vectorize

ProgressCallback = Callable[[float], None]

MAX_VECTOR_SCALE = 8.0


class SupportsCancel(Protocol):
    def is_set(self) -> bool:  # pragma: no cover - interface
        ...


@dataclass(slots=True)
class _ConversionContext:
    run_id: str
    asset: SourceAsset
    settings: ConversionSettings
    callback: ProgressCallback
    cancellation: SupportsCancel | None
    surfaces: SurfacePool
    timings: StageTimings = field(default_factory=StageTimings)
    warnings: list[str] = field(default_factory=list)
    detection: DetectionResult | None = None
    invocation: PipelineInvocation | None = None
    decoded: DecodedImage | None = None
    frames: list[Image.Image] = field(default_factory=list)
    entries: list[tuple[str, bytes]] = field(default_factory=list)
    payload: bytes = b""


@dataclass(slots=True)
class RenderedPage:
    """A transformed page image waiting to be packed into a document."""

    run_id: str
    asset: SourceAsset
    image: Image.Image
    warnings: list[str]


class ConversionService:
    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._logger = RunLogger(config.log_path)

    @property
    def config(self) -> AppConfig:
        return self._config

    def convert(
        self,
        asset: SourceAsset,
        settings: ConversionSettings | None = None,
        *,
        run_id: str | None = None,
        surfaces: SurfacePool | None = None,
        progress: ProgressCallback | None = None,
        cancellation: SupportsCancel | None = None,
    ) -> ConversionOutput:
        context = self._build_context(asset, settings, run_id, surfaces, progress, cancellation)
        context.callback(0.0)
        try:
            artifact = self._convert_internal(context)
        except ConversionError as exc:
            self._log_failure(context, exc)
            raise
        context.callback(1.0)
        self._append_success_log(context, artifact)
        return ConversionOutput(run_id=context.run_id, artifact=artifact, warnings=list(context.warnings))

    def render_page(
        self,
        asset: SourceAsset,
        settings: ConversionSettings | None = None,
        *,
        run_id: str | None = None,
        surfaces: SurfacePool | None = None,
        progress: ProgressCallback | None = None,
        cancellation: SupportsCancel | None = None,
    ) -> RenderedPage:
        """Run the decode and transform stages of a document conversion only."""
        context = self._build_context(asset, settings, run_id, surfaces, progress, cancellation)
        context.callback(0.0)
        try:
            invocation = self._plan(context)
            if invocation.route is not Route.DOCUMENT:
                raise UnsupportedConversionError(
                    f"Output format {invocation.output_format.value} is not a document format"
                )
            self._run_stages(context, [stage for stage in invocation.stages if stage is not Stage.PACKAGE])
            image = context.frames[0]
        except ConversionError as exc:
            self._log_failure(context, exc)
            raise
        context.callback(0.8)
        return RenderedPage(run_id=context.run_id, asset=asset, image=image, warnings=list(context.warnings))

    def package_pages(
        self,
        pages: list[RenderedPage],
        settings: ConversionSettings,
        *,
        cancellation: SupportsCancel | None = None,
    ) -> ConversionArtifact:
        """Pack rendered pages into one PDF named after the first page's source."""
        if cancellation is not None and cancellation.is_set():
            raise CancelledError("Job canceled during package")
        start = time.perf_counter()
        data = package_document([page.image for page in pages], settings.document, settings.quality)
        elapsed = (time.perf_counter() - start) * 1000
        owner = pages[0]
        artifact = ConversionArtifact(
            data=data,
            file_name=derive_output_name(owner.asset.name, OutputFormat.PDF.extension),
            mime_type=OutputFormat.PDF.mime_type,
        )
        self._logger.append(
            RunLogEntry(
                run_id=owner.run_id,
                source=owner.asset.name,
                status="success",
                source_kind="document",
                output_format=OutputFormat.PDF.value,
                route=Route.DOCUMENT.value,
                warnings=[warning for page in pages for warning in page.warnings],
                error_code=None,
                timings=StageTimings(package_ms=elapsed),
                output_name=artifact.file_name,
                size_bytes=artifact.size_bytes,
            )
        )
        return artifact

    def _build_context(
        self,
        asset: SourceAsset,
        settings: ConversionSettings | None,
        run_id: str | None,
        surfaces: SurfacePool | None,
        progress: ProgressCallback | None,
        cancellation: SupportsCancel | None,
    ) -> _ConversionContext:
        return _ConversionContext(
            run_id=run_id or generate_run_id(),
            asset=asset,
            settings=settings or self._config.defaults,
            callback=progress or (lambda _: None),
            cancellation=cancellation,
            surfaces=surfaces or SurfacePool(),
        )

    def _convert_internal(self, context: _ConversionContext) -> ConversionArtifact:
        invocation = self._plan(context)
        self._run_stages(context, invocation.stages)
        return self._artifact(context, context.payload)

    def _run_stages(self, context: _ConversionContext, stages: Sequence[Stage]) -> None:
        """Run each planned stage in order, polling cancellation at every boundary."""
        handlers: dict[Stage, Callable[[_ConversionContext], None]] = {
            Stage.COPY: self._copy,
            Stage.RASTERIZE: self._decode,
            Stage.DECODE: self._decode,
            Stage.TRANSFORM: self._render_frames,
            Stage.ENCODE: self._encode,
            Stage.TRACE: self._trace,
            Stage.PACKAGE: self._package,
        }
        for stage in stages:
            self._ensure_not_cancelled(context, stage.value)
            handlers[stage](context)

    def _plan(self, context: _ConversionContext) -> PipelineInvocation:
        self._ensure_not_cancelled(context, "initialization")
        self._validate_source(context)
        context.settings.validate()
        try:
            context.detection = detect_source_kind(context.asset)
        except DetectionError as exc:
            raise UnsupportedConversionError(str(exc)) from exc
        context.invocation = plan_conversion(
            context.detection.kind, context.settings.output_format, context.settings
        )
        context.callback(0.05)
        return context.invocation

    def _validate_source(self, context: _ConversionContext) -> None:
        if not context.asset.data:
            raise DecodeError(f"Source file is empty: {context.asset.name}")
        if not size_within_limit(len(context.asset.data), self._config.runtime.max_file_size_mb):
            raise ConversionError(
                f"File exceeds configured limit: {context.asset.name}", code="SIZE_LIMIT"
            )

    def _copy(self, context: _ConversionContext) -> None:
        context.payload = bytes(context.asset.data)

    def _decode(self, context: _ConversionContext) -> None:
        start = time.perf_counter()
        kind = context.detection.kind if context.detection else SourceKind.PNG
        decoder = get_decoder(kind)
        decoded = decoder.decode(context.asset.data)
        if kind.is_vector:
            scale = self._vector_scale(decoded.size, context)
            if scale > 1.0:
                intrinsic_width = decoded.image.width
                decoded = decoder.decode(context.asset.data, scale=scale)
                decoded.scale = decoded.image.width / intrinsic_width
        context.decoded = decoded
        context.timings.decode_ms = (time.perf_counter() - start) * 1000
        context.callback(0.25)

    def _vector_scale(self, size: tuple[int, int], context: _ConversionContext) -> float:
        width, height = size
        settings = context.settings
        wanted = 1.0
        invocation = context.invocation
        if invocation is not None and invocation.sizes:
            wanted = max(invocation.sizes) / max(1, min(width, height))
        crop = settings.crop
        if crop is not None:
            if crop.output_width:
                wanted = max(wanted, crop.output_width / width)
            if crop.output_height:
                wanted = max(wanted, crop.output_height / height)
        return min(wanted, MAX_VECTOR_SCALE)

    def _render_frames(self, context: _ConversionContext) -> None:
        decoded = context.decoded
        assert decoded is not None
        start = time.perf_counter()
        width, height = decoded.size
        invocation = context.invocation
        squares: list[int | None] = list(invocation.sizes) if invocation and invocation.sizes else [None]
        context.frames = []
        for square in squares:
            plan = plan_render(width, height, context.settings, square=square, source_scale=decoded.scale)
            context.frames.append(render(decoded.image, plan, context.surfaces))
        context.timings.transform_ms = (time.perf_counter() - start) * 1000
        context.callback(0.5)

    def _encode(self, context: _ConversionContext) -> None:
        invocation = context.invocation
        assert invocation is not None
        settings = context.settings
        start = time.perf_counter()
        if invocation.route is Route.ICON_ARCHIVE:
            context.entries = [
                (f"icon-{frame.width}x{frame.height}.png", encode(frame, OutputFormat.PNG, settings))
                for frame in context.frames
            ]
        else:
            decoded = context.decoded
            context.payload = encode(
                context.frames[0],
                invocation.output_format,
                settings,
                exif=decoded.exif if decoded else None,
                icc_profile=decoded.icc_profile if decoded else None,
            )
        context.timings.encode_ms = (time.perf_counter() - start) * 1000
        context.callback(0.8)

    def _trace(self, context: _ConversionContext) -> None:
        start = time.perf_counter()
        context.payload, warnings = vectorize(
            context.frames[0],
            context.settings,
            checkpoint=lambda: self._ensure_not_cancelled(context, Stage.TRACE.value),
        )
        context.warnings.extend(warnings)
        context.timings.encode_ms = (time.perf_counter() - start) * 1000
        context.callback(0.8)

    def _package(self, context: _ConversionContext) -> None:
        invocation = context.invocation
        assert invocation is not None
        start = time.perf_counter()
        if invocation.route is Route.ICON:
            context.payload = package_icon(context.frames)
        elif invocation.route is Route.ICON_ARCHIVE:
            context.payload = package_archive(context.entries)
        else:
            settings = context.settings
            context.payload = package_document(context.frames, settings.document, settings.quality)
        context.timings.package_ms = (time.perf_counter() - start) * 1000

    def _artifact(self, context: _ConversionContext, payload: bytes) -> ConversionArtifact:
        invocation = context.invocation
        assert invocation is not None
        return ConversionArtifact(
            data=payload,
            file_name=derive_output_name(context.asset.name, invocation.extension),
            mime_type=invocation.mime_type,
        )

    def _ensure_not_cancelled(self, context: _ConversionContext, stage: str) -> None:
        if context.cancellation is not None and context.cancellation.is_set():
            raise CancelledError(f"Job canceled during {stage}")

    def _log_failure(self, context: _ConversionContext, exc: ConversionError) -> None:
        status = "cancelled" if isinstance(exc, CancelledError) else "failure"
        self._logger.append(
            RunLogEntry(
                run_id=context.run_id,
                source=context.asset.name,
                status=status,
                source_kind=context.detection.kind.value if context.detection else "unknown",
                output_format=context.settings.output_format.value,
                route=context.invocation.route.value if context.invocation else "none",
                warnings=list(context.warnings),
                error_code=exc.code,
                timings=context.timings,
                output_name=None,
                size_bytes=len(context.asset.data),
            )
        )

    def _append_success_log(self, context: _ConversionContext, artifact: ConversionArtifact) -> None:
        self._logger.append(
            RunLogEntry(
                run_id=context.run_id,
                source=context.asset.name,
                status="success",
                source_kind=context.detection.kind.value if context.detection else "unknown",
                output_format=context.settings.output_format.value,
                route=context.invocation.route.value if context.invocation else "none",
                warnings=list(context.warnings),
                error_code=None,
                timings=context.timings,
                output_name=artifact.file_name,
                size_bytes=artifact.size_bytes,
            )
        )


__all__ = ["ConversionService", "ProgressCallback", "RenderedPage"]
