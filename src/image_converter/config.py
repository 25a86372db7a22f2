from __future__ import annotations

import json
import tomllib
from dataclasses import MISSING, Field, asdict, dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from .errors import InvalidSettings
from .models import (
    ConversionSettings,
    CropSpec,
    DocumentOptions,
    IconOptions,
    OutputFormat,
    RasterOptions,
    VectorOptions,
)


CONFIG_FILE = Path("config.toml")

FORMAT_ALIASES: dict[str, OutputFormat] = {
    "jpg": OutputFormat.JPEG,
    "tif": OutputFormat.TIFF,
    "heif": OutputFormat.HEIC,
}


@dataclass(slots=True)
class RuntimeConfig:
    output_dir: Path = Path("runs")
    log_file: str = "log.jsonl"
    summary_csv: str = "summary.csv"
    max_file_size_mb: int = 50
    job_timeout_s: float | None = None
    enable_local_api: bool = False


@dataclass(slots=True)
class APIConfig:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class AppConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    defaults: ConversionSettings = field(default_factory=ConversionSettings)
    api: APIConfig = field(default_factory=APIConfig)

    @property
    def log_path(self) -> Path:
        return self.runtime.output_dir / self.runtime.log_file

    @property
    def summary_path(self) -> Path:
        return self.runtime.output_dir / self.runtime.summary_csv


def _read_toml(path: Path) -> Mapping[str, object]:
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def parse_output_format(value: object) -> OutputFormat:
    if isinstance(value, OutputFormat):
        return value
    normalized = str(value).strip().lower().lstrip(".")
    if normalized in FORMAT_ALIASES:
        return FORMAT_ALIASES[normalized]
    try:
        return OutputFormat(normalized)
    except ValueError as exc:
        raise InvalidSettings(f"Unknown output format: {value}") from exc


def parse_aspect_ratio(value: object) -> float:
    if isinstance(value, str) and ":" in value:
        width, _, height = value.partition(":")
        try:
            return float(width) / float(height)
        except (ValueError, ZeroDivisionError) as exc:
            raise InvalidSettings(f"Invalid aspect ratio: {value}") from exc
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise InvalidSettings(f"Invalid aspect ratio: {value}") from exc


def _merge(instance: Any, data: Mapping[str, object], coercers: Mapping[str, Callable[[Any], Any]]) -> Any:
    declared = {item.name: item for item in fields(instance)}
    names = set(declared)
    unknown = sorted(set(data) - names)
    if unknown:
        raise InvalidSettings(f"Unknown {type(instance).__name__} option(s): {', '.join(unknown)}")
    changes: dict[str, Any] = {}
    for key, value in data.items():
        coerce = coercers.get(key)
        if value is None:
            changes[key] = _field_default(declared[key])
            continue
        if coerce is None:
            changes[key] = value
            continue
        try:
            changes[key] = coerce(value)
        except (TypeError, ValueError) as exc:
            raise InvalidSettings(f"Invalid value for {key}: {value!r}") from exc
    return replace(instance, **changes)


def _field_default(item: Field) -> Any:
    if item.default is not MISSING:
        return item.default
    if item.default_factory is not MISSING:
        return item.default_factory()
    return None


def _nested(builder: Callable[[Mapping[str, object], Any], Any], current: Any) -> Callable[[Any], Any]:
    def build(value: Any) -> Any:
        if not isinstance(value, Mapping):
            raise InvalidSettings(f"Expected a table of options, got {value!r}")
        return builder(value, current)

    return build


def _bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _build_crop(data: Mapping[str, object], base: CropSpec | None) -> CropSpec:
    return _merge(
        base or CropSpec(),
        data,
        {
            "aspect_ratio": parse_aspect_ratio,
            "mode": str,
            "rect": lambda value: tuple(float(item) for item in value),
            "rotation": float,
            "flip_horizontal": _bool,
            "flip_vertical": _bool,
            "background": str,
            "transparent": _bool,
            "output_width": int,
            "output_height": int,
        },
    )


def _build_raster(data: Mapping[str, object], base: RasterOptions) -> RasterOptions:
    return _merge(
        base,
        data,
        {
            "progressive": _bool,
            "optimize": _bool,
            "compression_level": int,
            "color_type": str,
            "lossless": _bool,
            "method": int,
            "tiff_compression": str,
        },
    )


def _build_vector(data: Mapping[str, object], base: VectorOptions) -> VectorOptions:
    return _merge(base, data, {"colors": int, "path_precision": float, "style": str})


def _build_icon(data: Mapping[str, object], base: IconOptions) -> IconOptions:
    return _merge(
        base,
        data,
        {
            "sizes": lambda value: tuple(int(item) for item in value),
            "include_all_sizes": _bool,
            "export_mode": str,
        },
    )


def _build_document(data: Mapping[str, object], base: DocumentOptions) -> DocumentOptions:
    return _merge(
        base,
        data,
        {
            "page_size": str,
            "orientation": str,
            "dpi": int,
            "image_placement": str,
            "margin_mm": float,
            "images_per_page": int,
            "page_layout": str,
            "merge": _bool,
            "custom_width_mm": float,
            "custom_height_mm": float,
        },
    )


def settings_from_dict(
    data: Mapping[str, object] | None, base: ConversionSettings | None = None
) -> ConversionSettings:
    """Build a settings snapshot from a plain mapping layered over ``base``."""
    base = base or ConversionSettings()
    if not data:
        return base
    return _merge(
        base,
        data,
        {
            "output_format": parse_output_format,
            "quality": int,
            "max_width": int,
            "max_height": int,
            "maintain_aspect_ratio": _bool,
            "crop": _nested(_build_crop, base.crop),
            "raster": _nested(_build_raster, base.raster),
            "vector": _nested(_build_vector, base.vector),
            "icon": _nested(_build_icon, base.icon),
            "document": _nested(_build_document, base.document),
            "strip_metadata": _bool,
        },
    )


def settings_to_dict(settings: ConversionSettings) -> dict[str, object]:
    def convert(value: object) -> object:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {key: convert(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [convert(item) for item in value]
        return value

    return convert(asdict(settings))  # type: ignore[return-value]


def _build_runtime(data: Mapping[str, object] | None) -> RuntimeConfig:
    if not data:
        return RuntimeConfig()
    timeout = data.get("job_timeout_s")
    return RuntimeConfig(
        output_dir=Path(str(data.get("output_dir", "runs"))),
        log_file=str(data.get("log_file", "log.jsonl")),
        summary_csv=str(data.get("summary_csv", "summary.csv")),
        max_file_size_mb=int(data.get("max_file_size_mb", 50)),
        job_timeout_s=float(timeout) if timeout else None,
        enable_local_api=bool(data.get("enable_local_api", False)),
    )


def _build_api(data: Mapping[str, object] | None) -> APIConfig:
    if not data:
        return APIConfig()
    return APIConfig(host=str(data.get("host", "127.0.0.1")), port=int(data.get("port", 8000)))


def load_config(path: Path | None = None) -> AppConfig:
    path = path or CONFIG_FILE
    raw = _read_toml(path)
    runtime_data = raw.get("runtime") if isinstance(raw, Mapping) else None
    defaults_data = raw.get("defaults") if isinstance(raw, Mapping) else None
    api_data = raw.get("api") if isinstance(raw, Mapping) else None
    runtime = _build_runtime(runtime_data if isinstance(runtime_data, Mapping) else None)
    defaults = settings_from_dict(defaults_data if isinstance(defaults_data, Mapping) else None)
    defaults.validate()
    api = _build_api(api_data if isinstance(api_data, Mapping) else None)
    return AppConfig(runtime=runtime, defaults=defaults, api=api)


def dump_config(config: AppConfig) -> str:
    payload = {
        "runtime": {
            "output_dir": str(config.runtime.output_dir),
            "log_file": config.runtime.log_file,
            "summary_csv": config.runtime.summary_csv,
            "max_file_size_mb": config.runtime.max_file_size_mb,
            "job_timeout_s": config.runtime.job_timeout_s,
            "enable_local_api": config.runtime.enable_local_api,
        },
        "defaults": settings_to_dict(config.defaults),
        "api": {
            "host": config.api.host,
            "port": config.api.port,
        },
    }
    return json.dumps(payload, indent=2)
