"""Local image conversion toolkit."""

from .config import AppConfig, load_config, settings_from_dict
from .core import ConversionService
from .errors import ConversionError
from .jobs import BatchOrchestrator, CancellationToken, ConversionJob, JobStatus
from .models import ConversionArtifact, ConversionSettings, OutputFormat, SourceAsset

__all__ = [
    "AppConfig",
    "BatchOrchestrator",
    "CancellationToken",
    "ConversionArtifact",
    "ConversionError",
    "ConversionJob",
    "ConversionService",
    "ConversionSettings",
    "JobStatus",
    "OutputFormat",
    "SourceAsset",
    "load_config",
    "settings_from_dict",
]
