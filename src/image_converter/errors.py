from __future__ import annotations


class ConversionError(RuntimeError):
    """Base error for every failure recorded on a conversion job."""

    code = "CONVERSION_FAILED"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidSettings(ConversionError):
    code = "INVALID_SETTINGS"


class UnsupportedConversionError(ConversionError):
    code = "UNSUPPORTED_CONVERSION"


class InvalidCropError(ConversionError):
    code = "INVALID_CROP"


class DecodeError(ConversionError):
    code = "DECODE_FAILED"


class VectorizationFailure(ConversionError):
    """Raised by the tracer; always recovered by the raster-embedding fallback."""

    code = "VECTORIZATION_FAILED"


class CancelledError(ConversionError):
    code = "CANCELED"


__all__ = [
    "ConversionError",
    "InvalidSettings",
    "UnsupportedConversionError",
    "InvalidCropError",
    "DecodeError",
    "VectorizationFailure",
    "CancelledError",
]
