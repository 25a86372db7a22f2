from __future__ import annotations

from .base import PillowDecoder


class HeicDecoder(PillowDecoder):
    def __init__(self) -> None:
        try:
            from pillow_heif import register_heif_opener
        except ModuleNotFoundError as exc:  # pragma: no cover - import guard
            raise RuntimeError("pillow-heif dependency is required to decode HEIC/HEIF sources") from exc

        register_heif_opener()
