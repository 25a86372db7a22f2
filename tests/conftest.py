from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from image_converter.config import AppConfig, RuntimeConfig
from image_converter.core import ConversionService
from image_converter.models import SourceAsset


def build_config(output_dir: Path) -> AppConfig:
    runtime = RuntimeConfig()
    runtime.output_dir = output_dir
    runtime.log_file = "log.jsonl"
    runtime.summary_csv = "summary.csv"
    return AppConfig(runtime=runtime)


def encode_image(image: Image.Image, fmt: str = "PNG", **params: object) -> bytes:
    buffer = BytesIO()
    if fmt == "JPEG":
        image = image.convert("RGB")
    image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


def split_image(width: int, height: int) -> Image.Image:
    """Left half red, right half blue."""
    image = Image.new("RGBA", (width, height), (255, 0, 0, 255))
    image.paste((0, 0, 255, 255), (width // 2, 0, width, height))
    return image


SVG_SOURCE = (
    b'<?xml version="1.0" encoding="UTF-8"?>\n'
    b'<svg xmlns="http://www.w3.org/2000/svg" width="40" height="20" viewBox="0 0 40 20">'
    b'<rect width="20" height="20" fill="#ff0000"/><rect x="20" width="20" height="20" fill="#0000ff"/>'
    b"</svg>"
)


def cairo_available() -> bool:
    try:
        import cairosvg  # noqa: F401
    except (ImportError, OSError):
        return False
    return True


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return build_config(tmp_path / "runs")


@pytest.fixture
def service(config: AppConfig) -> ConversionService:
    return ConversionService(config)


@pytest.fixture
def png_asset() -> Callable[..., SourceAsset]:
    def factory(
        width: int = 64,
        height: int = 32,
        name: str = "sample.png",
        color: tuple[int, int, int, int] | None = None,
    ) -> SourceAsset:
        image = split_image(width, height) if color is None else Image.new("RGBA", (width, height), color)
        return SourceAsset(name=name, data=encode_image(image), mime_type="image/png")

    return factory


@pytest.fixture
def jpeg_asset() -> Callable[..., SourceAsset]:
    def factory(width: int = 64, height: int = 48, name: str = "photo.jpg") -> SourceAsset:
        image = Image.new("RGB", (width, height), (30, 120, 200))
        return SourceAsset(name=name, data=encode_image(image, "JPEG", quality=85), mime_type="image/jpeg")

    return factory
