import numpy as np
import pytest
from PIL import Image

from conftest import split_image
from image_converter import vector
from image_converter.errors import VectorizationFailure
from image_converter.models import ConversionSettings, OutputFormat, VectorOptions
from image_converter.vector import (
    FALLBACK_WARNING,
    downsample,
    embed_raster_svg,
    fit_segments,
    resolve_preset,
    trace,
    vectorize,
)


def svg_settings(quality: int = 80, **vector_options) -> ConversionSettings:
    return ConversionSettings(
        output_format=OutputFormat.SVG, quality=quality, vector=VectorOptions(**vector_options)
    )


def test_presets_follow_quality_defaults() -> None:
    balanced = resolve_preset(svg_settings(95))
    assert balanced.colors == 32
    assert balanced.line_tolerance == 0.5
    assert balanced.cycles == 5
    assert balanced.decimals == 2

    low = resolve_preset(svg_settings(50))
    assert low.colors == 8
    assert low.line_tolerance == 1.0
    assert low.cycles == 3
    assert low.decimals == 1


def test_style_presets() -> None:
    simple = resolve_preset(svg_settings(95, style="simple"))
    assert simple.colors == 8
    assert simple.path_omit == 12
    detailed = resolve_preset(svg_settings(70, style="detailed"))
    assert (detailed.colors, detailed.path_omit, detailed.min_color_ratio) == (16, 2, 0.005)
    artistic = resolve_preset(svg_settings(70, style="artistic"))
    assert artistic.colors == 12
    assert artistic.blur_radius == 2.0
    assert resolve_preset(svg_settings(40, style="artistic")).colors == 6


def test_explicit_color_count_and_precision() -> None:
    preset = resolve_preset(svg_settings(80, colors=4, path_precision=0.25))
    assert preset.colors == 4
    assert preset.curve_tolerance == 0.25


def test_downsample_caps_longest_side() -> None:
    assert downsample(Image.new("RGBA", (2048, 1024))).size == (1024, 512)
    small = Image.new("RGBA", (100, 50))
    assert downsample(small) is small


def test_fit_segments_straight_run_is_one_line() -> None:
    points = np.array([[0, 0], [1, 1], [2, 2], [3, 3], [4, 4]], dtype=float)
    segments = fit_segments(points, 0.5, 0.5)
    assert len(segments) == 1
    assert segments[0][0] == "L"
    assert tuple(segments[0][1]) == (4.0, 4.0)


def test_fit_segments_splits_corner() -> None:
    points = np.array([[0, 0], [5, 0], [10, 0], [10, 5], [10, 10]], dtype=float)
    segments = fit_segments(points, 0.1, 0.1)
    assert [segment[0] for segment in segments] == ["L", "L"]
    assert tuple(segments[0][1]) == (10.0, 0.0)


def test_trace_two_colour_image() -> None:
    image = split_image(64, 32)
    document = trace(image, resolve_preset(svg_settings(80, colors=4)))
    assert "<svg" in document
    assert 'viewBox="0 0 64 32"' in document
    assert "#ff0000" in document
    assert "#0000ff" in document
    assert "<path" in document


def test_trace_transparent_image_fails() -> None:
    with pytest.raises(VectorizationFailure):
        trace(Image.new("RGBA", (16, 16), (0, 0, 0, 0)), resolve_preset(svg_settings()))


def test_vectorize_falls_back_when_tracer_raises(monkeypatch) -> None:
    def broken_trace(*args, **kwargs):
        raise ValueError("corrupt buffer")

    monkeypatch.setattr(vector, "trace", broken_trace)
    payload, warnings = vectorize(split_image(32, 16), svg_settings())
    text = payload.decode("utf-8")
    assert warnings == [FALLBACK_WARNING]
    assert "data:image/jpeg;base64," in text
    assert "<image" in text


def test_embed_raster_svg_keeps_dimensions() -> None:
    document = embed_raster_svg(split_image(30, 10))
    assert 'width="30"' in document
    assert 'height="10"' in document
