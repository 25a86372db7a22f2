import pytest
from PIL import Image

from conftest import SVG_SOURCE, encode_image
from image_converter.detection import DetectionError, SourceKind, detect_source_kind, sniff_kind
from image_converter.models import SourceAsset


@pytest.mark.parametrize(
    ("fmt", "kind"),
    [
        ("PNG", SourceKind.PNG),
        ("JPEG", SourceKind.JPEG),
        ("GIF", SourceKind.GIF),
        ("BMP", SourceKind.BMP),
        ("WEBP", SourceKind.WEBP),
        ("TIFF", SourceKind.TIFF),
    ],
)
def test_sniff_raster_formats(fmt, kind) -> None:
    data = encode_image(Image.new("RGB", (4, 4), (10, 20, 30)), fmt)
    assert sniff_kind(data) is kind


def test_sniff_svg_and_heic_headers() -> None:
    assert sniff_kind(SVG_SOURCE) is SourceKind.SVG
    assert sniff_kind(b"  <svg xmlns='http://www.w3.org/2000/svg'></svg>") is SourceKind.SVG
    heic_header = b"\x00\x00\x00\x18ftypheic\x00\x00\x00\x00mif1heic"
    assert sniff_kind(heic_header) is SourceKind.HEIC


def test_detect_prefers_content_over_declared_type() -> None:
    data = encode_image(Image.new("RGB", (4, 4)), "PNG")
    result = detect_source_kind(SourceAsset(name="misnamed.jpg", data=data, mime_type="image/jpeg"))
    assert result.kind is SourceKind.PNG
    assert result.sniffed is True


def test_detect_falls_back_to_declared_mime_then_extension() -> None:
    by_mime = detect_source_kind(SourceAsset(name="blob", data=b"????", mime_type="image/heif"))
    assert by_mime.kind is SourceKind.HEIC
    assert by_mime.sniffed is False
    by_extension = detect_source_kind(SourceAsset(name="drawing.SVG", data=b"????"))
    assert by_extension.kind is SourceKind.SVG


def test_detect_unknown_source() -> None:
    with pytest.raises(DetectionError) as exc:
        detect_source_kind(SourceAsset(name="notes.txt", data=b"hello"))
    assert "Unsupported source type" in str(exc.value)
