from pathlib import Path

from image_converter.utils import (
    atomic_write_bytes,
    derive_output_name,
    generate_run_id,
    iter_files,
    size_within_limit,
    slugify,
)


def test_slugify_basic() -> None:
    assert slugify("Hello World!.png") == "Hello-World.png"


def test_generate_run_id_unique() -> None:
    first = generate_run_id("test")
    second = generate_run_id("test")
    assert first != second
    assert first.startswith("test-")


def test_derive_output_name_uses_canonical_extension() -> None:
    assert derive_output_name("holiday.photo.jpeg", ".png") == "holiday.photo.png"
    assert derive_output_name("scan", ".jpg") == "scan.jpg"
    assert derive_output_name("nested/dir/logo.svg", ".ico") == "logo.ico"


def test_atomic_write_bytes_and_iter_files(tmp_path: Path) -> None:
    target = tmp_path / "out" / "a.bin"
    atomic_write_bytes(target, b"\x00\x01")
    assert target.read_bytes() == b"\x00\x01"
    assert list(iter_files([tmp_path])) == [target]


def test_size_within_limit() -> None:
    assert size_within_limit(1024 * 1024, 1)
    assert not size_within_limit(1024 * 1024 + 1, 1)
