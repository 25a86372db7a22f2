import json
from pathlib import Path

import pytest

from image_converter.config import dump_config, load_config, settings_from_dict
from image_converter.errors import InvalidSettings
from image_converter.models import ConversionSettings, OutputFormat
from image_converter.settings import get_settings


def test_load_config_reads_runtime_and_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        "\n".join(
            [
                "[runtime]",
                f'output_dir = "{(tmp_path / "out").as_posix()}"',
                "max_file_size_mb = 5",
                "job_timeout_s = 30",
                "enable_local_api = true",
                "",
                "[defaults]",
                'output_format = "jpg"',
                "quality = 70",
                "",
                "[defaults.crop]",
                'aspect_ratio = "16:9"',
                'mode = "fill"',
                "",
                "[defaults.icon]",
                "sizes = [16, 64]",
                'export_mode = "multiple"',
                "",
                "[api]",
                "port = 9000",
            ]
        ),
        encoding="utf-8",
    )
    config = load_config(config_path)
    assert config.runtime.output_dir == tmp_path / "out"
    assert config.runtime.max_file_size_mb == 5
    assert config.runtime.job_timeout_s == 30.0
    assert config.runtime.enable_local_api is True
    assert config.defaults.output_format is OutputFormat.JPEG
    assert config.defaults.quality == 70
    assert config.defaults.crop.aspect_ratio == pytest.approx(16 / 9)
    assert config.defaults.crop.mode == "fill"
    assert config.defaults.icon.sizes == (16, 64)
    assert config.api.port == 9000


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")
    assert config.runtime.output_dir == Path("runs")
    assert config.defaults == ConversionSettings()


def test_settings_from_dict_layers_over_base() -> None:
    base = ConversionSettings(quality=50, max_width=100)
    settings = settings_from_dict({"output_format": "webp", "raster": {"lossless": True}}, base=base)
    assert settings.output_format is OutputFormat.WEBP
    assert settings.quality == 50
    assert settings.max_width == 100
    assert settings.raster.lossless is True
    cleared = settings_from_dict({"max_width": None}, base=settings)
    assert cleared.max_width is None


def test_settings_from_dict_rejects_bad_input() -> None:
    with pytest.raises(InvalidSettings):
        settings_from_dict({"colour": "red"})
    with pytest.raises(InvalidSettings):
        settings_from_dict({"output_format": "bmp"})
    with pytest.raises(InvalidSettings):
        settings_from_dict({"quality": "high"})
    with pytest.raises(InvalidSettings):
        settings_from_dict({"crop": "square"})


def test_dump_config_is_json(tmp_path: Path) -> None:
    payload = json.loads(dump_config(load_config(tmp_path / "absent.toml")))
    assert payload["runtime"]["log_file"] == "log.jsonl"
    assert payload["defaults"]["output_format"] == "png"
    assert payload["defaults"]["icon"]["sizes"] == [16, 32, 48]


def test_env_settings(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("IMGC_CONFIG_PATH", str(tmp_path / "custom.toml"))
    monkeypatch.setenv("IMGC_ENABLE_LOCAL_API", "yes")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.config_path == tmp_path / "custom.toml"
        assert settings.enable_local_api is True
    finally:
        get_settings.cache_clear()
