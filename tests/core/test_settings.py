"""
Configuration tests: ENV -> config file -> default precedence.
"""

import json
from pathlib import Path

import pytest

from sharepack.core import settings_registry
from sharepack.core.config import config
from sharepack.core.models import BatchSettings


def write_tab(config_dir: Path, tab: str, values: dict) -> None:
    path = config_dir / "settings" / f"{tab}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(values))


class TestSettingPrecedence:
    """Tests for where a setting value comes from."""

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("UPLOAD_POLL_ATTEMPTS", raising=False)
        assert config.get("UPLOAD_POLL_ATTEMPTS") == 10

    def test_config_file_overrides_default(self, isolated_config, monkeypatch):
        monkeypatch.delenv("UPLOAD_POLL_ATTEMPTS", raising=False)
        write_tab(isolated_config, "upload", {"UPLOAD_POLL_ATTEMPTS": 4})
        assert config.get("UPLOAD_POLL_ATTEMPTS") == 4

    def test_env_overrides_config_file(self, isolated_config, monkeypatch):
        write_tab(isolated_config, "upload", {"UPLOAD_POLL_ATTEMPTS": 4})
        monkeypatch.setenv("UPLOAD_POLL_ATTEMPTS", "7")
        assert config.get("UPLOAD_POLL_ATTEMPTS") == 7

    def test_unknown_key_returns_default(self):
        assert config.get("NOT_A_SETTING", "fallback") == "fallback"

    def test_attribute_access(self, monkeypatch):
        monkeypatch.setenv("ARCHIVE_PREFIX", "[TEST]")
        assert config.ARCHIVE_PREFIX == "[TEST]"

    def test_attribute_access_unknown_raises(self):
        with pytest.raises(AttributeError):
            config.NOT_A_SETTING


class TestEnvParsing:
    """Tests for typed parsing of environment values."""

    def test_checkbox_values(self, monkeypatch):
        monkeypatch.setenv("CONVERT_LINKS", "yes")
        assert config.get("CONVERT_LINKS") is True
        monkeypatch.setenv("CONVERT_LINKS", "off")
        assert config.get("CONVERT_LINKS") is False

    def test_number_clamped_to_range(self, monkeypatch):
        monkeypatch.setenv("MAX_PARALLEL_ARCHIVES", "99")
        assert config.get("MAX_PARALLEL_ARCHIVES") == 16

    def test_invalid_number_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("UPLOAD_POLL_DELAY", "soon")
        assert config.get("UPLOAD_POLL_DELAY") == 30

    def test_invalid_select_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("ARCHIVE_LEVEL", "insane")
        assert config.get("ARCHIVE_LEVEL") == "normal"

    def test_is_value_from_env(self, monkeypatch):
        config.get("ARCHIVE_FORMAT")
        _, field = settings_registry.find_field("ARCHIVE_FORMAT")
        monkeypatch.delenv("ARCHIVE_FORMAT", raising=False)
        assert settings_registry.is_value_from_env(field) is False
        monkeypatch.setenv("ARCHIVE_FORMAT", "zip")
        assert settings_registry.is_value_from_env(field) is True


class TestConfigFile:
    """Tests for config file persistence."""

    def test_save_merges_existing_values(self, isolated_config):
        assert settings_registry.save_config_file("batch", {"ARCHIVE_PREFIX": "[A]"})
        assert settings_registry.save_config_file("batch", {"ARCHIVE_LEVEL": "fast"})

        saved = settings_registry.load_config_file("batch")
        assert saved == {"ARCHIVE_PREFIX": "[A]", "ARCHIVE_LEVEL": "fast"}

    def test_invalid_json_is_ignored(self, isolated_config):
        path = isolated_config / "settings" / "batch.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert settings_registry.load_config_file("batch") == {}

    def test_tabs_are_registered_in_order(self):
        config.get("ARCHIVE_FORMAT")
        names = [tab.name for tab in settings_registry.get_all_settings_tabs()]
        assert names[:3] == ["batch", "upload", "conversion"]

    def test_non_object_json_is_ignored(self, isolated_config):
        write_tab(isolated_config, "batch", ["not", "an", "object"])
        assert settings_registry.load_config_file("batch") == {}


class TestDescribeSettings:
    """Tests for the effective-settings dump logged at startup."""

    def test_sources_and_masked_secrets(self, isolated_config, monkeypatch):
        monkeypatch.setenv("ONEFICHIER_API_KEY", "super-secret")
        monkeypatch.delenv("ARCHIVE_PREFIX", raising=False)
        monkeypatch.delenv("ARCHIVE_LEVEL", raising=False)
        write_tab(isolated_config, "batch", {"ARCHIVE_PREFIX": "[A]"})
        config.get("ARCHIVE_FORMAT")

        lines = settings_registry.describe_settings()

        assert "ONEFICHIER_API_KEY = ******** (env)" in lines
        assert "ARCHIVE_PREFIX = '[A]' (config)" in lines
        assert "ARCHIVE_LEVEL = 'normal' (default)" in lines
        assert not any("super-secret" in line for line in lines)


class TestBatchSettings:
    """Tests for BatchSettings.from_config."""

    def test_defaults(self, tmp_path, monkeypatch):
        for key in ("BATCH_TRANSFORM", "BATCH_ARCHIVE", "BATCH_UPLOAD", "ARCHIVE_OUTPUT_DIR"):
            monkeypatch.delenv(key, raising=False)
        settings = BatchSettings.from_config()

        assert settings.transform is False
        assert settings.archive is True
        assert settings.upload is True
        assert settings.output_dir == tmp_path / "staging"
        assert settings.upload_max_retries == 3

    def test_overrides_win_and_none_is_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ARCHIVE_FORMAT", "zip")
        settings = BatchSettings.from_config(archive_format=None, upload=False, output_dir=tmp_path / "out")

        assert settings.archive_format == "zip"
        assert settings.upload is False
        assert settings.output_dir == tmp_path / "out"
