"""Shared fixtures: keep every test away from the user's real config directory."""

import pytest


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    monkeypatch.setattr("sharepack.config.env.CONFIG_DIR", config_dir)
    monkeypatch.setattr("sharepack.config.env.TMP_DIR", tmp_path / "staging")
    return config_dir
