"""Tests covering configuration loading and environment overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from wavcache import config as config_module
from wavcache.config import Settings

_ENV_KEYS = (
    "WAVCACHE_DATA_DIR",
    "WAVCACHE_CACHE_DIR",
    "SOX_PATH",
    "SPECTROGRAM_TIMEOUT_SEC",
    "LISTEN_HOST",
    "LISTEN_PORT",
    "DEV",
    "LOG_LEVEL",
)


@pytest.fixture
def clean_config(monkeypatch, tmp_path: Path):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    yield tmp_path
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)


def test_yaml_file_overrides_defaults(clean_config, monkeypatch):
    config_path = clean_config / "custom.yaml"
    config_path.write_text(
        "paths:\n"
        "  data_dir: /recordings\n"
        "spectrogram:\n"
        "  options: ['-Y', '200', '-x', '640']\n"
    )
    monkeypatch.setenv("WAVCACHE_CONFIG", str(config_path))

    cfg = config_module.get_cfg()

    assert cfg["paths"]["data_dir"] == "/recordings"
    assert cfg["paths"]["cache_dir"] == "/srv/wavcache/cache"
    assert cfg["spectrogram"]["command"] == "sox"
    assert config_module.active_config_path() == config_path.resolve()

    settings = Settings.from_cfg(cfg)
    assert settings.data_dir == Path("/recordings")
    assert settings.sox_options == ("-Y", "200", "-x", "640")


def test_env_overrides(clean_config, monkeypatch):
    monkeypatch.setenv("WAVCACHE_CONFIG", str(clean_config / "missing.yaml"))
    monkeypatch.setenv("WAVCACHE_DATA_DIR", str(clean_config / "data"))
    monkeypatch.setenv("WAVCACHE_CACHE_DIR", str(clean_config / "cache"))
    monkeypatch.setenv("SOX_PATH", "/usr/local/bin/sox")
    monkeypatch.setenv("SPECTROGRAM_TIMEOUT_SEC", "12.5")
    monkeypatch.setenv("LISTEN_PORT", "9090")
    monkeypatch.setenv("DEV", "1")

    settings = Settings.from_cfg(config_module.get_cfg())

    assert settings.data_dir == clean_config / "data"
    assert settings.cache_dir == clean_config / "cache"
    assert settings.sox_command == "/usr/local/bin/sox"
    assert settings.transform_timeout == 12.5
    assert settings.listen_port == 9090
    assert settings.log_level == "DEBUG"


def test_invalid_env_values_are_ignored(clean_config, monkeypatch):
    monkeypatch.setenv("WAVCACHE_CONFIG", str(clean_config / "missing.yaml"))
    monkeypatch.setenv("LISTEN_PORT", "not-a-port")

    cfg = config_module.get_cfg()
    assert cfg["web_server"]["listen_port"] == 8080


def test_reload_picks_up_changes(clean_config, monkeypatch):
    config_path = clean_config / "config.yaml"
    config_path.write_text("web_server:\n  listen_port: 8001\n")
    monkeypatch.setenv("WAVCACHE_CONFIG", str(config_path))

    assert config_module.get_cfg()["web_server"]["listen_port"] == 8001
    config_path.write_text("web_server:\n  listen_port: 8002\n")
    assert config_module.get_cfg()["web_server"]["listen_port"] == 8001
    assert config_module.reload_cfg()["web_server"]["listen_port"] == 8002


def test_non_mapping_yaml_is_rejected(clean_config, monkeypatch):
    config_path = clean_config / "broken.yaml"
    config_path.write_text("- just\n- a list\n")
    monkeypatch.setenv("WAVCACHE_CONFIG", str(config_path))

    with pytest.raises(ValueError):
        config_module.get_cfg()


def test_settings_defaults_from_empty_cfg():
    settings = Settings.from_cfg({})
    assert settings.sox_command == "sox"
    assert settings.sox_options == ("-Y", "130")
    assert settings.listen_port == 8080
    assert settings.executor_workers == 4


def test_explicit_zero_values_are_kept():
    settings = Settings.from_cfg({"spectrogram": {"timeout_sec": 0}, "web_server": {"listen_port": 0}})
    assert settings.transform_timeout == 0.0
    assert settings.listen_port == 0
