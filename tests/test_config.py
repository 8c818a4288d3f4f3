"""Tests for settings and logging configuration."""

import logging
from pathlib import Path

import pytest

from grstack.cache import DEFAULT_TTL_SECONDS
from grstack.config import load_settings
from grstack.exceptions import ConfigError
from grstack.log import configure_logging, get_log_level


class TestLoadSettings:
    """Tests for load_settings."""

    def test_defaults(self, tmp_path: Path) -> None:
        settings = load_settings({"XDG_CACHE_HOME": str(tmp_path)})

        assert settings.log == "info"
        assert settings.remote is None
        assert settings.cache_dir == tmp_path / "grstack"
        assert settings.cache_ttl == DEFAULT_TTL_SECONDS

    def test_home_cache_without_xdg(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))

        assert load_settings({}).cache_dir == tmp_path / ".cache" / "grstack"

    def test_from_environment(self, tmp_path: Path) -> None:
        settings = load_settings(
            {
                "GRSTACK_LOG": "debug",
                "GRSTACK_REMOTE": "gerrit",
                "GRSTACK_CACHE_DIR": str(tmp_path / "cache"),
                "GRSTACK_CACHE_TTL": "30",
            }
        )

        assert settings.log == "debug"
        assert settings.remote == "gerrit"
        assert settings.cache_dir == tmp_path / "cache"
        assert settings.cache_ttl == 30

    def test_blank_remote_means_auto(self, tmp_path: Path) -> None:
        settings = load_settings({"GRSTACK_REMOTE": " ", "GRSTACK_CACHE_DIR": str(tmp_path)})
        assert settings.remote is None

    @pytest.mark.parametrize("ttl", ["soon", "-1"])
    def test_invalid_ttl(self, ttl: str, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="cache_ttl"):
            load_settings({"GRSTACK_CACHE_TTL": ttl, "GRSTACK_CACHE_DIR": str(tmp_path)})


class TestLogging:
    """Tests for log configuration."""

    @pytest.mark.parametrize(
        "name,level",
        [
            ("trace", logging.DEBUG),
            ("DEBUG", logging.DEBUG),
            ("info", logging.INFO),
            ("warn", logging.WARNING),
            ("error", logging.ERROR),
            ("nonsense", logging.INFO),
        ],
    )
    def test_get_log_level(self, name: str, level: int) -> None:
        assert get_log_level(name) == level

    def test_configure_sets_root_level(self) -> None:
        configure_logging("debug", colors=False)

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level >= logging.WARNING

        configure_logging("info", colors=False)
        assert logging.getLogger().level == logging.INFO
