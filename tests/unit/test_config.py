"""Tests for config.py: TOML settings with environment overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from klettrack_sync import config as config_module
from klettrack_sync.config import AppConfig, SyncSettings, get_config, get_env_token, get_klettrack_dir


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KLETTRACK_SYNC_URL", "KLETTRACK_SYNC_TIMEOUT", "KLETTRACK_SYNC_TOKEN"):
        monkeypatch.delenv(name, raising=False)


class TestDataDir:
    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KLETTRACK_DIR", str(tmp_path))
        assert get_klettrack_dir() == tmp_path

    def test_default_under_home(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("KLETTRACK_DIR", raising=False)
        assert get_klettrack_dir() == Path.home() / ".klettrack"

    def test_env_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        assert get_env_token() is None
        monkeypatch.setenv("KLETTRACK_SYNC_TOKEN", "  abc  ")
        assert get_env_token() == "abc"


class TestSyncSettings:
    def test_from_dict_clamps_and_defaults(self) -> None:
        settings = SyncSettings.from_dict(
            {
                "base_url": "  https://sync.example.com  ",
                "request_timeout": 0,
                "push_batch_size": 5000,
                "pull_limit": "many",
                "auto_retry": True,
            }
        )
        assert settings.base_url == "https://sync.example.com"
        assert settings.request_timeout == 1.0
        assert settings.push_batch_size == 1000
        assert settings.pull_limit == 200
        assert settings.auto_retry is True

    def test_round_trip_through_dict(self) -> None:
        settings = SyncSettings(base_url="https://x.example", push_batch_size=10)
        assert SyncSettings.from_dict(settings.to_dict()) == settings

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KLETTRACK_SYNC_URL", "https://env.example")
        monkeypatch.setenv("KLETTRACK_SYNC_TIMEOUT", "45")

        settings = SyncSettings(base_url="https://file.example").with_env_overrides()

        assert settings.base_url == "https://env.example"
        assert settings.request_timeout == 45.0

    def test_invalid_env_timeout_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KLETTRACK_SYNC_TIMEOUT", "soon")
        assert SyncSettings().with_env_overrides().request_timeout == 20.0


class TestAppConfig:
    def test_load_creates_default_file(self, tmp_path: Path) -> None:
        config = AppConfig.load(tmp_path / "config.toml")

        assert config.data_dir == tmp_path
        assert config.config_path.exists()
        assert config.db_path == tmp_path / "sync.db"
        assert config.sync == SyncSettings()

    def test_save_and_reload(self, tmp_path: Path) -> None:
        config = AppConfig(
            data_dir=tmp_path,
            sync=SyncSettings(base_url="https://sync.example.com", max_pull_pages=7, auto_retry=True),
        )
        config.save()

        loaded = AppConfig.load(config.config_path)

        assert loaded.sync == config.sync
        assert not list(tmp_path.glob("*.tmp"))

    def test_env_does_not_leak_into_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KLETTRACK_SYNC_URL", "https://env.example")

        config = AppConfig.load(tmp_path / "config.toml")

        assert config.sync.base_url == "https://env.example"
        assert 'base_url = ""' in config.config_path.read_text(encoding="utf-8")

    def test_unsafe_url_not_saved(self, tmp_path: Path) -> None:
        config = AppConfig(data_dir=tmp_path, sync=SyncSettings(base_url='https://x"\n[evil]'))
        with pytest.raises(ValueError):
            config.save()

    def test_get_config_singleton(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KLETTRACK_DIR", str(tmp_path))
        monkeypatch.setattr(config_module, "_config", None)

        first = get_config()
        assert get_config() is first
        assert get_config(reload=True) is not first
