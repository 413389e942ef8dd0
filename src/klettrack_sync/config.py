"""Configuration for the sync engine and its command line.

Config lives in ``~/.klettrack/config.toml`` (or ``$KLETTRACK_DIR``).
Environment variables override file values for the current process only.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Characters allowed in string values written back to TOML
_SAFE_VALUE_PATTERN = re.compile(r'^[^"\\\n\r]*$')


def get_klettrack_dir() -> Path:
    """Get the data directory.

    Priority:
    1. KLETTRACK_DIR environment variable
    2. ~/.klettrack/
    """
    env_dir = os.environ.get("KLETTRACK_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".klettrack"


def get_env_token() -> str | None:
    """Static bearer token for the CLI, from KLETTRACK_SYNC_TOKEN."""
    token = os.environ.get("KLETTRACK_SYNC_TOKEN", "").strip()
    return token or None


def _clamp(value: Any, default: float, low: float, high: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return min(max(float(value), low), high)


@dataclass(frozen=True)
class SyncSettings:
    """Sync endpoint and cycle tuning."""

    base_url: str = ""
    request_timeout: float = 20.0
    push_batch_size: int = 100
    pull_limit: int = 200
    max_pull_pages: int = 50
    max_retry_attempts: int = 1
    max_retry_delay: float = 8.0
    require_https: bool = True
    debounce_seconds: float = 2.0
    auto_retry: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_url": self.base_url,
            "request_timeout": self.request_timeout,
            "push_batch_size": self.push_batch_size,
            "pull_limit": self.pull_limit,
            "max_pull_pages": self.max_pull_pages,
            "max_retry_attempts": self.max_retry_attempts,
            "max_retry_delay": self.max_retry_delay,
            "require_https": self.require_https,
            "debounce_seconds": self.debounce_seconds,
            "auto_retry": self.auto_retry,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        base_url = data.get("base_url", "")
        return cls(
            base_url=base_url.strip() if isinstance(base_url, str) else "",
            request_timeout=_clamp(data.get("request_timeout"), 20.0, 1.0, 300.0),
            push_batch_size=int(_clamp(data.get("push_batch_size"), 100, 1, 1000)),
            pull_limit=int(_clamp(data.get("pull_limit"), 200, 1, 1000)),
            max_pull_pages=int(_clamp(data.get("max_pull_pages"), 50, 1, 1000)),
            max_retry_attempts=int(_clamp(data.get("max_retry_attempts"), 1, 1, 10)),
            max_retry_delay=_clamp(data.get("max_retry_delay"), 8.0, 1.0, 60.0),
            require_https=bool(data.get("require_https", True)),
            debounce_seconds=_clamp(data.get("debounce_seconds"), 2.0, 0.0, 60.0),
            auto_retry=bool(data.get("auto_retry", False)),
        )

    def with_env_overrides(self) -> SyncSettings:
        """Apply KLETTRACK_SYNC_URL / KLETTRACK_SYNC_TIMEOUT on top of file values."""
        settings = self
        env_url = os.environ.get("KLETTRACK_SYNC_URL", "").strip()
        if env_url:
            settings = replace(settings, base_url=env_url)
        env_timeout = os.environ.get("KLETTRACK_SYNC_TIMEOUT", "").strip()
        if env_timeout:
            try:
                settings = replace(
                    settings, request_timeout=_clamp(float(env_timeout), 20.0, 1.0, 300.0)
                )
            except ValueError:
                logger.warning("Ignoring invalid KLETTRACK_SYNC_TIMEOUT=%r", env_timeout)
        return settings


@dataclass
class AppConfig:
    """Top-level configuration."""

    data_dir: Path
    sync: SyncSettings = field(default_factory=SyncSettings)
    version: str = "1.0"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.toml"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "sync.db"

    @property
    def audit_log_path(self) -> Path:
        return self.data_dir / "conflict_audit.json"

    @classmethod
    def load(cls, config_path: Path | None = None) -> AppConfig:
        """Load configuration from file, or create the default file if missing."""
        if config_path is None:
            data_dir = get_klettrack_dir()
            config_path = data_dir / "config.toml"
        else:
            data_dir = config_path.parent

        if not config_path.exists():
            config = cls(data_dir=data_dir)
            config.save()
            config.sync = config.sync.with_env_overrides()
            return config

        with open(config_path, "rb") as f:
            data = tomllib.load(f)

        return cls(
            data_dir=data_dir,
            sync=SyncSettings.from_dict(data.get("sync", {})).with_env_overrides(),
            version=str(data.get("version", "1.0")),
        )

    def save(self) -> None:
        """Save configuration to TOML file (atomic write via temp+rename)."""
        if not _SAFE_VALUE_PATTERN.match(self.sync.base_url):
            raise ValueError("Invalid sync base_url for config save")

        self.data_dir.mkdir(parents=True, exist_ok=True)
        sync = self.sync
        lines = [
            "# Klettrack sync configuration",
            "",
            f'version = "{self.version}"',
            "",
            "[sync]",
            f'base_url = "{sync.base_url}"',
            f"request_timeout = {sync.request_timeout}",
            f"push_batch_size = {sync.push_batch_size}",
            f"pull_limit = {sync.pull_limit}",
            f"max_pull_pages = {sync.max_pull_pages}",
            f"max_retry_attempts = {sync.max_retry_attempts}",
            f"max_retry_delay = {sync.max_retry_delay}",
            f"require_https = {'true' if sync.require_https else 'false'}",
            f"debounce_seconds = {sync.debounce_seconds}",
            f"auto_retry = {'true' if sync.auto_retry else 'false'}",
        ]

        content = "\n".join(lines) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), suffix=".toml.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp_path).replace(self.config_path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


_config: AppConfig | None = None


def get_config(reload: bool = False) -> AppConfig:
    """Get the process-wide configuration (singleton).

    Args:
        reload: Force reload from disk
    """
    global _config
    if _config is None or reload:
        _config = AppConfig.load()
    return _config
