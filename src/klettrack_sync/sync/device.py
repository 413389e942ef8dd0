"""Device identity for sync.

Every install pushes under a stable device id. The id is generated the first
time it is needed and kept in a small file next to the local sync database,
so reinstalling the CLI or wiping the config keeps the same identity as long
as the data directory survives.
"""

from __future__ import annotations

import logging
import os
import platform
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from klettrack_sync.utils.timeutils import to_iso, utcnow

logger = logging.getLogger(__name__)

DEVICE_ID_FILE = "device_id"
MAX_DEVICE_ID_LENGTH = 128
MAX_DEVICE_NAME_LENGTH = 64

_DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass(frozen=True)
class DeviceInfo:
    """Identity this install reports to the sync authority."""

    device_id: str
    device_name: str
    registered_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "registered_at": to_iso(self.registered_at),
        }


def is_valid_device_id(value: str) -> bool:
    """Whether ``value`` can be sent as a device id (1-128 URL-safe characters)."""
    return 0 < len(value) <= MAX_DEVICE_ID_LENGTH and bool(_DEVICE_ID_PATTERN.match(value))


def get_device_id(data_dir: Path) -> str:
    """Return the persistent device id for this install.

    Reads ``{data_dir}/device_id``. A missing, empty, unreadable or malformed
    value is replaced by a fresh UUID, which is written back atomically so a
    crash mid-write never leaves a truncated id behind.

    Args:
        data_dir: Directory holding the sync database; created if missing.

    Returns:
        The device id string sent with every push and pull.
    """
    id_path = data_dir / DEVICE_ID_FILE

    if id_path.exists():
        try:
            existing = id_path.read_text(encoding="utf-8").strip()
        except OSError:
            logger.warning("Unreadable device id at %s, generating a new one", id_path)
        else:
            if is_valid_device_id(existing):
                return existing
            if existing:
                logger.warning("Malformed device id at %s, generating a new one", id_path)

    new_id = str(uuid4())
    _write_device_id(data_dir, id_path, new_id)
    logger.info("Registered new sync device %s", new_id)
    return new_id


def _write_device_id(data_dir: Path, id_path: Path, device_id: str) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(data_dir), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(device_id)
        Path(tmp_path).replace(id_path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def get_device_name() -> str:
    """Return a display name for this machine.

    Returns:
        The hostname with runs of whitespace collapsed, capped at 64
        characters. Falls back to ``"unknown"`` when no hostname is set.
    """
    name = " ".join(platform.node().split())
    return name[:MAX_DEVICE_NAME_LENGTH] if name else "unknown"


def get_device_info(data_dir: Path) -> DeviceInfo:
    """Return the :class:`DeviceInfo` for this install.

    Args:
        data_dir: Directory holding the ``device_id`` file.

    Returns:
        :class:`DeviceInfo` with the stable id, the machine name and the
        current UTC time as ``registered_at``.
    """
    return DeviceInfo(
        device_id=get_device_id(data_dir),
        device_name=get_device_name(),
        registered_at=utcnow(),
    )
