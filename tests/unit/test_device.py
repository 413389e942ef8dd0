"""Tests for sync/device.py: Device identity."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch
from uuid import UUID

from klettrack_sync.sync.device import (
    DEVICE_ID_FILE,
    MAX_DEVICE_NAME_LENGTH,
    get_device_id,
    get_device_info,
    get_device_name,
    is_valid_device_id,
)


class TestDeviceId:
    def test_generated_once_and_persisted(self, tmp_path: Path) -> None:
        first = get_device_id(tmp_path)
        second = get_device_id(tmp_path)

        assert first == second
        UUID(first)
        assert (tmp_path / DEVICE_ID_FILE).read_text(encoding="utf-8") == first

    def test_existing_id_is_reused(self, tmp_path: Path) -> None:
        (tmp_path / DEVICE_ID_FILE).write_text("  my-device\n", encoding="utf-8")
        assert get_device_id(tmp_path) == "my-device"

    def test_empty_file_regenerates(self, tmp_path: Path) -> None:
        (tmp_path / DEVICE_ID_FILE).write_text("", encoding="utf-8")
        device_id = get_device_id(tmp_path)
        assert device_id
        assert (tmp_path / DEVICE_ID_FILE).read_text(encoding="utf-8") == device_id

    def test_creates_missing_directory(self, tmp_path: Path) -> None:
        get_device_id(tmp_path / "nested" / "dir")
        assert (tmp_path / "nested" / "dir" / DEVICE_ID_FILE).exists()

    def test_malformed_id_regenerates(self, tmp_path: Path) -> None:
        (tmp_path / DEVICE_ID_FILE).write_text("not a device id!", encoding="utf-8")

        device_id = get_device_id(tmp_path)

        UUID(device_id)
        assert (tmp_path / DEVICE_ID_FILE).read_text(encoding="utf-8") == device_id
        assert not list(tmp_path.glob("*.tmp"))

    def test_is_valid_device_id(self) -> None:
        assert is_valid_device_id("laptop-01.home_net")
        assert not is_valid_device_id("")
        assert not is_valid_device_id("has space")
        assert not is_valid_device_id("x" * 129)


class TestDeviceInfo:
    def test_name_falls_back_to_unknown(self) -> None:
        with patch("klettrack_sync.sync.device.platform.node", return_value=""):
            assert get_device_name() == "unknown"

    def test_name_is_collapsed_and_capped(self) -> None:
        with patch("klettrack_sync.sync.device.platform.node", return_value="my \t box"):
            assert get_device_name() == "my box"
        with patch("klettrack_sync.sync.device.platform.node", return_value="h" * 100):
            assert len(get_device_name()) == MAX_DEVICE_NAME_LENGTH

    def test_info(self, tmp_path: Path) -> None:
        info = get_device_info(tmp_path)
        assert info.device_id == get_device_id(tmp_path)
        assert info.registered_at.tzinfo is not None

    def test_to_dict(self, tmp_path: Path) -> None:
        data = get_device_info(tmp_path).to_dict()

        assert set(data) == {"device_id", "device_name", "registered_at"}
        assert data["registered_at"].endswith("Z")
