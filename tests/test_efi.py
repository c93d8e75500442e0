"""Tests for firestarter/firmware/efi.py against a directory standing in for efivarfs."""

from __future__ import annotations

import logging
import struct
from unittest.mock import patch

import pytest

from firestarter.errors import EfiVariableNotFound, ExecutionError, PreconditionError
from firestarter.firmware.efi import DEFAULT_ATTRIBUTES, EfiVariableStore

GUID = "12345678-9ABC-DEF0-1234-56789ABCDEF0"


@pytest.fixture
def store(runner, tmp_path):
    return EfiVariableStore(runner, root=str(tmp_path))


def _seed(tmp_path, name, data):
    path = tmp_path / f"{name}-{GUID.lower()}"
    path.write_bytes(struct.pack("<I", DEFAULT_ATTRIBUTES) + data)
    return path


class TestEfiVariableStore:
    def test_ensure_available(self, runner, tmp_path):
        EfiVariableStore(runner, root=str(tmp_path)).ensure_available()
        with pytest.raises(PreconditionError, match="efivars not found"):
            EfiVariableStore(runner, root=str(tmp_path / "missing")).ensure_available()

    def test_get_strips_attribute_header(self, store, tmp_path):
        _seed(tmp_path, "SerialNumber", b"INF01A912345678")
        assert store.get(GUID, "SerialNumber") == b"INF01A912345678"

    def test_get_missing(self, store):
        with pytest.raises(EfiVariableNotFound):
            store.get(GUID, "SerialNumber")

    def test_get_truncated(self, store, tmp_path):
        (tmp_path / f"Bad-{GUID.lower()}").write_bytes(b"\x07\x00")
        with pytest.raises(ExecutionError, match="truncated"):
            store.get(GUID, "Bad")

    def test_invalid_guid(self, store):
        with pytest.raises(ExecutionError, match="invalid GUID"):
            store.get("not-a-guid", "SerialNumber")

    def test_create(self, store, tmp_path, runner):
        assert store.set(GUID, "HexMac", "001B21AA0010") is True
        raw = (tmp_path / f"HexMac-{GUID.lower()}").read_bytes()
        assert raw[:4] == b"\x07\x00\x00\x00"
        assert raw[4:] == b"001B21AA0010"
        assert runner.count("chattr") == 0

    def test_same_value_is_not_rewritten(self, store, tmp_path, runner):
        path = _seed(tmp_path, "SerialNumber", b"INF01A912345678")
        before = path.stat().st_mtime_ns
        assert store.set(GUID, "SerialNumber", "INF01A912345678") is False
        assert path.stat().st_mtime_ns == before
        assert runner.count("chattr") == 0

    def test_update_clears_immutable_flag(self, store, tmp_path, runner):
        path = _seed(tmp_path, "SerialNumber", b"OLD-SERIAL-LONGER-THAN-NEW")
        assert store.set(GUID, "SerialNumber", "INF01A912345678") is True
        assert runner.calls_to("chattr") == [["chattr", "-i", str(path)]]
        assert store.get(GUID, "SerialNumber") == b"INF01A912345678"

    def test_empty_value_rejected(self, store):
        with pytest.raises(ExecutionError, match="invalid variable value"):
            store.set(GUID, "SerialNumber", "")

    def test_readback_mismatch_only_warns(self, store, tmp_path, caplog):
        # firmware may keep a truncated copy of what was written
        with caplog.at_level(logging.WARNING, logger="firestarter.firmware.efi"):
            with patch.object(store, "get", side_effect=[EfiVariableNotFound("SerialNumber"), b"INF01A9"]):
                assert store.set(GUID, "SerialNumber", "INF01A912345678") is True
        assert "read-back mismatch" in caplog.text
        assert (tmp_path / f"SerialNumber-{GUID.lower()}").read_bytes()[4:] == b"INF01A912345678"
