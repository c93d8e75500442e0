"""Tests for firestarter/identity.py."""

from __future__ import annotations

import pytest

from conftest import FakeNetwork
from firestarter.errors import PreconditionError
from firestarter.identity import identify, parse_dmidecode
from firestarter.mocks import FakeCommandRunner

DMIDECODE = """\
# dmidecode 3.5
Getting SMBIOS data from sysfs.
SMBIOS 3.2.0 present.

Handle 0x0001, DMI type 1, 27 bytes
System Information
\tManufacturer: ACME
\tProduct Name: SP2C621D32TM3
\tSerial Number: Default string

Handle 0x0002, DMI type 2, 15 bytes
Base Board Information
\tManufacturer: ACME
\tProduct Name: SP2C621D32TM3
\tSerial Number: BSN123456

Handle 0x0040, DMI type 17, 92 bytes
Memory Device Information
\tSize: 32 GB
Handle 0x0041, DMI type 17, 92 bytes
Memory Device Information
\tLocator: DIMM_B1
"""


class TestParseDmidecode:
    def test_sections(self):
        data = parse_dmidecode(DMIDECODE)
        assert data["System Information"]["Product Name"] == "SP2C621D32TM3"
        assert data["Base Board Information"]["Serial Number"] == "BSN123456"

    def test_repeated_sections_merge(self):
        assert parse_dmidecode(DMIDECODE)["Memory Device Information"] == {"Size": "32 GB", "Locator": "DIMM_B1"}

    def test_preamble_ignored(self):
        assert "SMBIOS 3.2.0 present." not in parse_dmidecode(DMIDECODE)


class TestIdentify:
    def test_collects_everything(self, tmp_path):
        runner = FakeCommandRunner()
        runner.on("dmidecode", stdout=DMIDECODE)
        runner.on("hostname -I", stdout="10.0.0.5 fd00::5 \n")
        net = FakeNetwork(runner, {
            "lo": {"mac": "00:00:00:00:00:00"},
            "eth0": {"mac": "00:1b:21:00:00:01", "driver": "igb"},
        })
        info = identify(runner, net.inventory(runner, tmp_path))
        assert info.product == "SP2C621D32TM3"
        assert info.original_mb_serial == "BSN123456"
        assert info.ip == "10.0.0.5"
        assert info.original_macs == ["00:1B:21:00:00:01"]

    def test_no_address(self):
        runner = FakeCommandRunner().on("dmidecode", stdout=DMIDECODE).on("hostname", returncode=1)
        assert identify(runner).ip == ""

    def test_dmidecode_missing(self):
        runner = FakeCommandRunner(missing=["dmidecode"])
        with pytest.raises(PreconditionError, match="dmidecode"):
            identify(runner)
