"""Read-only checks against the real host.

Deselected by default; run with ``pytest --hw`` on a provisioning bench.
Nothing here writes firmware, loads modules or touches boot entries.
"""

from __future__ import annotations

import pytest

from firestarter.firmware.boot import BootEntryManager
from firestarter.network.inventory import NetworkInterfaceInventory
from firestarter.process_utils import CommandRunner

pytestmark = pytest.mark.hw


@pytest.fixture(scope="module")
def real_runner():
    return CommandRunner()


def test_interfaces_have_normalized_macs(real_runner):
    interfaces = NetworkInterfaceInventory(real_runner).snapshot()
    assert interfaces
    for iface in interfaces:
        if iface.mac:
            assert iface.mac == iface.mac.upper()


def test_boot_disk_is_a_device(real_runner):
    disk = BootEntryManager(real_runner).boot_disk()
    assert disk == "LOOP" or disk.startswith("/dev/")
