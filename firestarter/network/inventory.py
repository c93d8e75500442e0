"""Network interface inventory and MAC address helpers.

Snapshots are always taken fresh from the kernel (via psutil) because a
driver reload renames, re-addresses and re-MACs interfaces underneath us.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import psutil

from firestarter.process_utils import CommandRunner

logger = logging.getLogger(__name__)

REALTEK_DRIVERS = frozenset({
    "r8169", "r8168", "rtl8169", "rtl8168",
    "r8125", "rtl8125",
    "8139too", "8139cp", "rtl8139",
    "r8152", "rtl8152",
})

INTEL_DRIVERS = ("igb", "e1000e", "ixgbe", "i40e", "ice")

NETWORK_RESTART_COMMANDS = (
    ("systemctl", "restart", "NetworkManager"),
    ("systemctl", "restart", "systemd-networkd"),
    ("systemctl", "restart", "networking"),
    ("service", "networking", "restart"),
)

_HEX12 = re.compile(r"^[0-9A-F]{12}$")


# ---------------------------------------------------------------------------
# MAC helpers
# ---------------------------------------------------------------------------

def normalize_mac(mac: str) -> str:
    """Uppercase colon form (``AA:BB:CC:DD:EE:FF``).

    Accepts ``:``, ``-`` and ``.`` separators or none. Strings that do not
    hold exactly 12 hex digits are returned stripped and uppercased.
    """
    raw = re.sub(r"[:\-.]", "", mac.strip()).upper()
    if _HEX12.match(raw):
        return ":".join(raw[i:i + 2] for i in range(0, 12, 2))
    return raw


def mac_hex(mac: str) -> str:
    """MAC as 12 uppercase hex digits, no separators (vendor tool / EFI format)."""
    return normalize_mac(mac).replace(":", "")


def increment_mac(mac: str, step: int = 1) -> str:
    """Add *step* to a MAC address treated as a 48-bit big-endian integer.

    Raises:
        ValueError: If *mac* is malformed or the result leaves the 48-bit range.
    """
    raw = mac_hex(mac)
    if not _HEX12.match(raw):
        raise ValueError(f"invalid MAC address: {mac!r}")
    value = int(raw, 16) + step
    if not 0 <= value <= 0xFFFFFFFFFFFF:
        raise ValueError(f"MAC address overflow: {mac} + {step}")
    return normalize_mac(f"{value:012X}")


def is_realtek_driver(driver: str) -> bool:
    return driver.lower() in REALTEK_DRIVERS


def is_intel_driver(driver: str) -> bool:
    return driver in INTEL_DRIVERS or "intel" in driver.lower()


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NetworkInterfaceSnapshot:
    """Point-in-time view of one interface."""
    name: str
    mac: str = ""
    ip: str = ""
    driver: str = ""
    state: str = "DOWN"

    @property
    def up(self) -> bool:
        return self.state == "UP"

    @property
    def kind(self) -> str:
        if not self.driver:
            return "UNKNOWN"
        if is_realtek_driver(self.driver):
            return "REALTEK"
        if is_intel_driver(self.driver):
            return "INTEL"
        return "OTHER"


def find_mac(mac: str, interfaces: Iterable[NetworkInterfaceSnapshot]) -> Optional[NetworkInterfaceSnapshot]:
    """Interface currently carrying *mac*, if any."""
    target = normalize_mac(mac)
    for iface in interfaces:
        if iface.mac and normalize_mac(iface.mac) == target:
            return iface
    return None


def original_macs(interfaces: Iterable[NetworkInterfaceSnapshot]) -> list[str]:
    """Normalised MACs of every non-loopback interface."""
    return [normalize_mac(i.mac) for i in interfaces if i.mac and i.name != "lo"]


def primary_ip(interfaces: Iterable[NetworkInterfaceSnapshot]) -> str:
    """IPv4 address of the first UP interface that has one."""
    for iface in interfaces:
        if iface.ip and iface.up:
            return iface.ip
    return ""


def pick_realtek_interface(interfaces: list[NetworkInterfaceSnapshot]) -> Optional[NetworkInterfaceSnapshot]:
    """Best Realtek interface to flash through.

    Preference: UP with an IP, then UP, then the first Realtek interface.
    Falls back to any UP interface with an IP when no Realtek driver is bound.
    """
    realtek = [i for i in interfaces if i.driver and is_realtek_driver(i.driver)]
    for iface in realtek:
        if iface.ip and iface.up:
            return iface
    for iface in realtek:
        if iface.up:
            return iface
    if realtek:
        logger.warning("Selected inactive Realtek interface %s", realtek[0].name)
        return realtek[0]

    for iface in interfaces:
        if iface.ip and iface.up and iface.name != "lo":
            logger.warning("No Realtek interface, falling back to %s (driver %s)", iface.name, iface.driver)
            return iface
    return None


class NetworkInterfaceInventory:
    """Reads interface state and performs link-level housekeeping.

    Args:
        runner: Used for ethtool / ip / systemctl.
        sysfs_root: Root of sysfs, overridable for tests.
        net_if_addrs: ``psutil.net_if_addrs`` compatible callable.
        net_if_stats: ``psutil.net_if_stats`` compatible callable.
        sleep: Used for the settle delay after a network restart.
    """

    def __init__(
        self,
        runner: CommandRunner,
        sysfs_root: str = "/sys",
        net_if_addrs: Callable[[], dict] = psutil.net_if_addrs,
        net_if_stats: Callable[[], dict] = psutil.net_if_stats,
        sleep: Callable[[float], None] = time.sleep,
        restart_settle_s: float = 5.0,
    ):
        self.runner = runner
        self.sysfs_root = sysfs_root
        self._net_if_addrs = net_if_addrs
        self._net_if_stats = net_if_stats
        self._sleep = sleep
        self.restart_settle_s = restart_settle_s

    def driver_for(self, name: str) -> str:
        """Kernel driver bound to *name*: ``ethtool -i`` first, sysfs link second."""
        res = self.runner.run(["ethtool", "-i", name], timeout=10)
        if res.ok:
            for line in res.stdout.splitlines():
                if line.startswith("driver:"):
                    return line.split(":", 1)[1].strip()
        link = os.path.join(self.sysfs_root, "class", "net", name, "device", "driver")
        try:
            return os.path.basename(os.readlink(link))
        except OSError:
            return ""

    def snapshot(self) -> list[NetworkInterfaceSnapshot]:
        addrs = self._net_if_addrs()
        stats = self._net_if_stats()
        interfaces = []
        for name, entries in addrs.items():
            mac = ""
            ip = ""
            for entry in entries:
                if entry.family == psutil.AF_LINK and not mac:
                    mac = normalize_mac(entry.address)
                elif entry.family == socket.AF_INET and not ip and entry.address != "127.0.0.1":
                    ip = entry.address
            st = stats.get(name)
            interfaces.append(NetworkInterfaceSnapshot(
                name=name,
                mac=mac,
                ip=ip,
                driver="" if name == "lo" else self.driver_for(name),
                state="UP" if st is not None and st.isup else "DOWN",
            ))
        logger.debug("snapshot: %s", interfaces)
        return interfaces

    def set_link(self, name: str, up: bool = True) -> bool:
        res = self.runner.run(["ip", "link", "set", name, "up" if up else "down"], timeout=10)
        if not res.ok:
            logger.warning("ip link set %s %s failed: %s", name, "up" if up else "down", res.error_summary)
        return res.ok

    def restore_ip(self, name: str, ip: str, prefix: int = 24) -> bool:
        """Re-add *ip* to *name*. An address that is already present counts as restored."""
        if not name or not ip:
            return False
        self.set_link(name, True)
        res = self.runner.run(["ip", "addr", "add", f"{ip}/{prefix}", "dev", name], timeout=10)
        if res.ok:
            logger.info("IP %s restored to %s", ip, name)
            return True
        check = self.runner.run(["ip", "addr", "show", name], timeout=10)
        if ip in check.stdout:
            logger.info("IP %s already assigned to %s", ip, name)
            return True
        logger.warning("Failed to restore IP %s on %s: %s", ip, name, res.output.strip())
        return False

    def restart_networking(self) -> str:
        """Restart the host network stack.

        Tries each service manager command in turn; if none succeeds every
        non-loopback interface is cycled down and up.

        Returns:
            The command that worked, or ``"link-cycle"``.
        """
        method = "link-cycle"
        for argv in NETWORK_RESTART_COMMANDS:
            if self.runner.run(list(argv), timeout=60).ok:
                method = " ".join(argv)
                break
        else:
            logger.warning("No network service restarted, cycling interfaces")
            for name in self._net_if_addrs():
                if name == "lo":
                    continue
                self.set_link(name, False)
                self.set_link(name, True)
        logger.info("Networking restarted via %s", method)
        if self.restart_settle_s:
            self._sleep(self.restart_settle_s)
        return method
