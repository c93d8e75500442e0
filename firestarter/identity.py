"""Identification of the machine under test."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from firestarter.errors import PreconditionError
from firestarter.network.inventory import NetworkInterfaceInventory, original_macs
from firestarter.process_utils import CommandRunner

logger = logging.getLogger(__name__)


@dataclass
class SystemInfo:
    """What the machine reported about itself before anything was flashed."""
    product: str = ""
    original_mb_serial: str = ""
    ip: str = ""
    original_macs: list[str] = field(default_factory=list)
    dmidecode: dict[str, dict[str, str]] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


def parse_dmidecode(output: str) -> dict[str, dict[str, str]]:
    """Group ``dmidecode`` key/value lines under their ``... Information`` headers.

    Lines before the first header and repeated keys keep only what the parser
    last saw; repeated sections (several memory devices) are merged.
    """
    sections: dict[str, dict[str, str]] = {}
    current: Optional[dict[str, str]] = None
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        if not raw.startswith("\t") and "Information" in line:
            current = sections.setdefault(line, {})
            continue
        if current is not None and ":" in line:
            key, value = line.split(":", 1)
            current[key.strip()] = value.strip()
    return sections


def first_ip(runner: CommandRunner) -> str:
    res = runner.run(["hostname", "-I"], timeout=10)
    fields = res.stdout.split() if res.ok else []
    return fields[0] if fields else ""


def identify(runner: CommandRunner, inventory: Optional[NetworkInterfaceInventory] = None) -> SystemInfo:
    """Collect product name, board serial, IP and the NICs' current MACs.

    Raises:
        PreconditionError: ``dmidecode`` could not be run.
    """
    info = SystemInfo(ip=first_ip(runner))

    if inventory is not None:
        try:
            info.original_macs = original_macs(inventory.snapshot())
        except OSError as exc:
            logger.warning("Failed to collect original MAC addresses: %s", exc)
        else:
            if info.original_macs:
                logger.info("Collected %d original MAC address(es): %s",
                            len(info.original_macs), ", ".join(info.original_macs))

    res = runner.run(["dmidecode"], timeout=60)
    if not res.ok:
        raise PreconditionError(f"failed to run dmidecode: {res.error_summary}")
    info.dmidecode = parse_dmidecode(res.stdout)
    info.product = info.dmidecode.get("System Information", {}).get("Product Name", "")
    info.original_mb_serial = info.dmidecode.get("Base Board Information", {}).get("Serial Number", "")
    if info.original_mb_serial:
        logger.info("Original motherboard serial: %s", info.original_mb_serial)
    return info

