"""One-shot UEFI boot entry for the post-provisioning reboot.

Finds an EFI System Partition (preferring the disk we booted from), replaces
any stale ``OneTimeBoot`` entry that points at the same loader, creates a
fresh one and sets ``BootNext`` to it.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

from firestarter.errors import BootEntryError
from firestarter.process_utils import CommandRunner

logger = logging.getLogger(__name__)

BOOT_LABEL = "OneTimeBoot"
BOOT_LOADER_PATH = "\\EFI\\BOOT\\shellx64.efi -delay:0"
LIVE_BOOT_MOUNT = "/run/archiso/bootmnt"

ENTRY_RE = re.compile(r"(?im)^Boot([0-9A-Fa-f]{4})(\*?)\s+OneTimeBoot\t(.+)$")
_NVME_PART_RE = re.compile(r"^(/dev/nvme\d+n\d+)p(\d+)$")
_STD_PART_RE = re.compile(r"^(/dev/[a-z]+)(\d+)$")
_LOOP_RE = re.compile(r"^/dev/loop\d+$")
_ESP_TYPE_RE = re.compile(r"^TYPE=(fat|vfat|msdos)", re.MULTILINE)


def parent_disk(device: str) -> str:
    """``/dev/nvme0n1p2`` -> ``/dev/nvme0n1``; ``/dev/sda2`` -> ``/dev/sda``."""
    if "nvme" in device:
        return re.sub(r"p\d+$", "", device)
    return re.sub(r"\d+$", "", device)


def split_partition(partition: str) -> tuple[str, str]:
    """Split a partition path into ``(disk, partition number)``.

    Raises:
        BootEntryError: If the path is not a recognised partition name.
    """
    match = (_NVME_PART_RE if "nvme" in partition else _STD_PART_RE).match(partition)
    if not match:
        raise BootEntryError(f"invalid partition format: {partition}")
    return match.group(1), match.group(2)


@dataclass(frozen=True)
class EspLocation:
    disk: str
    partition: str


class BootEntryManager:
    """Creates and arms the one-shot boot entry via efibootmgr."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def _out(self, argv: list[str]) -> Optional[str]:
        res = self.runner.run(argv, timeout=30)
        return res.stdout if res.ok else None

    def _mount_source(self, mountpoint: str) -> str:
        return (self._out(["findmnt", mountpoint, "-o", "SOURCE", "-n"]) or "").strip()

    def live_media_disk(self) -> str:
        source = self._mount_source(LIVE_BOOT_MOUNT)
        return parent_disk(source) if source else ""

    def boot_disk(self) -> str:
        """Disk holding the running root filesystem (or the live boot medium)."""
        root = self._mount_source("/")
        if not root:
            raise BootEntryError("could not determine boot device (findmnt / failed)")
        if root == "airootfs" or _LOOP_RE.match(root):
            live = self.live_media_disk()
            return live or "LOOP"
        return parent_disk(root)

    def list_disks(self) -> list[str]:
        out = self._out(["lsblk", "-d", "-o", "NAME,TYPE", "-rn"])
        if out is None:
            raise BootEntryError("lsblk failed")
        disks = []
        for line in out.splitlines():
            fields = line.split()
            if len(fields) >= 2 and fields[1] == "disk":
                disks.append("/dev/" + fields[0])
        return disks

    def is_esp(self, partition: str) -> bool:
        out = self._out(["blkid", "-o", "export", partition])
        return bool(out and _ESP_TYPE_RE.search(out))

    def find_esp(self, boot_disk: str) -> EspLocation:
        """First ESP on the boot disk, else the first ESP on any other disk."""
        live = self.live_media_disk()
        preferred: list[EspLocation] = []
        others: list[EspLocation] = []
        for disk in self.list_disks():
            out = self._out(["lsblk", "-nlo", "NAME", disk])
            if out is None:
                logger.debug("cannot list partitions of %s", disk)
                continue
            for name in out.split():
                part = "/dev/" + name
                if name == os.path.basename(disk) or part == disk:
                    continue
                if self.is_esp(part):
                    bucket = preferred if disk in (boot_disk, live) else others
                    bucket.append(EspLocation(disk, part))
        if preferred:
            return preferred[0]
        if others:
            return others[0]
        raise BootEntryError("no EFI partition found on any disk")

    def _entries(self) -> list[str]:
        out = self._out(["efibootmgr", "-v"])
        if out is None:
            raise BootEntryError("efibootmgr failed")
        return [m.group(1) for m in ENTRY_RE.finditer(out)]

    def _entry_detail(self, num: str) -> str:
        return self._out(["efibootmgr", "-v", "-b", num]) or ""

    def remove_conflicting(self) -> None:
        """Delete OneTimeBoot entries that point at our loader and confirm they are gone."""
        removed = []
        for num in self._entries():
            if BOOT_LOADER_PATH in self._entry_detail(num):
                logger.info("Removing conflicting %s entry Boot%s", BOOT_LABEL, num)
                res = self.runner.run(["efibootmgr", "-B", "-b", num], timeout=30)
                if not res.ok:
                    logger.warning("Failed to remove Boot%s: %s", num, res.error_summary)
                removed.append(num)
            else:
                logger.info("Keeping non-conflicting %s entry Boot%s", BOOT_LABEL, num)
        if removed:
            still = set(removed) & set(self._entries())
            if still:
                raise BootEntryError(f"could not remove boot entries: {', '.join(sorted(still))}")

    def create_entry(self, esp: EspLocation) -> str:
        disk, number = split_partition(esp.partition)
        if disk != esp.disk:
            logger.warning("Partition %s is not on %s, using %s", esp.partition, esp.disk, disk)
        res = self.runner.run(
            ["efibootmgr", "-c", "-d", disk, "-p", number, "-L", BOOT_LABEL, "-l", BOOT_LOADER_PATH],
            timeout=30,
        )
        if not res.ok:
            raise BootEntryError(f"failed to create boot entry: {res.output.strip() or res.error_summary}")

        entries = self._entries()
        if not entries:
            raise BootEntryError(f"new {BOOT_LABEL} entry not found after creation")
        for num in entries:
            detail = self._entry_detail(num)
            if BOOT_LOADER_PATH in detail and disk in detail:
                return num
        return entries[-1]

    def set_boot_next(self, num: str) -> None:
        res = self.runner.run(["efibootmgr", "-n", num], timeout=30)
        out = self._out(["efibootmgr", "-v"]) or ""
        if f"BootNext: {num}" in out:
            return
        if not res.ok:
            raise BootEntryError(f"failed to set BootNext to {num}: {res.error_summary}")
        raise BootEntryError(f"failed to verify BootNext setting for Boot{num}")

    def arm_one_time_boot(self) -> str:
        """Full sequence. Returns the armed boot number."""
        boot = self.boot_disk()
        logger.info("Boot device: %s", boot)
        esp = self.find_esp(boot)
        if esp.partition == esp.disk:
            raise BootEntryError(f"EFI target is a whole disk, not a partition: {esp.partition}")
        logger.info("EFI partition: %s on %s", esp.partition, esp.disk)
        self.remove_conflicting()
        num = self.create_entry(esp)
        self.set_boot_next(num)
        logger.info("BootNext set to Boot%s", num)
        return num
