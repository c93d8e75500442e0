"""Tests for firestarter/firmware/boot.py: ESP discovery and BootNext arming."""

from __future__ import annotations

import pytest

from firestarter.errors import BootEntryError
from firestarter.firmware.boot import (
    BOOT_LABEL,
    BOOT_LOADER_PATH,
    BootEntryManager,
    EspLocation,
    parent_disk,
    split_partition,
)
from firestarter.mocks import FakeCommandRunner, make_result


class FakeEfiBootMgr:
    """Boot entry table behind ``efibootmgr``."""

    def __init__(self, runner: FakeCommandRunner, entries=None, sticky=()):
        # num -> (label, detail)
        self.entries = dict(entries or {})
        self.boot_next = ""
        self.sticky = set(sticky)
        self.next_num = 0x10
        runner.on("efibootmgr", self._handle)

    def _listing(self):
        lines = ["BootCurrent: 0001"]
        if self.boot_next:
            lines.append(f"BootNext: {self.boot_next}")
        lines.append("BootOrder: 0001," + ",".join(self.entries))
        for num, (label, detail) in self.entries.items():
            lines.append(f"Boot{num}* {label}\t{detail}")
        return "\n".join(lines) + "\n"

    def _handle(self, argv):
        args = argv[1:]
        if args[:1] == ["-c"]:
            opts = dict(zip(args[1::2], args[2::2]))
            num = f"{self.next_num:04X}"
            self.next_num += 1
            self.entries[num] = (opts["-L"], f"HD({opts['-p']},GPT) {opts['-d']} File({opts['-l']})")
            return make_result(argv, stdout=self._listing())
        if args[:1] == ["-B"]:
            num = args[-1]
            if num not in self.sticky:
                self.entries.pop(num, None)
            return make_result(argv)
        if args[:1] == ["-n"]:
            self.boot_next = args[1]
            return make_result(argv)
        if args == ["-v", "-b", args[-1]] and len(args) == 3:
            label, detail = self.entries.get(args[-1], ("", ""))
            return make_result(argv, stdout=f"Boot{args[-1]}* {label}\t{detail}\n")
        return make_result(argv, stdout=self._listing())


def _host(runner, root="/dev/nvme0n1p2", live=""):
    runner.on("findmnt /", stdout=root + "\n" if root else "", returncode=0 if root else 1)
    runner.on("findmnt /run/archiso/bootmnt", stdout=live + "\n" if live else "", returncode=0 if live else 1)
    runner.on("lsblk -d", stdout="nvme0n1 disk\nsda disk\nsr0 rom\n")
    runner.on("lsblk -nlo NAME /dev/nvme0n1", stdout="nvme0n1\nnvme0n1p1\nnvme0n1p2\n")
    runner.on("lsblk -nlo NAME /dev/sda", stdout="sda\nsda1\nsda2\n")
    runner.on("blkid", stdout="TYPE=ext4\n")
    return runner


def _esp(runner, *partitions):
    for part in partitions:
        runner.on(["blkid", "-o", "export", part], stdout=f"DEVNAME={part}\nTYPE=vfat\n")


class TestPartitionNames:
    @pytest.mark.parametrize("device,disk", [
        ("/dev/nvme0n1p2", "/dev/nvme0n1"),
        ("/dev/sda2", "/dev/sda"),
        ("/dev/sdb", "/dev/sdb"),
    ])
    def test_parent_disk(self, device, disk):
        assert parent_disk(device) == disk

    def test_split(self):
        assert split_partition("/dev/nvme1n1p1") == ("/dev/nvme1n1", "1")
        assert split_partition("/dev/sdb3") == ("/dev/sdb", "3")

    def test_split_rejects_disk(self):
        with pytest.raises(BootEntryError, match="invalid partition"):
            split_partition("/dev/sda")


class TestDiscovery:
    def test_boot_disk(self, runner):
        _host(runner)
        assert BootEntryManager(runner).boot_disk() == "/dev/nvme0n1"

    def test_live_media_boot_disk(self, runner):
        _host(runner, root="airootfs", live="/dev/sda1")
        assert BootEntryManager(runner).boot_disk() == "/dev/sda"

    def test_loop_root_without_live_media(self, runner):
        _host(runner, root="/dev/loop0")
        assert BootEntryManager(runner).boot_disk() == "LOOP"

    def test_findmnt_failure(self, runner):
        _host(runner, root="")
        with pytest.raises(BootEntryError, match="boot device"):
            BootEntryManager(runner).boot_disk()

    def test_prefers_esp_on_boot_disk(self, runner):
        _host(runner)
        _esp(runner, "/dev/sda1", "/dev/nvme0n1p1")
        assert BootEntryManager(runner).find_esp("/dev/nvme0n1") == EspLocation("/dev/nvme0n1", "/dev/nvme0n1p1")

    def test_falls_back_to_other_disk(self, runner):
        _host(runner)
        _esp(runner, "/dev/sda1")
        assert BootEntryManager(runner).find_esp("/dev/nvme0n1") == EspLocation("/dev/sda", "/dev/sda1")

    def test_no_esp(self, runner):
        _host(runner)
        with pytest.raises(BootEntryError, match="no EFI partition"):
            BootEntryManager(runner).find_esp("/dev/nvme0n1")


class TestArming:
    def test_full_sequence(self, runner):
        _host(runner)
        _esp(runner, "/dev/nvme0n1p1")
        mgr = FakeEfiBootMgr(runner, entries={
            "0003": (BOOT_LABEL, f"HD(1,GPT) File({BOOT_LOADER_PATH})"),
            "0004": (BOOT_LABEL, "HD(1,GPT) File(\\EFI\\other.efi)"),
        })
        num = BootEntryManager(runner).arm_one_time_boot()

        assert num == "0010"
        assert mgr.boot_next == "0010"
        assert "0003" not in mgr.entries
        assert "0004" in mgr.entries
        assert runner.calls_to("efibootmgr", "-c") == [[
            "efibootmgr", "-c", "-d", "/dev/nvme0n1", "-p", "1", "-L", BOOT_LABEL, "-l", BOOT_LOADER_PATH,
        ]]

    def test_entry_that_will_not_go_away(self, runner):
        _host(runner)
        FakeEfiBootMgr(runner, entries={"0003": (BOOT_LABEL, f"File({BOOT_LOADER_PATH})")}, sticky={"0003"})
        with pytest.raises(BootEntryError, match="could not remove boot entries: 0003"):
            BootEntryManager(runner).remove_conflicting()

    def test_boot_next_not_confirmed(self, runner):
        runner.on("efibootmgr", stdout="BootCurrent: 0001\n")
        with pytest.raises(BootEntryError, match="verify BootNext"):
            BootEntryManager(runner).set_boot_next("0010")

    def test_create_failure(self, runner):
        runner.on("efibootmgr -c", returncode=1, stderr="Could not prepare Boot variable: No space left on device\n")
        with pytest.raises(BootEntryError, match="failed to create boot entry"):
            BootEntryManager(runner).create_entry(EspLocation("/dev/sda", "/dev/sda1"))
