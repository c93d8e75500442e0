"""MAC address flashing.

Two methods are supported:

* ``eeupdate``: Intel's multi-NIC tool. Every matching NIC is flashed in one
  pass; the first gets the target MAC, the i-th gets target + i.
* ``rtnicpg``: Realtek's ``rtnic`` tool, which needs the ``pgdrv`` programming
  driver swapped in for the normal NIC driver while it runs.

Either way the result is only trusted after networking is restarted and the
expected MACs actually show up on interfaces.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from firestarter.classifiers import EeupdateClassifier, RtnicClassifier
from firestarter.config import METHOD_EEUPDATE, METHOD_RTNICPG
from firestarter.console import OutputManager
from firestarter.decisions import (
    FLASH_FINAL_OPTIONS,
    FLASH_OPTIONS,
    Decision,
    DecisionContext,
    DecisionProvider,
    Phase,
)
from firestarter.errors import ExecutionError, OperatorAbort, VerificationError
from firestarter.network.drivers import DriverLifecycleManager
from firestarter.network.inventory import (
    NetworkInterfaceInventory,
    NetworkInterfaceSnapshot,
    find_mac,
    increment_mac,
    mac_hex,
    normalize_mac,
    pick_realtek_interface,
    primary_ip,
)
from firestarter.process_utils import CommandRunner

logger = logging.getLogger(__name__)

EEUPDATE = "eeupdate64e"
RTNIC = "rtnic"
MAX_FLASH_ATTEMPTS = 3


@dataclass(frozen=True)
class IntelNic:
    index: int
    vendor_device: str
    description: str = ""


@dataclass
class FlashMacSummary:
    """Outcome of one ``MacFlashEngine.flash()`` call."""
    method: str
    target_mac: str
    interface_name: str = ""
    original_ip: str = ""
    original_driver: str = ""
    nic_indices: list[int] = field(default_factory=list)
    expected_macs: list[str] = field(default_factory=list)
    attempts: int = 0
    success: bool = False
    skipped: bool = False
    already_present: bool = False
    error: str = ""


def parse_mac_dump(output: str) -> list[IntelNic]:
    """Parse ``eeupdate64e /MAC_DUMP_ALL`` listing lines.

    Lines look like ``  1   0   0   0  8086-1521  Intel(R) I350 Gigabit...``:
    NIC index first, vendor-device in the fifth column, description after.
    """
    nics = []
    for line in output.splitlines():
        if "8086-" not in line:
            continue
        fields = line.split()
        if len(fields) < 5:
            continue
        try:
            index = int(fields[0])
        except ValueError:
            continue
        nics.append(IntelNic(index=index, vendor_device=fields[4], description=" ".join(fields[5:])))
    return nics


class MacFlashEngine:
    """Flashes a target MAC into NIC firmware with operator-resolved retries.

    Args:
        runner: Command runner for the vendor tools.
        inventory: Interface snapshots and network housekeeping.
        drivers: Kernel module lifecycle.
        decisions: Operator answers on failure.
        method: ``eeupdate`` or ``rtnicpg``.
        ven_device: eeupdate vendor-device filter, e.g. ``["8086-1521"]``.
        benign_exit_codes: eeupdate exit codes that are not failures on their own.
    """

    def __init__(
        self,
        runner: CommandRunner,
        inventory: NetworkInterfaceInventory,
        drivers: DriverLifecycleManager,
        decisions: DecisionProvider,
        output: Optional[OutputManager] = None,
        method: str = METHOD_EEUPDATE,
        ven_device: Iterable[str] = (),
        benign_exit_codes: Iterable[int] = (2,),
        max_attempts: int = MAX_FLASH_ATTEMPTS,
    ):
        self.runner = runner
        self.inventory = inventory
        self.drivers = drivers
        self.decisions = decisions
        self.output = output or OutputManager()
        self.method = method
        self.ven_device = list(ven_device)
        self.benign_exit_codes = tuple(benign_exit_codes)
        self.eeupdate_classifier = EeupdateClassifier(self.benign_exit_codes)
        self.rtnic_classifier = RtnicClassifier()
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def flash(self, target_mac: str) -> FlashMacSummary:
        """Make *target_mac* the NIC's burned-in address.

        Returns the summary for success and for an operator Skip.

        Raises:
            OperatorAbort: The operator aborted after a failure.
            PreconditionError: The flashing driver cannot be built here.
        """
        target = normalize_mac(target_mac)
        try:
            increment_mac(target, 0)
        except ValueError as exc:
            raise ExecutionError(str(exc)) from exc

        summary = FlashMacSummary(method=self.method, target_mac=target)
        self.output.subheader("MAC Address Flashing", f"Method: {self.method} | Target MAC: {target}")

        interfaces = self.inventory.snapshot()
        for iface in interfaces:
            if iface.mac and iface.name != "lo":
                logger.info("  %s: %s [%s] %s %s", iface.name, iface.mac, iface.driver, iface.state, iface.ip)

        present = find_mac(target, interfaces)
        if present is not None:
            self.output.success(f"Target MAC {target} already present on interface {present.name} - skipping flash")
            summary.already_present = True
            summary.success = True
            summary.interface_name = present.name
            return summary

        for attempt in range(1, self.max_attempts + 1):
            summary.attempts = attempt
            self.output.info(f"Flashing attempt {attempt}/{self.max_attempts}...")
            try:
                expected = self._run_method(summary, interfaces)
                self._verify(summary, expected)
            except (ExecutionError, VerificationError) as exc:
                summary.error = str(exc)
                self.output.error(f"MAC flashing failed (attempt {attempt}/{self.max_attempts}): {exc}")
                decision = self.decisions.decide(DecisionContext(
                    phase=Phase.FLASH,
                    subject="MAC flashing",
                    message=str(exc),
                    options=FLASH_OPTIONS if attempt < self.max_attempts else FLASH_FINAL_OPTIONS,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                ))
                if decision is Decision.SKIP:
                    summary.skipped = True
                    summary.error = f"Skipped by operator: {exc}"
                    return summary
                if decision is Decision.ABORT:
                    raise OperatorAbort(f"MAC flashing aborted by operator after {attempt} attempt(s): {exc}") from exc
                interfaces = self.inventory.snapshot()
                continue

            summary.success = True
            summary.error = ""
            self.output.success(f"MAC address flashed successfully using {self.method} method")
            return summary

        raise ExecutionError(summary.error or "MAC flashing failed")

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def _run_method(self, summary: FlashMacSummary, interfaces: list[NetworkInterfaceSnapshot]) -> list[str]:
        if self.method == METHOD_EEUPDATE:
            return self._flash_eeupdate(summary, interfaces)
        if self.method == METHOD_RTNICPG:
            return self._flash_rtnicpg(summary, interfaces)
        raise ExecutionError(f"unknown flash method: {self.method}")

    def discover_intel_nics(self) -> list[IntelNic]:
        """List Intel NICs eeupdate can see, filtered by ``ven_device``."""
        res = self.runner.run([EEUPDATE, "/MAC_DUMP_ALL"], timeout=120)
        if res.returncode != 0 and res.returncode not in self.benign_exit_codes:
            raise ExecutionError(
                f"{EEUPDATE} discovery failed ({res.error_summary}): {res.output.strip()}"
            )

        nics = parse_mac_dump(res.output)
        if not nics:
            if len(res.output) > 100:
                logger.warning("No NICs parsed from substantial %s output, trying indices 1-6", EEUPDATE)
                nics = [IntelNic(i, "unknown", "Unknown Intel NIC") for i in range(1, 7)]
            else:
                raise ExecutionError("no Intel network cards found in output")

        if self.ven_device:
            nics = [n for n in nics if n.vendor_device in self.ven_device]
            if not nics:
                raise ExecutionError(
                    f"no NICs match the vendor-device filter: {', '.join(self.ven_device)}"
                )
        for nic in nics:
            logger.info("Intel NIC %d: %s (%s)", nic.index, nic.vendor_device, nic.description)
        return nics

    def _flash_eeupdate(self, summary: FlashMacSummary, interfaces: list[NetworkInterfaceSnapshot]) -> list[str]:
        summary.original_ip = primary_ip(interfaces)
        intel_drivers = self.drivers.detect_intel_drivers() or ["igb"]

        nics = self.discover_intel_nics()
        try:
            expected = [increment_mac(summary.target_mac, i) for i in range(len(nics))]
        except ValueError as exc:
            raise ExecutionError(str(exc)) from exc
        summary.nic_indices = [n.index for n in nics]
        summary.expected_macs = expected
        for nic, mac in zip(nics, expected):
            self.output.line(f"  NIC {nic.index}: {nic.vendor_device} ({nic.description}) -> MAC: {mac}")

        self.drivers.unload_all(intel_drivers)
        try:
            for nic, mac in zip(nics, expected):
                res = self.runner.run([EEUPDATE, f"/NIC={nic.index}", f"/MAC={mac_hex(mac)}"], timeout=120)
                verdict = self.eeupdate_classifier.classify(res)
                if not verdict.ok:
                    raise ExecutionError(f"failed to flash NIC {nic.index}: {verdict.reason}")
                self.output.success(f"NIC {nic.index} flashed with MAC {mac}")
        finally:
            self.drivers.reload_all(intel_drivers)
        return expected

    def _flash_rtnicpg(self, summary: FlashMacSummary, interfaces: list[NetworkInterfaceSnapshot]) -> list[str]:
        iface = pick_realtek_interface(interfaces)
        if iface is None:
            raise ExecutionError("no active network interface with IP found")
        summary.original_ip = iface.ip
        summary.original_driver = iface.driver
        summary.expected_macs = [summary.target_mac]
        self.output.info(f"Using interface {iface.name} (IP: {iface.ip or '-'}, Driver: {iface.driver}, State: {iface.state})")
        if not iface.up:
            self.inventory.set_link(iface.name, True)

        with self.drivers.flashing_driver(iface.driver):
            res = self.runner.run([RTNIC, "/efuse", "/nicmac", "/nodeid", mac_hex(summary.target_mac)], timeout=120)
            verdict = self.rtnic_classifier.classify(res)
            if not verdict.ok:
                raise ExecutionError(f"rtnic flashing failed: {verdict.reason}")
        return [summary.target_mac]

    # ------------------------------------------------------------------
    # Post-flash
    # ------------------------------------------------------------------

    def _verify(self, summary: FlashMacSummary, expected: list[str]) -> None:
        self.inventory.restart_networking()
        interfaces = self.inventory.snapshot()

        mismatches = [
            (f"NIC {i + 1} MAC", mac, "not present")
            for i, mac in enumerate(expected)
            if find_mac(mac, interfaces) is None
        ]
        if mismatches:
            for iface in interfaces:
                if iface.mac and iface.name != "lo":
                    logger.info("  [%s] %s: %s", iface.kind, iface.name, iface.mac)
            raise VerificationError("expected MAC not found after flashing", mismatches)

        primary = find_mac(summary.target_mac, interfaces)
        summary.interface_name = primary.name
        if summary.original_ip:
            if not self.inventory.restore_ip(primary.name, summary.original_ip):
                self.output.warning(f"Failed to restore IP {summary.original_ip} on {primary.name}")
        elif not primary.up:
            self.inventory.set_link(primary.name, True)
