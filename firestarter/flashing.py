"""Flashing phase: runs the configured operations in order.

Operations are ``mac``, ``efi`` and ``fru``. Each one produces a
:class:`FlashResult`; a failure in one operation does not stop the next,
except a :class:`PreconditionError`, which ends the phase and marks the
remaining operations skipped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from firestarter.config import SystemConfig
from firestarter.console import OutputManager
from firestarter.errors import FirestarterError, PreconditionError
from firestarter.firmware.efi import EfiVariableStore
from firestarter.firmware.fru import FruProvisioner, ProvisionOutcome
from firestarter.flash_data import FlashData
from firestarter.network.inventory import mac_hex
from firestarter.network.mac_flash import MacFlashEngine
from firestarter.process_utils import Status

logger = logging.getLogger(__name__)

OP_MAC = "mac"
OP_EFI = "efi"
OP_FRU = "fru"


@dataclass
class FlashResult:
    operation: str
    status: Status
    duration: float = 0.0
    details: str = ""

    @property
    def failed(self) -> bool:
        return self.status is Status.FAILED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "operation": self.operation,
            "status": self.status.value,
            "duration": round(self.duration, 3),
        }
        if self.details:
            data["details"] = self.details
        return data


class FlashingPhase:
    """Dispatches flash operations to the engines that implement them.

    Args:
        system: ``system`` config section (EFI variable names and GUID).
        mac_engine: MAC flashing engine; ``None`` if ``mac`` is not configured.
        efi: EFI variable store.
        fru: FRU provisioner; ``None`` if ``fru`` is not configured.
    """

    def __init__(
        self,
        system: SystemConfig,
        mac_engine: Optional[MacFlashEngine] = None,
        efi: Optional[EfiVariableStore] = None,
        fru: Optional[FruProvisioner] = None,
        output: Optional[OutputManager] = None,
    ):
        self.system = system
        self.mac_engine = mac_engine
        self.efi = efi or EfiVariableStore()
        self.fru = fru
        self.output = output or OutputManager()

    def run(self, operations: list[str], data: FlashData) -> tuple[list[FlashResult], bool]:
        """Run *operations* in order.

        Returns:
            The per-operation results and whether the system serial changed
            (which makes a reboot necessary).
        """
        self.output.separator()
        self.output.info("Flashing operations summary:")
        if data.system_serial:
            self.output.info(f"  System Serial -> {data.system_serial}")
        if data.io_board:
            self.output.info(f"  IO Board      -> {data.io_board}")
        if data.mac:
            self.output.info(f"  MAC Address   -> {data.mac}")

        results = []
        serial_changed = False
        halted = ""
        for operation in operations:
            start = time.monotonic()
            if halted:
                status, details, changed = Status.SKIPPED, f"Precondition failed in {halted}", False
            else:
                try:
                    status, details, changed = self._dispatch(operation, data)
                except PreconditionError as exc:
                    logger.error("Flash operation %s precondition failed, stopping: %s", operation, exc)
                    status, details, changed = Status.FAILED, f"{operation.upper()} flash failed: {exc}", False
                    halted = operation
                except FirestarterError as exc:
                    logger.error("Flash operation %s failed: %s", operation, exc)
                    status, details, changed = Status.FAILED, f"{operation.upper()} flash failed: {exc}", False
            serial_changed = serial_changed or changed
            result = FlashResult(operation, status, time.monotonic() - start, details)
            results.append(result)
            self.output.result(operation, status.value, result.duration, details)
        return results, serial_changed

    def _dispatch(self, operation: str, data: FlashData) -> tuple[Status, str, bool]:
        if operation == OP_MAC:
            return self.flash_mac(data)
        if operation == OP_EFI:
            return self.update_efi(data)
        if operation == OP_FRU:
            return self.flash_fru(data)
        logger.warning("Unknown flash operation %r, skipping", operation)
        return Status.SKIPPED, f"Unsupported operation: {operation}", False

    def flash_mac(self, data: FlashData) -> tuple[Status, str, bool]:
        if not data.mac:
            return Status.FAILED, "No MAC address provided", False
        if self.mac_engine is None:
            return Status.FAILED, "MAC flashing is not configured", False
        self.output.info(f"Flashing MAC address: {data.mac}")
        summary = self.mac_engine.flash(data.mac)
        if summary.skipped:
            return Status.SKIPPED, summary.error, False
        if summary.already_present:
            return Status.PASSED, f"Target MAC already present on {summary.interface_name}", False
        return Status.PASSED, "", False

    def update_efi(self, data: FlashData) -> tuple[Status, str, bool]:
        """Write the serial and MAC EFI variables that differ from the collected values."""
        self.output.info("Updating EFI variables...")
        self.efi.ensure_available()
        guid = self.system.guid_prefix
        changed = False
        serial_changed = False

        if data.system_serial and self.system.efi_sn_name:
            if self.efi.set(guid, self.system.efi_sn_name, data.system_serial):
                changed = serial_changed = True
        if data.mac and self.system.efi_mac_name:
            if self.efi.set(guid, self.system.efi_mac_name, mac_hex(data.mac)):
                changed = True

        if not changed:
            self.output.success("All EFI variables already have correct values - no changes needed")
            return Status.SKIPPED, "All EFI variables already have correct values", False
        self.output.success("EFI variables updated successfully")
        return Status.PASSED, "", serial_changed

    def flash_fru(self, data: FlashData) -> tuple[Status, str, bool]:
        if not data.system_serial:
            return Status.FAILED, "No system serial number provided for FRU flashing", False
        if self.fru is None:
            return Status.FAILED, "FRU flashing is not configured", False
        self.output.info("Flashing FRU chip...")
        outcome = self.fru.provision(data.system_serial)
        if outcome is ProvisionOutcome.ALREADY_SET:
            return Status.SKIPPED, "FRU already contains target serial number", False
        if outcome is ProvisionOutcome.SKIPPED:
            return Status.SKIPPED, "Skipped by operator", False
        return Status.PASSED, "", True
