"""Top-level session: identification, tests, flashing, reporting, power-off.

The orchestrator owns no hardware logic itself; it wires the components
together in a fixed order and turns their outcomes into an exit code.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

from firestarter.config import Config
from firestarter.console import OutputManager
from firestarter.decisions import ConsoleDecisionProvider, DecisionProvider
from firestarter.errors import BootEntryError, ExecutionError, PreconditionError
from firestarter.firmware.boot import BootEntryManager
from firestarter.firmware.efi import EfiVariableStore
from firestarter.firmware.fru import FruProvisioner
from firestarter.flash_data import FlashData, collect
from firestarter.flashing import OP_FRU, OP_MAC, FlashingPhase, FlashResult
from firestarter.identity import SystemInfo, identify
from firestarter.network.drivers import DriverLifecycleManager
from firestarter.network.inventory import NetworkInterfaceInventory
from firestarter.network.mac_flash import MacFlashEngine
from firestarter.process_utils import CommandRunner
from firestarter.run_lock import RunLock
from firestarter.session import (
    STATE_FAILED,
    SessionRecord,
    SessionUploader,
    SystemRecord,
    compute_state,
    print_execution_summary,
    save_local,
    session_id,
)
from firestarter.suite.models import TestResult
from firestarter.suite.runner import TestOrchestrator

logger = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_TESTS_ONLY = "tests-only"
MODE_FLASH_ONLY = "flash-only"


class Orchestrator:
    """Runs one provisioning session end to end.

    Args:
        config: Loaded configuration.
        runner: Command runner shared by every component.
        decisions: Operator answers (console by default).
        mode: ``full``, ``tests-only`` or ``flash-only``.
        presets: Field values supplied up front (``-value ID=VALUE``).
        lock: Host-wide run lock; pass ``None`` to use the default location.
        geteuid: Effective-UID lookup for the privilege check.
    """

    def __init__(
        self,
        config: Config,
        runner: Optional[CommandRunner] = None,
        decisions: Optional[DecisionProvider] = None,
        output: Optional[OutputManager] = None,
        mode: str = MODE_FULL,
        presets: Optional[dict[str, str]] = None,
        inventory: Optional[NetworkInterfaceInventory] = None,
        drivers: Optional[DriverLifecycleManager] = None,
        efi: Optional[EfiVariableStore] = None,
        boot: Optional[BootEntryManager] = None,
        lock: Optional[RunLock] = None,
        geteuid: Callable[[], int] = os.geteuid,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.runner = runner or CommandRunner()
        self.decisions = decisions or ConsoleDecisionProvider()
        self.output = output or OutputManager()
        self.mode = mode
        self.presets = presets or {}
        self.inventory = inventory or NetworkInterfaceInventory(self.runner)
        self.drivers = drivers or DriverLifecycleManager(self.runner, driver_dir=config.system.driver_dir)
        self.efi = efi or EfiVariableStore(self.runner)
        self.boot = boot or BootEntryManager(self.runner)
        self.lock = lock or RunLock(config=config.path or "")
        self._geteuid = geteuid
        self._clock = clock
        self.uploader = SessionUploader(self.runner, config.log)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def check_privileges(self) -> None:
        if self.config.system.require_root and self._geteuid() != 0:
            raise PreconditionError("This program requires root privileges")

    def print_configuration(self) -> None:
        system = self.config.system
        self.output.subheader("System Configuration")
        self.output.line(f"  {'Target Product':<18}: {system.product}")
        self.output.line(f"  {'Manufacturer':<18}: {system.manufacturer}")
        self.output.line(f"  {'Configuration':<18}: {self.config.path or ''}")
        self.output.line(f"  {'Root Required':<18}: {system.require_root}")
        self.output.line(f"  {'Driver Directory':<18}: {system.driver_dir}")

    def identify_system(self) -> SystemInfo:
        self.output.subheader("System Identification")
        self.output.separator()
        info = identify(self.runner, self.inventory)
        self.output.line(f"  {'Product Name':<18}: {info.product}")
        self.output.line(f"  {'Board Serial':<18}: {info.original_mb_serial}")
        self.output.line(f"  {'Network Address':<18}: {info.ip}")
        self.output.line(f"  {'Detection Time':<18}: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(info.timestamp))}")
        return info

    def product_matches(self, detected: str) -> bool:
        """``False`` when the operator chose to stop because of a product mismatch."""
        expected = self.config.system.product
        if not expected:
            self.output.warning("No product specified in config")
            return True
        if not detected:
            self.output.warning("Could not detect system product")
            return True
        if expected == detected:
            self.output.line(f"  {'Configuration':<18}: Compatible")
            return True

        self.output.warning("PRODUCT MISMATCH")
        self.output.line(f"Configuration file is designed for: {expected}")
        self.output.line(f"Detected system product: {detected}")
        self.output.line("Continuing may lead to unexpected behavior or hardware damage.")
        if not self.decisions.confirm("Continue despite product mismatch?", default=False):
            return False
        self.output.warning("Continuing despite product mismatch")
        return True

    def run_tests(self) -> list[TestResult]:
        tests = self.config.tests
        total = sum(len(g) for g in tests.parallel_groups) + sum(len(g) for g in tests.sequential_groups)
        self.output.subheader("Testing Phase [1/2]")
        self.output.separator(thick=True)
        timeout = f"{tests.timeout:g}s" if tests.timeout is not None else "30s (default)"
        self.output.line(f"Total Tests: {total} | Global Timeout: {timeout}")

        orchestrator = TestOrchestrator(self.runner, self.decisions, self.output, global_timeout=tests.timeout)
        results = orchestrator.run_all(tests)
        failed = [r.name for r in results if r.failed]
        if failed:
            self.output.line(f"Failed tests: {', '.join(failed)}\n")
        return results

    def flashing_phase(self) -> FlashingPhase:
        flash = self.config.flash
        system = self.config.system
        mac_engine = None
        if OP_MAC in flash.operations:
            mac_engine = MacFlashEngine(
                self.runner, self.inventory, self.drivers, self.decisions, self.output,
                method=flash.method,
                ven_device=flash.ven_device,
                benign_exit_codes=flash.benign_exit_codes,
            )
        fru = None
        if OP_FRU in flash.operations:
            fru = FruProvisioner(
                self.runner, self.decisions,
                manufacturer=system.manufacturer,
                product=system.product,
                output=self.output,
            )
        return FlashingPhase(system, mac_engine=mac_engine, efi=self.efi, fru=fru, output=self.output)

    def run_flashing(self, data: FlashData) -> tuple[list[FlashResult], bool]:
        flash = self.config.flash
        self.output.subheader("Flashing Phase [2/2]")
        self.output.separator(thick=True)
        self.output.line(f"Operations: {', '.join(flash.operations)} | Method: {flash.method}")
        return self.flashing_phase().run(flash.operations, data)

    def build_record(
        self,
        started: float,
        info: SystemInfo,
        data: Optional[FlashData],
        test_results: list[TestResult],
        flash_results: list[FlashResult],
    ) -> SessionRecord:
        data = data or FlashData()
        system = SystemRecord(
            product=info.product,
            mb_serial=data.system_serial or info.original_mb_serial,
            io_serial=data.io_board,
            mac=data.mac,
            ip=info.ip,
            timestamp=info.timestamp,
            original_mb_serial=info.original_mb_serial,
            original_macs=tuple(info.original_macs),
            dmidecode=info.dmidecode,
        )
        return SessionRecord(
            session_id=session_id(self._clock()),
            timestamp=started,
            state=compute_state(test_results, flash_results),
            mode=self.mode,
            config=self.config.path or "",
            duration=self._clock() - started,
            operator=self.config.log.op_name,
            test_results=tuple(test_results),
            flash_results=tuple(flash_results),
            system=system,
        )

    def report(self, record: SessionRecord) -> None:
        if record.system.mb_serial != record.system.original_mb_serial:
            self.output.info(
                f"  Original MB Serial: {record.system.original_mb_serial} -> Flashed: {record.system.mb_serial}"
            )
        try:
            path = save_local(record, self.config.log)
        except OSError as exc:
            self.output.error(f"Failed to save log: {exc}")
        else:
            if path:
                self.output.success(f"Log saved: {path}")

        if not self.uploader.enabled:
            self.output.info("Log sending disabled")
            return
        try:
            target = self.uploader.upload(record)
        except (ExecutionError, OSError) as exc:
            self.output.error(f"Failed to send log to server: {exc}")
        else:
            self.output.success(f"Log sent: {target}")

    def power_off(self, serial_changed: bool) -> int:
        """Reboot into the one-shot entry after a serial change, else offer a shutdown."""
        if serial_changed:
            self.output.warning("Serial number was updated. System reboot is required for changes to take effect.")
            if not self.decisions.confirm("Do you want to reboot the system now?", default=True):
                self.output.info("Reboot cancelled by user.")
                self.output.warning("Note: Serial number changes require a reboot to take effect.")
                return 0
            self.output.info("Preparing system for reboot...")
            try:
                self.boot.arm_one_time_boot()
            except BootEntryError as exc:
                self.output.error(f"Boot entry error: {exc}")
                return 1
            self.output.success("System will reboot now...")
            res = self.runner.run(["reboot"], timeout=60)
            if not res.ok:
                self.output.error(f"Failed to reboot: {res.error_summary}")
                return 1
            return 0

        self.output.info("No serial number changes were made. System can be safely shut down.")
        if not self.decisions.confirm("Do you want to shutdown the system now?", default=True):
            self.output.info("Shutdown cancelled by user.")
            return 0
        self.output.success("System will shutdown now...")
        res = self.runner.run(["shutdown", "-h", "now"], timeout=60)
        if not res.ok:
            self.output.error(f"Failed to shutdown: {res.error_summary}")
            return 1
        return 0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Run the session and return the process exit code.

        Raises:
            PreconditionError: Root missing, another session running,
                identification failed or flash data could not be collected.
        """
        self.check_privileges()
        with self.lock:
            return self._run_locked()

    def _run_locked(self) -> int:
        self.print_configuration()
        started = self._clock()
        info = self.identify_system()
        if not self.product_matches(info.product):
            self.output.info("Program terminated by user due to product mismatch")
            return 0

        self.uploader.probe()

        test_results: list[TestResult] = []
        if self.mode != MODE_FLASH_ONLY:
            test_results = self.run_tests()

        data: Optional[FlashData] = None
        flash_results: list[FlashResult] = []
        serial_changed = False
        if self.mode != MODE_TESTS_ONLY and self.config.flash.enabled:
            data = collect(self.config.flash, info.product, self.decisions, self.output, self.presets)
            if data is not None:
                flash_results, serial_changed = self.run_flashing(data)

        record = self.build_record(started, info, data, test_results, flash_results)
        self.report(record)
        print_execution_summary(self.output, test_results, flash_results, record.duration)

        exit_code = 1 if record.state == STATE_FAILED else 0
        if exit_code:
            self.output.error(f"Exiting with error code {exit_code} due to failed critical operations")
        power_code = self.power_off(serial_changed)
        return exit_code or power_code
