"""Kernel network driver lifecycle.

Loading, unloading and verifying NIC kernel modules, including the Realtek
programming driver (``pgdrv``) that ``rtnic`` needs in place of the normal
NIC driver. The flashing driver is either loaded from a per-kernel cache or
compiled from the ``rtnicpg`` sources in the driver directory.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional

from firestarter.errors import ExecutionError, PreconditionError
from firestarter.network.inventory import INTEL_DRIVERS
from firestarter.process_utils import CommandRunner, poll_until

logger = logging.getLogger(__name__)

FLASHING_MODULE = "pgdrv"
RTNICPG_SOURCE_DIR = "rtnicpg"


class ModuleState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    UNLOADING = "unloading"


@dataclass
class FlashingDriverSession:
    """What ``flashing_driver()`` changed, so cleanup can undo exactly that."""
    normal_driver: str
    already_ready: bool = False
    module_path: str = ""


class DriverLifecycleManager:
    """Load/unload kernel modules with bounded verification.

    Args:
        runner: Command runner for lsmod/rmmod/modprobe/insmod/make.
        driver_dir: Cache and source directory for the flashing driver.
        modules_root: Where kernel build trees live (``/lib/modules``).
        which: ``shutil.which`` compatible lookup for build tools.
        sleep: Used for polling and settle delays.
    """

    def __init__(
        self,
        runner: CommandRunner,
        driver_dir: str = "",
        modules_root: str = "/lib/modules",
        sysfs_root: str = "/sys",
        which: Callable[[str], Optional[str]] = shutil.which,
        sleep: Callable[[float], None] = time.sleep,
        unload_timeout_s: float = 3.0,
        load_timeout_s: float = 10.0,
        insmod_timeout_s: float = 5.0,
        poll_interval_s: float = 0.1,
        unload_settle_s: float = 2.0,
        reload_pause_s: float = 1.0,
        reload_settle_s: float = 5.0,
    ):
        self.runner = runner
        self.driver_dir = driver_dir
        self.modules_root = modules_root
        self.sysfs_root = sysfs_root
        self._which = which
        self._sleep = sleep
        self.unload_timeout_s = unload_timeout_s
        self.load_timeout_s = load_timeout_s
        self.insmod_timeout_s = insmod_timeout_s
        self.poll_interval_s = poll_interval_s
        self.unload_settle_s = unload_settle_s
        self.reload_pause_s = reload_pause_s
        self.reload_settle_s = reload_settle_s
        self._states: dict[str, ModuleState] = {}

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def loaded_modules(self) -> set[str]:
        res = self.runner.run(["lsmod"], timeout=10)
        if not res.ok:
            raise ExecutionError(f"lsmod failed: {res.error_summary}")
        modules = set()
        for line in res.stdout.splitlines()[1:]:
            parts = line.split()
            if parts:
                modules.add(parts[0])
        return modules

    def is_loaded(self, module: str) -> bool:
        return module in self.loaded_modules()

    def state(self, module: str) -> ModuleState:
        tracked = self._states.get(module)
        if tracked in (ModuleState.LOADING, ModuleState.UNLOADING):
            return tracked
        return ModuleState.LOADED if self.is_loaded(module) else ModuleState.UNLOADED

    def kernel_version(self) -> str:
        res = self.runner.run(["uname", "-r"], timeout=10)
        if not res.ok or not res.stdout.strip():
            raise ExecutionError(f"failed to get kernel version: {res.error_summary}")
        return res.stdout.strip()

    def _wait(self, module: str, present: bool, timeout_s: float) -> bool:
        return poll_until(
            lambda: self.is_loaded(module) == present,
            timeout_s=timeout_s,
            interval_s=self.poll_interval_s,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def unload(self, module: str) -> bool:
        """Remove *module*; ``rmmod -f`` if the plain rmmod is refused.

        Returns ``False`` (with a warning) if the module is still listed after
        the verification window.

        Raises:
            ExecutionError: If both rmmod variants fail.
        """
        if not module:
            raise ExecutionError("driver name is empty")
        if not self.is_loaded(module):
            logger.info("%s not loaded, nothing to unload", module)
            self._states[module] = ModuleState.UNLOADED
            return True

        self._states[module] = ModuleState.UNLOADING
        res = self.runner.run(["rmmod", module], timeout=30)
        if not res.ok:
            logger.warning("rmmod %s failed (%s), trying force", module, res.error_summary)
            res = self.runner.run(["rmmod", "-f", module], timeout=30)
            if not res.ok:
                self._states[module] = ModuleState.LOADED
                raise ExecutionError(f"rmmod {module} failed: {res.output.strip() or res.error_summary}")

        gone = self._wait(module, present=False, timeout_s=self.unload_timeout_s)
        if gone:
            self._states[module] = ModuleState.UNLOADED
            logger.info("%s unloaded", module)
        else:
            self._states[module] = ModuleState.LOADED
            logger.warning("%s still appears loaded after rmmod", module)
        return gone

    def load(self, module: str) -> bool:
        """``modprobe`` *module* and wait for it to appear.

        Raises:
            ExecutionError: If modprobe fails.
        """
        if not module:
            raise ExecutionError("driver name is empty")
        self._states[module] = ModuleState.LOADING
        res = self.runner.run(["modprobe", module], timeout=60)
        if not res.ok:
            self._states[module] = ModuleState.UNLOADED
            raise ExecutionError(f"modprobe {module} failed: {res.output.strip() or res.error_summary}")
        ok = self._wait(module, present=True, timeout_s=self.load_timeout_s)
        self._states[module] = ModuleState.LOADED if ok else ModuleState.UNLOADED
        if not ok:
            logger.warning("Timed out waiting for %s to load", module)
        return ok

    def load_from_path(self, path: str, module: str = FLASHING_MODULE) -> None:
        """``insmod`` a module file and verify *module* appears.

        Raises:
            ExecutionError: If the file is missing, insmod fails, or the
                module never shows up.
        """
        if not os.path.exists(path):
            raise ExecutionError(f"driver file not found: {path}")
        self._states[module] = ModuleState.LOADING
        res = self.runner.run(["insmod", path], timeout=60)
        if not res.ok:
            self._states[module] = ModuleState.UNLOADED
            raise ExecutionError(f"insmod {path} failed: {res.output.strip() or res.error_summary}")
        if not self._wait(module, present=True, timeout_s=self.insmod_timeout_s):
            self._states[module] = ModuleState.UNLOADED
            raise ExecutionError(f"timeout waiting for {module} to load")
        self._states[module] = ModuleState.LOADED
        logger.info("%s loaded from %s", module, path)

    # ------------------------------------------------------------------
    # Intel driver set (eeupdate)
    # ------------------------------------------------------------------

    def detect_intel_drivers(self) -> list[str]:
        """Drivers bound to Intel Ethernet/Network PCI functions.

        Falls back to whichever common Intel NIC modules are loaded.
        """
        drivers: list[str] = []
        res = self.runner.run(["lspci", "-nn", "-d", "8086:"], timeout=30)
        if res.ok:
            for line in res.stdout.splitlines():
                lower = line.lower()
                if "ethernet" not in lower and "network" not in lower:
                    continue
                parts = line.split()
                if not parts:
                    continue
                link = os.path.join(self.sysfs_root, "bus", "pci", "devices", f"0000:{parts[0]}", "driver")
                try:
                    name = os.path.basename(os.readlink(link))
                except OSError:
                    continue
                if name not in drivers:
                    logger.info("Found Intel driver %s (PCI %s)", name, parts[0])
                    drivers.append(name)
        else:
            logger.warning("lspci failed: %s", res.error_summary)

        if not drivers:
            logger.warning("No Intel network drivers found via PCI, checking loaded modules")
            try:
                loaded = self.loaded_modules()
            except ExecutionError as exc:
                logger.warning("%s", exc)
                loaded = set()
            drivers = [d for d in INTEL_DRIVERS if d in loaded]
        return drivers

    def unload_all(self, modules: list[str]) -> None:
        for module in modules:
            try:
                self.unload(module)
            except ExecutionError as exc:
                logger.warning("Failed to unload %s: %s", module, exc)
        if self.unload_settle_s:
            self._sleep(self.unload_settle_s)

    def reload_all(self, modules: list[str]) -> None:
        for module in modules:
            try:
                self.load(module)
            except ExecutionError as exc:
                logger.warning("Failed to reload %s: %s", module, exc)
            if self.reload_pause_s:
                self._sleep(self.reload_pause_s)
        if self.reload_settle_s:
            self._sleep(self.reload_settle_s)

    # ------------------------------------------------------------------
    # Flashing driver (rtnicpg / pgdrv)
    # ------------------------------------------------------------------

    def cached_module_path(self, normal_driver: str, kernel: str) -> str:
        return os.path.join(self.driver_dir, f"{normal_driver}_{kernel}.ko")

    def check_build_requirements(self, kernel: str) -> None:
        """Raises :class:`PreconditionError` if the module cannot be compiled here."""
        for tool in ("make", "gcc"):
            if not self._which(tool):
                raise PreconditionError(f"{tool} not found - install build-essential")
        headers = os.path.join(self.modules_root, kernel, "build")
        if not os.path.exists(headers):
            raise PreconditionError(f"kernel headers not found at {headers} - install linux-headers-{kernel}")

    def build_flashing_driver(self, normal_driver: str, kernel: str) -> str:
        """Compile ``pgdrv.ko`` from sources and cache it under a kernel-qualified name.

        Returns:
            Path of the cached module.
        """
        self.check_build_requirements(kernel)
        source_dir = os.path.join(self.driver_dir, RTNICPG_SOURCE_DIR)
        if not os.path.isfile(os.path.join(source_dir, "Makefile")):
            raise PreconditionError(f"rtnicpg source directory not found in {self.driver_dir}")

        clean = self.runner.run(["make", "clean"], timeout=120, cwd=source_dir)
        if not clean.ok:
            logger.warning("make clean failed (non-critical): %s", clean.error_summary)

        env = dict(os.environ)
        env["KERNELDIR"] = os.path.join(self.modules_root, kernel, "build")
        build = self.runner.run(["make", "all"], timeout=600, env=env, cwd=source_dir)
        if not build.ok:
            raise ExecutionError(f"compilation failed: {build.output.strip() or build.error_summary}")

        built = os.path.join(source_dir, f"{FLASHING_MODULE}.ko")
        if not os.path.isfile(built):
            raise ExecutionError(f"compilation succeeded but {built} not found")

        target = self.cached_module_path(normal_driver, kernel)
        try:
            os.makedirs(self.driver_dir, exist_ok=True)
            shutil.copyfile(built, target)
        except OSError as exc:
            raise ExecutionError(f"could not cache {FLASHING_MODULE} as {target}: {exc}") from exc
        try:
            os.chmod(target, 0o644)
        except OSError as exc:
            logger.warning("Failed to set permissions on %s: %s", target, exc)
        logger.info("Driver saved as %s", target)
        return target

    def load_flashing_driver(self, normal_driver: str) -> str:
        """Load ``pgdrv`` from the cache, compiling it if the cache is missing or bad."""
        kernel = self.kernel_version()
        cached = self.cached_module_path(normal_driver, kernel)
        if os.path.exists(cached):
            try:
                self.load_from_path(cached)
                return cached
            except ExecutionError as exc:
                logger.warning("Pre-compiled driver failed to load: %s; recompiling", exc)
                self._unload_quietly(FLASHING_MODULE)

        built = self.build_flashing_driver(normal_driver, kernel)
        self.load_from_path(built)
        return built

    def _unload_quietly(self, module: str) -> None:
        try:
            self.unload(module)
        except ExecutionError as exc:
            logger.warning("%s", exc)

    def _restore(self, normal_driver: str) -> None:
        if not normal_driver:
            return
        try:
            self.load(normal_driver)
        except ExecutionError as exc:
            logger.error("Failed to restore driver %s: %s", normal_driver, exc)

    def prepare_flashing_driver(self, normal_driver: str) -> FlashingDriverSession:
        """Swap *normal_driver* for the flashing module.

        On failure the normal driver is reloaded before the error propagates.
        """
        session = FlashingDriverSession(normal_driver=normal_driver)
        flashing_loaded = self.is_loaded(FLASHING_MODULE)
        normal_loaded = bool(normal_driver) and self.is_loaded(normal_driver)
        logger.info("Initial state: %s loaded=%s, %s loaded=%s",
                    FLASHING_MODULE, flashing_loaded, normal_driver or "-", normal_loaded)

        if flashing_loaded and not normal_loaded:
            logger.info("%s already loaded with no conflicting driver", FLASHING_MODULE)
            session.already_ready = True
            return session

        try:
            if flashing_loaded and normal_loaded:
                logger.warning("%s and %s both loaded, unloading both", FLASHING_MODULE, normal_driver)
                self._unload_quietly(FLASHING_MODULE)
                self._unload_quietly(normal_driver)
            elif normal_loaded and not self.unload(normal_driver):
                raise ExecutionError(f"{normal_driver} did not unload")
            session.module_path = self.load_flashing_driver(normal_driver)
        except (ExecutionError, PreconditionError):
            logger.warning("Failed to prepare %s, restoring %s", FLASHING_MODULE, normal_driver)
            self._restore(normal_driver)
            raise
        return session

    def release_flashing_driver(self, session: FlashingDriverSession) -> None:
        if session.already_ready:
            logger.info("%s was pre-loaded, leaving it active", FLASHING_MODULE)
            return
        self._unload_quietly(FLASHING_MODULE)
        self._restore(session.normal_driver)

    @contextmanager
    def flashing_driver(self, normal_driver: str) -> Iterator[FlashingDriverSession]:
        """Hold the flashing module loaded for the duration of the block."""
        session = self.prepare_flashing_driver(normal_driver)
        try:
            yield session
        finally:
            self.release_flashing_driver(session)
