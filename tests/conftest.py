"""Shared pytest configuration for firestarter tests."""

from __future__ import annotations

import io
import socket
from types import SimpleNamespace

import psutil
import pytest

from firestarter.console import OutputManager
from firestarter.mocks import FakeCommandRunner, ScriptedDecisionProvider, make_result
from firestarter.network.drivers import DriverLifecycleManager
from firestarter.network.inventory import NetworkInterfaceInventory


def pytest_addoption(parser):
    parser.addoption(
        "--hw",
        action="store_true",
        default=False,
        help="Run hardware tests (requires root on a machine being provisioned)",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--hw"):
        return
    skip_hw = pytest.mark.skip(reason="needs --hw")
    for item in items:
        if "hw" in item.keywords:
            item.add_marker(skip_hw)


# ---------------------------------------------------------------------------
# Simulated host pieces
# ---------------------------------------------------------------------------

class FakeKernel:
    """Module table behind lsmod/rmmod/modprobe/insmod on a FakeCommandRunner."""

    def __init__(self, runner: FakeCommandRunner, loaded=()):
        self.loaded = list(loaded)
        self.stuck: set[str] = set()       # rmmod reports success but the module stays
        self.refuse: set[str] = set()      # rmmod (and rmmod -f) fail
        self.broken: set[str] = set()      # modprobe fails
        runner.on("lsmod", self._lsmod)
        runner.on("rmmod", self._rmmod)
        runner.on("modprobe", self._modprobe)
        runner.on("insmod", self._insmod)

    def _lsmod(self, argv):
        lines = ["Module                  Size  Used by"]
        lines += [f"{m:<24}{10000:>6}  0" for m in self.loaded]
        return make_result(argv, stdout="\n".join(lines) + "\n")

    def _rmmod(self, argv):
        module = argv[-1]
        if module in self.refuse:
            return make_result(argv, stderr=f"rmmod: ERROR: Module {module} is in use\n", returncode=1)
        if module in self.loaded and module not in self.stuck:
            self.loaded.remove(module)
        return make_result(argv)

    def _modprobe(self, argv):
        module = argv[-1]
        if module in self.broken:
            return make_result(argv, stderr=f"modprobe: FATAL: Module {module} not found\n", returncode=1)
        if module not in self.loaded:
            self.loaded.append(module)
        return make_result(argv)

    def _insmod(self, argv):
        if "pgdrv" not in self.loaded:
            self.loaded.append("pgdrv")
        return make_result(argv)


class FakeNetwork:
    """psutil-compatible interface table plus ``ethtool -i`` answers."""

    def __init__(self, runner: FakeCommandRunner, interfaces: dict):
        # name -> {"mac": ..., "ip": ..., "driver": ..., "up": ...}
        self.interfaces = {name: dict(v) for name, v in interfaces.items()}
        runner.on("ethtool", self._ethtool)

    def _ethtool(self, argv):
        iface = self.interfaces.get(argv[-1])
        if iface is None or not iface.get("driver"):
            return make_result(argv, returncode=1, stderr="no such device\n")
        return make_result(argv, stdout=f"driver: {iface['driver']}\nversion: 1.0\n")

    def net_if_addrs(self):
        table = {}
        for name, iface in self.interfaces.items():
            entries = [SimpleNamespace(family=psutil.AF_LINK, address=iface.get("mac", ""))]
            if iface.get("ip"):
                entries.append(SimpleNamespace(family=socket.AF_INET, address=iface["ip"]))
            table[name] = entries
        return table

    def net_if_stats(self):
        return {name: SimpleNamespace(isup=iface.get("up", True)) for name, iface in self.interfaces.items()}

    def set_mac(self, name: str, mac: str) -> None:
        self.interfaces[name]["mac"] = mac

    def inventory(self, runner, tmp_path) -> NetworkInterfaceInventory:
        return NetworkInterfaceInventory(
            runner,
            sysfs_root=str(tmp_path / "sys"),
            net_if_addrs=self.net_if_addrs,
            net_if_stats=self.net_if_stats,
            sleep=lambda s: None,
        )


def make_drivers(runner, tmp_path, **kw) -> DriverLifecycleManager:
    kw.setdefault("driver_dir", str(tmp_path / "drivers"))
    kw.setdefault("modules_root", str(tmp_path / "lib" / "modules"))
    kw.setdefault("sysfs_root", str(tmp_path / "sys"))
    kw.setdefault("which", lambda tool: f"/usr/bin/{tool}")
    kw.setdefault("sleep", lambda s: None)
    return DriverLifecycleManager(runner, **kw)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def runner():
    return FakeCommandRunner()


@pytest.fixture
def decisions():
    return ScriptedDecisionProvider()


@pytest.fixture
def console():
    """OutputManager writing into a StringIO; read it with ``console.stream.getvalue()``."""
    return OutputManager(stream=io.StringIO())
