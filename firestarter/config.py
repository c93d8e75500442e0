"""YAML configuration loading.

The file has four top-level sections (``system``, ``tests``, ``flash``,
``log``); each maps onto one dataclass below. Durations may be written as
Go-style strings (``"5m"``, ``"1m30s"``, ``"250ms"``) or plain numbers of
seconds.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from firestarter.errors import ConfigError

DEFAULT_TEST_TIMEOUT = 30.0

FIELD_SYSTEM_SERIAL = "system-serial-number"
FIELD_IO_BOARD = "io_board"
FIELD_MAC = "mac_address"

METHOD_EEUPDATE = "eeupdate"
METHOD_RTNICPG = "rtnicpg"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """Convert a duration to seconds.

    ``None`` and ``""`` mean "not set" and return ``None``.

    Raises:
        ConfigError: If the string is not a valid duration.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class TestSpec:
    """One diagnostic test declared in the configuration."""
    __test__ = False

    name: str
    command: str
    args: tuple[str, ...] = ()
    timeout: Optional[float] = None   # seconds; None = global/default
    required: bool = False
    collapse: bool = False            # hide output when the test passes
    kind: str = "standard"

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass
class SystemConfig:
    product: str = ""
    manufacturer: str = ""
    require_root: bool = False
    guid_prefix: str = ""
    efi_sn_name: str = ""
    efi_mac_name: str = ""
    driver_dir: str = ""


@dataclass
class TestsConfig:
    __test__ = False

    timeout: Optional[float] = None
    parallel_groups: list[list[TestSpec]] = field(default_factory=list)
    sequential_groups: list[list[TestSpec]] = field(default_factory=list)


@dataclass
class FlashField:
    """An operator-entered value, auto-matched by regex."""
    name: str
    id: str
    regex: str
    flash: bool = False
    pattern: Optional[re.Pattern] = None

    def matches(self, value: str) -> bool:
        pattern = self.pattern or re.compile(self.regex)
        return pattern.search(value) is not None


@dataclass
class FlashConfig:
    enabled: bool = False
    operations: list[str] = field(default_factory=list)
    fields: list[FlashField] = field(default_factory=list)
    method: str = METHOD_EEUPDATE
    ven_device: list[str] = field(default_factory=list)
    benign_exit_codes: tuple[int, ...] = (2,)


@dataclass
class LogConfig:
    save_local: bool = False
    send_logs: bool = False
    log_dir: str = "logs"
    server: str = ""
    server_dir: str = ""
    op_name: str = ""


@dataclass
class Config:
    system: SystemConfig = field(default_factory=SystemConfig)
    tests: TestsConfig = field(default_factory=TestsConfig)
    flash: FlashConfig = field(default_factory=FlashConfig)
    log: LogConfig = field(default_factory=LogConfig)
    path: Optional[str] = None


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _str_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"'{where}' must be a list")
    return [str(v) for v in value]


def _parse_test(raw: Any, where: str) -> TestSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: test entry must be a mapping")
    name = raw.get("name")
    command = raw.get("command")
    if not name or not command:
        raise ConfigError(f"{where}: test needs 'name' and 'command'")
    return TestSpec(
        name=str(name),
        command=str(command),
        args=tuple(_str_list(raw.get("args"), f"{where}.args")),
        timeout=parse_duration(raw.get("timeout")),
        required=bool(raw.get("required", False)),
        collapse=bool(raw.get("collapse", False)),
        kind=str(raw.get("type") or "standard"),
    )


def _parse_groups(raw: Any, where: str) -> list[list[TestSpec]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"'{where}' must be a list of groups")
    groups = []
    for gi, group in enumerate(raw):
        # An empty YAML list item ("- # comment") loads as None.
        if group is None:
            continue
        if not isinstance(group, list):
            raise ConfigError(f"{where}[{gi}] must be a list of tests")
        groups.append([_parse_test(t, f"{where}[{gi}][{ti}]") for ti, t in enumerate(group)])
    return groups


def _parse_fields(raw: Any) -> list[FlashField]:
    fields = []
    for i, entry in enumerate(raw or []):
        if not isinstance(entry, dict) or not entry.get("id") or not entry.get("regex"):
            raise ConfigError(f"flash.fields[{i}] needs 'id' and 'regex'")
        regex = str(entry["regex"])
        try:
            pattern = re.compile(regex)
        except re.error as exc:
            raise ConfigError(f"invalid regex for field {entry.get('name', entry['id'])}: {exc}") from exc
        fields.append(FlashField(
            name=str(entry.get("name") or entry["id"]),
            id=str(entry["id"]),
            regex=regex,
            flash=bool(entry.get("flash", False)),
            pattern=pattern,
        ))
    return fields


def parse_config(raw: Any, path: Optional[str] = None) -> Config:
    """Build a :class:`Config` from an already-loaded YAML document."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("configuration root must be a mapping")

    system_raw = _section(raw, "system")
    tests_raw = _section(raw, "tests")
    flash_raw = _section(raw, "flash")
    log_raw = _section(raw, "log")

    system = SystemConfig(
        product=str(system_raw.get("product") or ""),
        manufacturer=str(system_raw.get("manufacturer") or ""),
        require_root=bool(system_raw.get("require_root", False)),
        guid_prefix=str(system_raw.get("guid_prefix") or ""),
        efi_sn_name=str(system_raw.get("efi_sn_name") or ""),
        efi_mac_name=str(system_raw.get("efi_mac_name") or ""),
        driver_dir=str(system_raw.get("driver_dir") or ""),
    )

    tests = TestsConfig(
        timeout=parse_duration(tests_raw.get("timeout")),
        parallel_groups=_parse_groups(tests_raw.get("parallel_groups"), "tests.parallel_groups"),
        sequential_groups=_parse_groups(tests_raw.get("sequential_groups"), "tests.sequential_groups"),
    )

    method = str(flash_raw.get("method") or METHOD_EEUPDATE)
    if method not in (METHOD_EEUPDATE, METHOD_RTNICPG):
        raise ConfigError(f"unknown flash method: {method}")
    benign = flash_raw.get("benign_exit_codes", [2])
    try:
        benign_codes = tuple(int(c) for c in (benign or []))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"flash.benign_exit_codes must be integers: {exc}") from exc

    flash = FlashConfig(
        enabled=bool(flash_raw.get("enabled", False)),
        operations=_str_list(flash_raw.get("operations"), "flash.operations"),
        fields=_parse_fields(flash_raw.get("fields")),
        method=method,
        ven_device=_str_list(flash_raw.get("ven_device"), "flash.ven_device"),
        benign_exit_codes=benign_codes,
    )

    log = LogConfig(
        save_local=bool(log_raw.get("save_local", False)),
        send_logs=bool(log_raw.get("send_logs", False)),
        log_dir=str(log_raw.get("log_dir") or "logs"),
        server=str(log_raw.get("server") or ""),
        server_dir=str(log_raw.get("server_dir") or ""),
        op_name=str(log_raw.get("op_name") or ""),
    )

    return Config(system=system, tests=tests, flash=flash, log=log, path=path)


def load_config(path: Union[str, Path]) -> Config:
    """Read and validate a YAML configuration file.

    Raises:
        ConfigError: If the file cannot be read or does not validate.
    """
    p = Path(path)
    try:
        text = p.read_text()
    except OSError as exc:
        raise ConfigError(f"cannot read config {p}: {exc}") from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {p}: {exc}") from exc
    return parse_config(raw, path=str(p))
