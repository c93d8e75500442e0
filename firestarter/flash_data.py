"""Collection of the per-unit values to flash (serials, MAC).

The operator types values in any order; each value is matched against the
regex of every field that is still missing and assigned to the first one it
fits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from firestarter.config import FIELD_IO_BOARD, FIELD_MAC, FIELD_SYSTEM_SERIAL, FlashConfig, FlashField
from firestarter.console import OutputManager
from firestarter.decisions import DecisionProvider
from firestarter.errors import PreconditionError

logger = logging.getLogger(__name__)


@dataclass
class FlashData:
    system_serial: str = ""
    io_board: str = ""
    mac: str = ""

    def assign(self, field_id: str, value: str) -> None:
        if field_id == FIELD_SYSTEM_SERIAL:
            self.system_serial = value
        elif field_id == FIELD_IO_BOARD:
            self.io_board = value
        elif field_id == FIELD_MAC:
            self.mac = value
        else:
            logger.debug("Value for unmapped field %s stored nowhere", field_id)


def parse_presets(values: Optional[list[str]]) -> dict[str, str]:
    """``["mac_address=AA:BB:..", ...]`` -> ``{"mac_address": "AA:BB:.."}``.

    Raises:
        PreconditionError: An entry has no ``=``.
    """
    presets = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise PreconditionError(f"invalid -value {item!r}, expected ID=VALUE")
        presets[key.strip()] = value.strip()
    return presets


def _match_field(value: str, fields: list[FlashField], provided: dict[str, str]) -> Optional[FlashField]:
    for f in fields:
        if f.id not in provided and f.matches(value):
            return f
    return None


def collect(
    config: FlashConfig,
    product: str,
    decisions: DecisionProvider,
    output: Optional[OutputManager] = None,
    presets: Optional[dict[str, str]] = None,
) -> Optional[FlashData]:
    """Gather a value for every configured field.

    Returns ``None`` when flashing is disabled or has no fields.

    Raises:
        PreconditionError: No product name, a preset that fails its regex, or
            input ran out before every field had a value.
    """
    if not config.enabled or not config.fields:
        return None
    if not product:
        raise PreconditionError("product name not detected")
    output = output or OutputManager()

    output.subheader("Flash Data Collection")
    output.line(f"Product: {product}")
    output.line(f"Method: {config.method}")
    if config.ven_device:
        output.line(f"Target Devices: {', '.join(config.ven_device)}")
    output.line("\nRequired fields:")
    for f in config.fields:
        output.line(f"  {'[FLASH]' if f.flash else '[STORE]'} {f.name} (format: {f.regex})")

    provided: dict[str, str] = {}
    by_id = {f.id: f for f in config.fields}
    for field_id, value in (presets or {}).items():
        f = by_id.get(field_id)
        if f is None:
            logger.warning("Ignoring value for unknown field %s", field_id)
            continue
        if not f.matches(value):
            raise PreconditionError(f"value {value!r} does not match format of {f.name} ({f.regex})")
        provided[f.id] = value
        output.info(f"{f.name} preset: {value}")

    if len(provided) < len(config.fields):
        output.line("\nEnter values (program will auto-detect field type):")
    while len(provided) < len(config.fields):
        output.line(f"\nRemaining fields: {len(config.fields) - len(provided)}")
        value = decisions.read_value("Enter value: ")
        if value is None:
            missing = ", ".join(f.name for f in config.fields if f.id not in provided)
            raise PreconditionError(f"no value provided for: {missing}")
        if not value:
            output.error("Input cannot be empty. Please re-enter.")
            continue
        f = _match_field(value, config.fields, provided)
        if f is None:
            output.error("Input does not match any expected format. Please try again.")
            continue
        provided[f.id] = value
        output.success(f"{f.name} accepted: {value} {'[WILL FLASH]' if f.flash else '[STORED ONLY]'}")

    data = FlashData()
    for field_id, value in provided.items():
        data.assign(field_id, value)

    output.line("\nCollected data summary:")
    if data.system_serial:
        output.line(f"  System Serial: {data.system_serial}")
    if data.io_board:
        output.line(f"  IO Board: {data.io_board}")
    if data.mac:
        output.line(f"  MAC Address: {data.mac}")
    return data
