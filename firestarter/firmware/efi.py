"""UEFI runtime variables via efivarfs.

Each variable is a file ``<Name>-<guid>`` under the efivarfs mount. The file
content is a 4-byte little-endian attribute mask followed by the data, and a
write must deliver both in a single ``write()`` call.
"""

from __future__ import annotations

import logging
import os
import re
import struct
from typing import Optional, Union

from firestarter.errors import EfiVariableNotFound, ExecutionError, PreconditionError
from firestarter.process_utils import CommandRunner

logger = logging.getLogger(__name__)

EFIVARS_ROOT = "/sys/firmware/efi/efivars"

EFI_VARIABLE_NON_VOLATILE = 0x00000001
EFI_VARIABLE_BOOTSERVICE_ACCESS = 0x00000002
EFI_VARIABLE_RUNTIME_ACCESS = 0x00000004
DEFAULT_ATTRIBUTES = (
    EFI_VARIABLE_NON_VOLATILE | EFI_VARIABLE_BOOTSERVICE_ACCESS | EFI_VARIABLE_RUNTIME_ACCESS
)

MAX_NAME_LEN = 1024
MAX_VALUE_LEN = 1024

_GUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def validate_guid(guid: str) -> str:
    if not _GUID_RE.match(guid or ""):
        raise ExecutionError(f"invalid GUID format {guid!r}")
    return guid.lower()


class EfiVariableStore:
    """Read and write EFI variables identified by ``(guid, name)``.

    Values are never cached; every ``get`` reads the firmware.

    Args:
        runner: Used for ``chattr -i`` on existing variables.
        root: efivarfs mount point.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, root: str = EFIVARS_ROOT):
        self.runner = runner or CommandRunner()
        self.root = root

    def ensure_available(self) -> None:
        if not os.path.isdir(self.root):
            raise PreconditionError("EFI variables not supported on this system (efivars not found)")

    def path(self, guid: str, name: str) -> str:
        return os.path.join(self.root, f"{name}-{validate_guid(guid)}")

    def get(self, guid: str, name: str) -> bytes:
        """Variable data without the attribute header.

        Raises:
            EfiVariableNotFound: The variable does not exist.
        """
        path = self.path(guid, name)
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except FileNotFoundError:
            raise EfiVariableNotFound(f"{name}-{guid}") from None
        except OSError as exc:
            raise ExecutionError(f"failed to read EFI variable {name}: {exc}") from exc
        if len(raw) < 4:
            raise ExecutionError(f"EFI variable {name} is truncated ({len(raw)} bytes)")
        return raw[4:]

    def set(
        self,
        guid: str,
        name: str,
        value: Union[bytes, str],
        attributes: int = DEFAULT_ATTRIBUTES,
    ) -> bool:
        """Write *value* unless the variable already holds it.

        A read-back mismatch after writing is logged as a warning, not raised.

        Returns:
            ``True`` if the variable was written, ``False`` if it already matched.
        """
        data = value.encode() if isinstance(value, str) else bytes(value)
        if not name or len(name) > MAX_NAME_LEN:
            raise ExecutionError("invalid variable name")
        if not data or len(data) > MAX_VALUE_LEN:
            raise ExecutionError("invalid variable value")
        path = self.path(guid, name)

        try:
            current: Optional[bytes] = self.get(guid, name)
        except EfiVariableNotFound:
            current = None
            logger.info("EFI variable %s does not exist, creating", name)
        if current == data:
            logger.info("EFI variable %s already contains target value - skipping", name)
            return False

        if current is not None:
            logger.info("EFI variable %s current value %r, updating", name, current)
            res = self.runner.run(["chattr", "-i", path], timeout=10)
            if not res.ok:
                logger.warning("chattr -i %s failed: %s", path, res.error_summary)

        payload = struct.pack("<I", attributes) + data
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o644)
            try:
                written = os.write(fd, payload)
                # efivarfs replaces the variable on write; a plain file keeps its old tail.
                if os.fstat(fd).st_size > len(payload):
                    os.ftruncate(fd, len(payload))
            finally:
                os.close(fd)
        except OSError as exc:
            raise ExecutionError(f"failed to write EFI variable {name}: {exc}") from exc
        if written != len(payload):
            raise ExecutionError(f"short write to EFI variable {name}: {written}/{len(payload)} bytes")

        try:
            readback = self.get(guid, name)
        except (EfiVariableNotFound, ExecutionError) as exc:
            logger.warning("EFI variable %s read-back failed: %s", name, exc)
        else:
            if readback != data:
                logger.warning("EFI variable %s read-back mismatch: wrote %r, read %r", name, data, readback)
        logger.info("EFI variable %s set", name)
        return True
