"""FRU EEPROM provisioning through the BMC.

The board area (manufacturer, product, serial) is generated with ``frugen``
and written with ``ipmitool fru write``. A chip whose header is corrupt or
empty is first cleared with an all-zero image of the chip's size.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from firestarter.classifiers import FruWriteClassifier
from firestarter.console import OutputManager
from firestarter.decisions import (
    FLASH_FINAL_OPTIONS,
    FLASH_OPTIONS,
    Decision,
    DecisionContext,
    DecisionProvider,
    Phase,
)
from firestarter.errors import ExecutionError, OperatorAbort, PreconditionError, VerificationError
from firestarter.process_utils import CommandRunner

logger = logging.getLogger(__name__)

FRU_ID = "0"
BLANK_IMAGE_SIZE = 2048
MAX_FRU_ATTEMPTS = 3
INVALID_SERIALS = ("", "Not Specified", "Unknown")

_FRU_SIZE_RE = re.compile(r"Fru Size\s*:\s*(\d+)\s*bytes", re.IGNORECASE)


@dataclass
class BoardInfo:
    manufacturer: str = ""
    product: str = ""
    serial: str = ""

    @property
    def has_valid_serial(self) -> bool:
        return self.serial not in INVALID_SERIALS


@dataclass
class FruStatus:
    """Chip condition as seen by ``ipmitool fru print``. Recomputed before every write decision."""
    readable: bool = False
    present: bool = False
    empty: bool = False
    bad_checksum: bool = False
    message: str = ""
    board: Optional[BoardInfo] = None

    @property
    def needs_blank(self) -> bool:
        return self.bad_checksum or self.empty or not self.readable

    def describe(self) -> str:
        if self.empty and self.bad_checksum:
            return "Corrupted/Empty - requires blank initialization"
        if self.empty:
            return "Empty - requires initialization"
        if self.bad_checksum:
            return "Bad checksum - requires reinitialization"
        if not self.readable:
            return "Unreadable - requires blank initialization"
        return "Valid data present"


class ProvisionOutcome(Enum):
    WRITTEN = "written"
    ALREADY_SET = "already_set"
    SKIPPED = "skipped"


def parse_board_fields(output: str) -> Optional[BoardInfo]:
    """Board area fields from ``ipmitool fru print``. ``None`` if no Board field is present."""
    fields = {}
    for line in output.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        fields[key.strip()] = value.strip()
    if not any(k in fields for k in ("Board Mfg", "Board Product", "Board Serial")):
        return None
    return BoardInfo(
        manufacturer=fields.get("Board Mfg", ""),
        product=fields.get("Board Product", ""),
        serial=fields.get("Board Serial", ""),
    )


def classify_read_error(output: str) -> tuple[bool, bool]:
    """Map ``ipmitool fru print`` failure text to ``(empty, bad_checksum)``."""
    lower = output.lower()
    if "unknown fru header version" in lower:
        return True, True
    if "no fru data" in lower or "invalid" in lower or "empty" in lower:
        return True, False
    if "checksum" in lower or "fru read failed" in lower:
        return False, True
    return True, True


class FruProvisioner:
    """Writes the board serial into the FRU with verify and operator retries.

    Args:
        runner: Command runner for ipmitool / frugen.
        decisions: Operator answers on failure.
        manufacturer: Board manufacturer to write (``Unknown`` if empty).
        product: Board product name to write (``Unknown`` if empty).
        sleep: Used for the post-blank and pre-verify settle delays.
    """

    def __init__(
        self,
        runner: CommandRunner,
        decisions: DecisionProvider,
        manufacturer: str,
        product: str,
        output: Optional[OutputManager] = None,
        tmp_dir: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        blank_settle_s: float = 3.0,
        verify_delay_s: float = 2.0,
        max_attempts: int = MAX_FRU_ATTEMPTS,
        image_size: int = BLANK_IMAGE_SIZE,
    ):
        self.runner = runner
        self.decisions = decisions
        self.manufacturer = manufacturer or "Unknown"
        self.product = product or "Unknown"
        self.output = output or OutputManager()
        self.tmp_dir = tmp_dir
        self._sleep = sleep
        self.blank_settle_s = blank_settle_s
        self.verify_delay_s = verify_delay_s
        self.max_attempts = max_attempts
        self.image_size = image_size
        self.write_classifier = FruWriteClassifier()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_status(self) -> FruStatus:
        res = self.runner.run(["ipmitool", "fru", "print", FRU_ID], timeout=60)
        if not res.ok:
            empty, bad = classify_read_error(res.output)
            status = FruStatus(readable=False, empty=empty, bad_checksum=bad,
                               message=res.output.strip() or res.error_summary)
            logger.warning("FRU read failed: %s", status.message)
            return status

        board = parse_board_fields(res.output)
        return FruStatus(readable=True, present=True, empty=board is None, board=board)

    def chip_size(self) -> Optional[int]:
        """FRU device size reported by ``ipmitool fru read``, or ``None`` if unknown."""
        fd, path = tempfile.mkstemp(prefix="fru_read_", suffix=".bin", dir=self.tmp_dir)
        os.close(fd)
        try:
            res = self.runner.run(["ipmitool", "fru", "read", FRU_ID, path], timeout=60)
        finally:
            _remove(path)
        match = _FRU_SIZE_RE.search(res.output)
        return int(match.group(1)) if match else None

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write_image(self, path: str) -> None:
        res = self.runner.run(["ipmitool", "fru", "write", FRU_ID, path], timeout=120)
        verdict = self.write_classifier.classify(res)
        if not verdict.ok:
            raise ExecutionError(f"FRU write failed: {verdict.reason}")

    def write_blank(self) -> None:
        """Clear the chip with an all-zero image.

        Raises:
            PreconditionError: The chip reports a size different from the blank image.
        """
        size = self.chip_size()
        if size is None:
            logger.warning("FRU size unknown, writing %d-byte blank image anyway", self.image_size)
        elif size != self.image_size:
            raise PreconditionError(
                f"FRU chip is {size} bytes, refusing to write a {self.image_size}-byte blank image"
            )

        fd, path = tempfile.mkstemp(prefix="fru_blank_", suffix=".bin", dir=self.tmp_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(b"\x00" * self.image_size)
            self.output.info(f"Writing {self.image_size}-byte blank image to FRU...")
            self.write_image(path)
        finally:
            _remove(path)
        self.output.success("Blank FRU write completed")
        if self.blank_settle_s:
            self._sleep(self.blank_settle_s)

    def generate_image(self, serial: str) -> str:
        fd, path = tempfile.mkstemp(prefix="fru_generated_", suffix=".bin", dir=self.tmp_dir)
        os.close(fd)
        res = self.runner.run([
            "frugen",
            "--board-mfg", self.manufacturer,
            "--board-pname", self.product,
            "--board-serial", serial,
            "--ascii",
            path,
        ], timeout=60)
        if not res.ok:
            _remove(path)
            raise ExecutionError(f"frugen failed: {res.output.strip() or res.error_summary}")
        if os.path.getsize(path) == 0:
            _remove(path)
            raise ExecutionError("frugen produced an empty image")
        return path

    def verify(self, serial: str) -> None:
        """Compare the board area against what was written, field by field."""
        if self.verify_delay_s:
            self._sleep(self.verify_delay_s)
        res = self.runner.run(["ipmitool", "fru", "print", FRU_ID], timeout=60)
        if not res.ok:
            raise ExecutionError(f"failed to read FRU for verification: {res.error_summary}")
        board = parse_board_fields(res.output) or BoardInfo()

        mismatches = [
            (name, expected, actual)
            for name, expected, actual in (
                ("manufacturer", self.manufacturer, board.manufacturer),
                ("product", self.product, board.product),
                ("serial", serial, board.serial),
            )
            if expected != actual
        ]
        if mismatches:
            raise VerificationError("FRU verification failed", mismatches)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def provision(self, serial: str) -> ProvisionOutcome:
        """Make the FRU board serial equal *serial*.

        Raises:
            OperatorAbort: The operator aborted after a failure.
            PreconditionError: The chip cannot safely be blanked.
        """
        status = self.read_status()
        if status.board is not None and status.board.serial == serial:
            self.output.info(f"FRU already contains target serial number: {serial} - skipping")
            return ProvisionOutcome.ALREADY_SET

        if status.board is not None and status.board.has_valid_serial:
            self.output.info(f"Current FRU serial: {status.board.serial}, updating to: {serial}")
        self.output.subheader("FRU Chip Flashing", f"Target Serial: {serial} | Manufacturer: {self.manufacturer}")
        self.output.info(f"FRU Status: {status.describe()}")

        if status.needs_blank:
            self.write_blank()

        for attempt in range(1, self.max_attempts + 1):
            self.output.info(f"FRU generation and flashing attempt {attempt}/{self.max_attempts}...")
            try:
                image = self.generate_image(serial)
                try:
                    self.write_image(image)
                finally:
                    _remove(image)
                self.verify(serial)
            except (ExecutionError, VerificationError) as exc:
                self.output.error(str(exc))
                decision = self.decisions.decide(DecisionContext(
                    phase=Phase.FLASH,
                    subject="FRU flashing",
                    message=str(exc),
                    options=FLASH_OPTIONS if attempt < self.max_attempts else FLASH_FINAL_OPTIONS,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                ))
                if decision is Decision.SKIP:
                    self.output.warning("FRU flashing skipped by operator")
                    return ProvisionOutcome.SKIPPED
                if decision is Decision.ABORT:
                    raise OperatorAbort(f"FRU flashing aborted by operator: {exc}") from exc
                continue

            self.output.success("FRU flashing completed successfully")
            return ProvisionOutcome.WRITTEN

        raise ExecutionError(f"FRU flashing failed after {self.max_attempts} attempts")


def _remove(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
