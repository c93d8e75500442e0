"""Interpretation of vendor-tool results.

Vendor flashing tools are inconsistent about exit codes: eeupdate exits 2
when no Intel base driver is loaded even though it flashed fine, and
ipmitool often prints nothing on success. Each tool gets an
:class:`OutcomeClassifier` that turns a :class:`CommandResult` into a
:class:`Verdict`. Ambiguous verdicts count as success but are logged at
WARNING so they show up in the audit trail.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from firestarter.process_utils import CommandResult, Status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Verdict:
    ok: bool
    reason: str = ""
    ambiguous: bool = False


class OutcomeClassifier(ABC):
    """Maps a finished command to success or failure."""

    tool = "tool"

    def classify(self, result: CommandResult) -> Verdict:
        if result.status is Status.TIMEOUT:
            return Verdict(False, f"{self.tool} timed out")
        verdict = self._classify(result)
        if verdict.ambiguous:
            logger.warning("%s outcome ambiguous (exit %s): %s", self.tool, result.returncode, verdict.reason)
        return verdict

    @abstractmethod
    def _classify(self, result: CommandResult) -> Verdict:
        ...


def _has_any(text: str, words: Iterable[str]) -> bool:
    return any(w in text for w in words)


class EeupdateClassifier(OutcomeClassifier):
    """Intel ``eeupdate64e /NIC=n /MAC=...`` output.

    Args:
        benign_exit_codes: Non-zero exit codes that do not by themselves mean failure.
    """

    tool = "eeupdate64e"

    def __init__(self, benign_exit_codes: Iterable[int] = (2,)):
        self.benign_exit_codes = frozenset(benign_exit_codes)

    def _classify(self, result: CommandResult) -> Verdict:
        rc = result.returncode
        benign = rc in self.benign_exit_codes
        if rc != 0 and not benign:
            return Verdict(False, f"exit code {rc}: {result.output.strip()}")

        out = result.output
        lower = out.lower()
        if "Updating Mac Address" in out and "Done" in out:
            return Verdict(True, "MAC address updated")
        if "Updating Checksum and CRCs" in out and "Done" in out:
            return Verdict(True, "checksum and CRCs updated")
        if _has_any(lower, ("success", "complete", "updated", "written")):
            return Verdict(True, "success reported")
        if _has_any(lower, ("error", "fail", "invalid")):
            return Verdict(False, f"error reported (exit code {rc}): {out.strip()}")
        if len(out) > 50 and rc == 0:
            return Verdict(True, "completed without status markers")
        if benign:
            return Verdict(True, f"benign exit code {rc} with no status markers", ambiguous=True)
        return Verdict(True, "no status markers in output", ambiguous=True)


class RtnicClassifier(OutcomeClassifier):
    """Realtek ``rtnic /efuse /nicmac /nodeid ...`` output."""

    tool = "rtnic"

    def _classify(self, result: CommandResult) -> Verdict:
        if result.returncode != 0:
            return Verdict(False, f"exit code {result.returncode}: {result.output.strip()}")
        lower = result.output.lower()
        if _has_any(lower, ("error", "fail")):
            return Verdict(False, f"error reported: {result.output.strip()}")
        return Verdict(True, "completed")


class FruWriteClassifier(OutcomeClassifier):
    """``ipmitool fru write`` output. Silence is success on many BMCs."""

    tool = "ipmitool fru write"

    def _classify(self, result: CommandResult) -> Verdict:
        if result.returncode != 0:
            return Verdict(False, f"exit code {result.returncode}: {result.output.strip()}")
        out = result.output
        lower = out.lower()
        if _has_any(lower, ("success", "written")) or not out.strip():
            return Verdict(True, "written")
        if _has_any(lower, ("error", "fail")):
            return Verdict(False, f"error reported: {out.strip()}")
        return Verdict(True, "no status markers in output", ambiguous=True)
