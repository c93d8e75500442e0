"""Exception hierarchy for firestarter.

Preconditions are fatal for the session, execution errors are recovered
through the operator retry loop, verification errors are always shown to the
operator.
"""

from __future__ import annotations

from typing import Optional


class FirestarterError(RuntimeError):
    """Base class for all firestarter errors."""


class PreconditionError(FirestarterError):
    """Something required before work can start is missing (root, efivarfs, toolchain)."""


class ConfigError(PreconditionError):
    """Configuration file is missing or malformed."""


class ExecutionError(FirestarterError):
    """An external tool failed or produced output that could not be parsed."""


class VerificationError(FirestarterError):
    """A read-back did not match what was written.

    Attributes:
        mismatches: ``(field, expected, actual)`` tuples, one per bad field.
    """

    def __init__(self, message: str, mismatches: Optional[list[tuple[str, str, str]]] = None):
        self.mismatches = list(mismatches or [])
        if self.mismatches:
            detail = "; ".join(
                f"{name}: expected {expected!r}, got {actual!r}"
                for name, expected, actual in self.mismatches
            )
            message = f"{message} ({detail})"
        super().__init__(message)


class OperatorAbort(FirestarterError):
    """The operator chose to abort the current phase."""


class EfiVariableNotFound(LookupError):
    """The requested EFI variable does not exist."""


class BootEntryError(FirestarterError):
    """A boot-entry step could not be completed or verified."""
