"""Operator decision points.

Every failure in a test or a flash operation is resolved by asking a
:class:`DecisionProvider`. The console provider prompts on stdin; the
non-interactive provider applies fixed defaults so the tool can run
unattended in CI or on a bench with no keyboard.
"""

from __future__ import annotations

import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TextIO

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    CONTINUE = "continue"
    ABORT = "abort"


class Phase(str, Enum):
    TEST = "test"
    FLASH = "flash"


TEST_OPTIONS = (Decision.RETRY, Decision.CONTINUE, Decision.SKIP)
FLASH_OPTIONS = (Decision.RETRY, Decision.ABORT, Decision.SKIP)
FLASH_FINAL_OPTIONS = (Decision.ABORT, Decision.SKIP)


@dataclass(frozen=True)
class DecisionContext:
    """What failed, and which answers are allowed.

    The first entry of ``options`` is the default for a blank answer.
    """
    phase: Phase
    subject: str
    message: str = ""
    options: tuple[Decision, ...] = TEST_OPTIONS
    attempt: int = 1
    max_attempts: int = 1


class DecisionProvider(ABC):
    """Source of operator answers."""

    @abstractmethod
    def decide(self, context: DecisionContext) -> Decision:
        """Choose how to proceed after a failure. Must return one of ``context.options``."""

    @abstractmethod
    def confirm(self, question: str, default: bool = True) -> bool:
        """Yes/no question."""

    @abstractmethod
    def read_value(self, prompt: str) -> Optional[str]:
        """Read one free-form value. ``None`` means no more input is available."""


_KEYS = {
    Decision.RETRY: ("r", "retry", "y", "yes"),
    Decision.CONTINUE: ("c", "continue", "n", "no"),
    Decision.SKIP: ("s", "skip"),
    Decision.ABORT: ("a", "abort"),
}

_LABELS = {
    Decision.RETRY: "[R] Retry",
    Decision.CONTINUE: "[C] Continue with next",
    Decision.SKIP: "[S] Skip (mark as skipped by operator)",
    Decision.ABORT: "[A] Abort",
}


class ConsoleDecisionProvider(DecisionProvider):
    """Prompt the operator on the terminal.

    Args:
        input_fn: Line reader, ``input`` by default. EOF is treated as a blank answer.
        stream: Where prompts are written.
    """

    def __init__(self, input_fn: Callable[[str], str] = input, stream: Optional[TextIO] = None):
        self._input = input_fn
        self._stream = stream

    def _out(self, text: str) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        stream.write(text + "\n")
        stream.flush()

    def _ask(self, prompt: str) -> Optional[str]:
        try:
            return self._input(prompt)
        except EOFError:
            return None

    def decide(self, context: DecisionContext) -> Decision:
        title = "TEST FAILED" if context.phase is Phase.TEST else "FLASH OPERATION FAILED"
        self._out(f"\n=== {title} ===")
        self._out(f"{context.subject} failed (attempt {context.attempt}/{context.max_attempts}).")
        if context.message:
            self._out(f"Error: {context.message}")
        self._out("Choose action:")
        for i, option in enumerate(context.options):
            self._out(f"  {_LABELS[option]}{' (default)' if i == 0 else ''}")

        keys = "/".join(o.value[0] for o in context.options)
        while True:
            answer = self._ask(f"Choice [{keys}]: ")
            if answer is None:
                return context.options[0]
            answer = answer.strip().lower()
            if not answer:
                return context.options[0]
            for option in context.options:
                if answer in _KEYS[option]:
                    return option
            self._out(f"Invalid choice '{answer}'.")

    def confirm(self, question: str, default: bool = True) -> bool:
        hint = "[Y/n]" if default else "[y/N]"
        while True:
            answer = self._ask(f"{question} {hint}: ")
            if answer is None:
                return default
            answer = answer.strip().lower()
            if not answer:
                return default
            if answer in ("y", "yes"):
                return True
            if answer in ("n", "no"):
                return False
            self._out("Please answer 'y' or 'n'.")

    def read_value(self, prompt: str) -> Optional[str]:
        answer = self._ask(prompt)
        return None if answer is None else answer.strip()


class NonInteractiveDecisionProvider(DecisionProvider):
    """Fixed answers for unattended runs.

    Failed tests are kept as-is, failed flash operations abort the flashing
    phase, and confirmations are declined. There is no operator to type
    values, so ``read_value`` always reports end of input.
    """

    def decide(self, context: DecisionContext) -> Decision:
        preferred = Decision.CONTINUE if context.phase is Phase.TEST else Decision.ABORT
        choice = preferred if preferred in context.options else context.options[-1]
        logger.warning("Non-interactive: %s failed, choosing %s", context.subject, choice.value)
        return choice

    def confirm(self, question: str, default: bool = True) -> bool:
        logger.info("Non-interactive: declining %r", question)
        return False

    def read_value(self, prompt: str) -> Optional[str]:
        return None
