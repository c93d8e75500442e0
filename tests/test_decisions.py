"""Tests for firestarter/decisions.py: console prompts and unattended defaults."""

from __future__ import annotations

import io

from firestarter.decisions import (
    FLASH_FINAL_OPTIONS,
    FLASH_OPTIONS,
    ConsoleDecisionProvider,
    Decision,
    DecisionContext,
    NonInteractiveDecisionProvider,
    Phase,
)


def _console(*answers):
    replies = iter(answers)

    def read(prompt):
        try:
            return next(replies)
        except StopIteration:
            raise EOFError from None

    stream = io.StringIO()
    return ConsoleDecisionProvider(input_fn=read, stream=stream), stream


class TestConsoleDecisionProvider:
    def test_letters(self):
        provider, _ = _console("s")
        assert provider.decide(DecisionContext(Phase.TEST, "CPU Test")) is Decision.SKIP

    def test_blank_is_default(self):
        provider, _ = _console("")
        assert provider.decide(DecisionContext(Phase.FLASH, "MAC flashing", options=FLASH_OPTIONS)) is Decision.RETRY

    def test_invalid_answers_reprompt(self):
        provider, stream = _console("x", "retry")
        ctx = DecisionContext(Phase.FLASH, "FRU flashing", "boom", FLASH_FINAL_OPTIONS, 3, 3)
        # retry is not offered on the last attempt
        assert provider.decide(ctx) is Decision.ABORT
        out = stream.getvalue()
        assert "FLASH OPERATION FAILED" in out
        assert "Invalid choice 'x'" in out
        assert "attempt 3/3" in out
        assert "[R] Retry" not in out

    def test_eof_returns_default(self):
        provider, _ = _console()
        assert provider.decide(DecisionContext(Phase.TEST, "CPU Test")) is Decision.RETRY

    def test_confirm(self):
        provider, stream = _console("maybe", "N")
        assert provider.confirm("Reboot now?") is False
        assert "Please answer" in stream.getvalue()
        provider, _ = _console("")
        assert provider.confirm("Reboot now?", default=False) is False

    def test_read_value_strips(self):
        provider, _ = _console("  INF01A912345678 \n")
        assert provider.read_value("Enter value: ") == "INF01A912345678"
        assert provider.read_value("Enter value: ") is None


class TestNonInteractive:
    def test_tests_continue(self):
        assert NonInteractiveDecisionProvider().decide(DecisionContext(Phase.TEST, "x")) is Decision.CONTINUE

    def test_flash_aborts(self):
        provider = NonInteractiveDecisionProvider()
        assert provider.decide(DecisionContext(Phase.FLASH, "x", options=FLASH_OPTIONS)) is Decision.ABORT
        assert provider.decide(DecisionContext(Phase.FLASH, "x", options=FLASH_FINAL_OPTIONS)) is Decision.ABORT

    def test_declines_and_reads_nothing(self):
        provider = NonInteractiveDecisionProvider()
        assert provider.confirm("Reboot now?", default=True) is False
        assert provider.read_value("Enter value: ") is None
