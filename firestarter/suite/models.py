"""Data models for the test orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from firestarter.process_utils import Status


@dataclass
class TestResult:
    """Outcome of one test. Replaced, not merged, on every retry."""
    __test__ = False

    name: str
    status: Status
    duration: float = 0.0
    error: str = ""
    attempts: int = 1
    required: bool = False
    output: str = ""               # never persisted

    @property
    def passed(self) -> bool:
        return self.status is Status.PASSED

    @property
    def failed(self) -> bool:
        return self.status in (Status.FAILED, Status.TIMEOUT)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "duration": round(self.duration, 3),
        }
        if self.error:
            data["error"] = self.error
        data["required"] = self.required
        data["attempts"] = self.attempts
        return data


@dataclass
class GroupResult:
    """Aggregate of one parallel or sequential group."""
    name: str
    parallel: bool
    results: list[TestResult] = field(default_factory=list)

    def names(self, *statuses: Status) -> list[str]:
        return [r.name for r in self.results if r.status in statuses]

    @property
    def status(self) -> str:
        if any(r.failed for r in self.results):
            return "FAILED"
        if any(r.status is Status.SKIPPED for r in self.results):
            return "PARTIAL"
        return "PASSED"


def required_failure(results: list[TestResult]) -> Optional[TestResult]:
    """First required test that ended FAILED or TIMEOUT, if any."""
    for r in results:
        if r.required and r.failed:
            return r
    return None
