"""Diagnostic test orchestration: parallel and sequential groups with operator retries."""

from firestarter.suite.models import GroupResult, TestResult
from firestarter.suite.runner import MAX_ATTEMPTS, TestOrchestrator

__all__ = ["GroupResult", "MAX_ATTEMPTS", "TestOrchestrator", "TestResult"]
