"""Test orchestrator.

Runs configured diagnostic commands in parallel or sequential groups. Every
failure is handed to the operator (via a :class:`DecisionProvider`) who may
retry, skip, or keep the result. Retries are capped at ``MAX_ATTEMPTS``; a
retry requested after that runs the test one final time and the result is
accepted as-is.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from firestarter.config import DEFAULT_TEST_TIMEOUT, TestsConfig, TestSpec
from firestarter.console import OutputManager
from firestarter.decisions import TEST_OPTIONS, Decision, DecisionContext, DecisionProvider, Phase
from firestarter.process_utils import CommandRunner, Status, format_duration
from firestarter.suite.models import GroupResult, TestResult

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class TestOrchestrator:
    """Executes test groups and resolves failures with the operator.

    Args:
        runner: Command runner used for every test process.
        decisions: Source of Retry/Skip/Continue answers.
        output: Console writer shared with parallel workers.
        global_timeout: ``tests.timeout`` in seconds, used when a test has none.
    """

    __test__ = False

    def __init__(
        self,
        runner: CommandRunner,
        decisions: DecisionProvider,
        output: Optional[OutputManager] = None,
        global_timeout: Optional[float] = None,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.runner = runner
        self.decisions = decisions
        self.output = output or OutputManager()
        self.global_timeout = global_timeout
        self.max_attempts = max_attempts

    def timeout_for(self, spec: TestSpec) -> float:
        """Per-test timeout, then global, then the 30 s default."""
        if spec.timeout is not None:
            return spec.timeout
        if self.global_timeout is not None:
            return self.global_timeout
        return DEFAULT_TEST_TIMEOUT

    # ------------------------------------------------------------------
    # Single execution
    # ------------------------------------------------------------------

    def execute(self, spec: TestSpec, attempt: int = 1) -> TestResult:
        """Run *spec* once, print its status line and (unless collapsed) its output."""
        timeout = self.timeout_for(spec)
        self.output.result(spec.name, "RUNNING", 0.0)
        cmd = self.runner.run(spec.argv, timeout=timeout)

        if cmd.status is Status.TIMEOUT:
            error = f"Test timed out after {format_duration(timeout)}"
        else:
            error = cmd.error_summary
        result = TestResult(
            name=spec.name,
            status=cmd.status,
            duration=cmd.duration,
            error=error if cmd.status is not Status.PASSED else "",
            attempts=attempt,
            required=spec.required,
            output=cmd.output,
        )
        logger.info("%s: %s (attempt %d, %.1fs)", spec.name, result.status.value, attempt, result.duration)

        show_output = result.output and not (result.passed and spec.collapse)
        self.output.report(
            spec.name, result.status.value, result.duration, result.error,
            title=f"{spec.name} Output", content=result.output if show_output else "",
        )
        return result

    # ------------------------------------------------------------------
    # Failure resolution
    # ------------------------------------------------------------------

    def resolve_failure(self, spec: TestSpec, result: TestResult) -> TestResult:
        """Ask the operator what to do until the test passes or they stop retrying.

        Returns the final result. ``attempts`` never exceeds ``max_attempts``:
        a retry requested at the ceiling runs once more and is accepted
        unconditionally.
        """
        current = result
        while not current.passed:
            decision = self.decisions.decide(DecisionContext(
                phase=Phase.TEST,
                subject=spec.name,
                message=current.error,
                options=TEST_OPTIONS,
                attempt=current.attempts,
                max_attempts=self.max_attempts,
            ))

            if decision is Decision.SKIP:
                current.status = Status.SKIPPED
                current.error = "Skipped by operator"
                self.output.result(spec.name, current.status.value, current.duration, current.error)
                return current
            if decision is not Decision.RETRY:
                return current

            if current.output:
                self.output.section(f"{spec.name} Previous Output", current.output)

            if current.attempts >= self.max_attempts:
                self.output.warning(
                    f"Maximum retry attempts ({self.max_attempts}) reached for test '{spec.name}', running once more"
                )
                return self.execute(spec, attempt=self.max_attempts)

            self.output.info(f"Retrying test '{spec.name}' (attempt {current.attempts + 1})...")
            current = self.execute(spec, attempt=current.attempts + 1)
        return current

    def run_test(self, spec: TestSpec) -> TestResult:
        """Run one test with inline retries (sequential mode)."""
        return self.resolve_failure(spec, self.execute(spec))

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def run_parallel(self, specs: list[TestSpec]) -> list[TestResult]:
        """Run every test concurrently, then resolve failures one by one in group order."""
        if not specs:
            return []
        with ThreadPoolExecutor(max_workers=len(specs)) as pool:
            futures = [pool.submit(self.execute, spec) for spec in specs]
            results = [f.result() for f in futures]

        failed = [i for i, r in enumerate(results) if not r.passed]
        if failed:
            self.output.warning(f"Parallel complete: {len(failed)} failed test(s)")
        else:
            self.output.success("All parallel tests passed")

        for n, i in enumerate(failed, start=1):
            spec, result = specs[i], results[i]
            self.output.info(f"Processing failed test {n}/{len(failed)}: {spec.name}")
            self.output.line(f"  Status: {result.status.value}")
            if result.error:
                self.output.line(f"  Error : {result.error}")
            if result.output:
                self.output.section(f"{spec.name} Output", result.output)
            results[i] = self.resolve_failure(spec, result)
        return results

    def run_sequential(self, specs: list[TestSpec]) -> list[TestResult]:
        return [self.run_test(spec) for spec in specs]

    def run_group(self, specs: list[TestSpec], parallel: bool, name: str) -> GroupResult:
        mode = "Parallel" if parallel else "Sequential"
        timeout = format_duration(self.global_timeout) if self.global_timeout is not None else "30s (default)"
        self.output.subheader(name, f"Mode: {mode} | Tests: {len(specs)} | Timeout: {timeout}")
        self.output.separator()

        results = self.run_parallel(specs) if parallel else self.run_sequential(specs)
        group = GroupResult(name=name, parallel=parallel, results=results)
        self._print_group(group)
        return group

    def _print_group(self, group: GroupResult) -> None:
        self.output.subheader("Group Results")
        self.output.separator()
        passed = group.names(Status.PASSED)
        failed = group.names(Status.FAILED, Status.TIMEOUT)
        skipped = group.names(Status.SKIPPED)
        status = group.status
        if status == "FAILED":
            status += f" ({len(failed)} of {len(group.results)} tests failed)"
        elif status == "PARTIAL":
            status += f" ({len(passed)} passed, {len(skipped)} skipped)"
        self.output.line(f"  {group.name:<20}: {status}")
        if passed:
            self.output.line(f"  Passed: {', '.join(passed)}")
        if failed:
            self.output.line(f"  Failed: {', '.join(failed)}")
        if skipped:
            self.output.line(f"  Skipped: {', '.join(skipped)}")

    def run_all(self, tests: TestsConfig) -> list[TestResult]:
        """Run all parallel groups, then all sequential groups, and print a summary."""
        start = time.monotonic()
        results: list[TestResult] = []
        for i, group in enumerate(tests.parallel_groups, start=1):
            results.extend(self.run_group(group, True, f"Parallel Group {i}").results)
        for i, group in enumerate(tests.sequential_groups, start=1):
            results.extend(self.run_group(group, False, f"Sequential Group {i}").results)
        self.print_summary(results, time.monotonic() - start)
        return results

    def print_summary(self, results: list[TestResult], elapsed: float) -> None:
        counts = {s: sum(1 for r in results if r.status is s) for s in Status}
        self.output.subheader("Tests Summary")
        self.output.separator(thick=True)
        self.output.line(f"  {'Total Tests':<15}: {len(results):4d}")
        self.output.line(f"  {'Passed':<15}: {counts[Status.PASSED]:4d}")
        self.output.line(f"  {'Failed':<15}: {counts[Status.FAILED]:4d}")
        self.output.line(f"  {'Skipped':<15}: {counts[Status.SKIPPED]:4d}")
        self.output.line(f"  {'Timed Out':<15}: {counts[Status.TIMEOUT]:4d}")
        if results:
            self.output.line(f"  {'Success Rate':<15}: {counts[Status.PASSED] * 100 // len(results):3d}%")
        self.output.line(f"  {'Elapsed Time':<15}: {format_duration(elapsed)}")
        self.output.separator(thick=True)

        not_passed = [r.name for r in results if r.failed]
        if not_passed:
            self.output.line(f"\nNOT PASSED TESTS ({len(not_passed)})")
            for name in not_passed:
                self.output.line(f"  - {name}")
        else:
            self.output.line("\nALL TESTS PASSED")
