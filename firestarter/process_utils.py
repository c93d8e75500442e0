"""External process execution and bounded polling.

Every tool invocation in firestarter (diagnostic tests, ip, ethtool, rmmod,
eeupdate, ipmitool, efibootmgr, ...) goes through :class:`CommandRunner`, so a
single fake can stand in for the whole host in tests.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

# Conventional shell exit status for "command not found".
EXIT_NOT_FOUND = 127


class Status(str, Enum):
    """Outcome of a command, test, or flash operation."""
    PASSED = "PASSED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    SKIPPED = "SKIPPED"


@dataclass
class CommandResult:
    """Captured result of one external command."""
    argv: list[str]
    status: Status
    returncode: Optional[int]
    duration: float
    stdout: str = ""
    stderr: str = ""
    error_summary: str = ""

    @property
    def output(self) -> str:
        """stdout followed by stderr."""
        return self.stdout + self.stderr

    @property
    def ok(self) -> bool:
        return self.status is Status.PASSED


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def summarize_error(stderr: str, returncode: Optional[int]) -> str:
    """Pick a one-line error description for a failed command.

    The first stderr line starting with ``ERROR:`` wins (prefix stripped);
    otherwise ``Exit code: N`` is reported.
    """
    for line in stderr.splitlines():
        line = line.strip()
        if line.startswith("ERROR:"):
            return line[len("ERROR:"):].strip()
    return f"Exit code: {returncode}"


def format_duration(seconds: float) -> str:
    """Render seconds compactly, e.g. ``1m30s``, ``10s``, ``250ms``."""
    if seconds < 1:
        return f"{int(round(seconds * 1000))}ms"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class CommandRunner:
    """Run external commands with a deadline and captured output.

    Args:
        default_timeout: Deadline in seconds when ``run()`` is called without one.
    """

    def __init__(self, default_timeout: float = 30.0):
        self.default_timeout = default_timeout

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """Execute *argv* and classify the result.

        Never raises for tool failures: a missing binary, a non-zero exit and
        an expired deadline are all reported through ``CommandResult.status``.
        Only the child started here is killed when the deadline fires.
        """
        argv = [str(a) for a in argv]
        deadline = self.default_timeout if timeout is None else timeout
        logger.debug("run: %s (timeout %.1fs)", " ".join(argv), deadline)

        start = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=deadline,
                env=dict(env) if env is not None else None,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired as exc:
            duration = time.monotonic() - start
            logger.warning("%s timed out after %s", argv[0], format_duration(deadline))
            return CommandResult(
                argv=argv,
                status=Status.TIMEOUT,
                returncode=None,
                duration=duration,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                error_summary=f"timed out after {format_duration(deadline)}",
            )
        except FileNotFoundError:
            duration = time.monotonic() - start
            return CommandResult(
                argv=argv,
                status=Status.FAILED,
                returncode=EXIT_NOT_FOUND,
                duration=duration,
                error_summary=f"Tool not found: {argv[0]}",
            )
        except OSError as exc:
            duration = time.monotonic() - start
            return CommandResult(
                argv=argv,
                status=Status.FAILED,
                returncode=None,
                duration=duration,
                error_summary=str(exc),
            )

        duration = time.monotonic() - start
        if proc.returncode != 0:
            return CommandResult(
                argv=argv,
                status=Status.FAILED,
                returncode=proc.returncode,
                duration=duration,
                stdout=proc.stdout,
                stderr=proc.stderr,
                error_summary=summarize_error(proc.stderr, proc.returncode),
            )
        return CommandResult(
            argv=argv,
            status=Status.PASSED,
            returncode=0,
            duration=duration,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )


def poll_until(
    predicate: Callable[[], bool],
    timeout_s: float,
    interval_s: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Call *predicate* until it returns true or *timeout_s* elapses.

    The predicate is always evaluated at least once, and once more after the
    deadline so a condition that became true during the last sleep is seen.

    Returns:
        ``True`` if the predicate succeeded, ``False`` on timeout.
    """
    deadline = clock() + timeout_s
    while True:
        if predicate():
            return True
        if clock() >= deadline:
            return predicate()
        sleep(interval_s)
