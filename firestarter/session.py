"""Session record: state, YAML persistence and upload to the log server."""

from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import yaml

from firestarter.config import LogConfig
from firestarter.console import OutputManager
from firestarter.errors import ExecutionError
from firestarter.flashing import FlashResult
from firestarter.process_utils import CommandRunner, Status, format_duration
from firestarter.suite.models import TestResult

logger = logging.getLogger(__name__)

STATE_PASS = "pass"
STATE_FAILED = "failed"

SSH_OPTIONS = (
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "ConnectTimeout=5",
    "-o", "BatchMode=yes",
)


def compute_state(test_results: list[TestResult], flash_results: list[FlashResult]) -> str:
    """``failed`` if a required test failed or timed out, or any flash operation failed."""
    if any(r.required and r.failed for r in test_results):
        return STATE_FAILED
    if any(r.failed for r in flash_results):
        return STATE_FAILED
    return STATE_PASS


@dataclass(frozen=True)
class SystemRecord:
    product: str = ""
    mb_serial: str = ""
    io_serial: str = ""
    mac: str = ""
    ip: str = ""
    timestamp: float = 0.0
    original_mb_serial: str = ""
    original_macs: tuple[str, ...] = ()
    dmidecode: dict[str, dict[str, str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"product": self.product}
        for key in ("mb_serial", "io_serial", "mac", "ip"):
            if getattr(self, key):
                data[key] = getattr(self, key)
        data["timestamp"] = _iso(self.timestamp)
        if self.original_mb_serial:
            data["original_mb_serial"] = self.original_mb_serial
        if self.original_macs:
            data["original_macs"] = list(self.original_macs)
        data["dmidecode"] = {k: dict(v) for k, v in self.dmidecode.items()}
        return data


@dataclass(frozen=True)
class SessionRecord:
    """Everything persisted about one run. Built once, at the end of the session."""
    session_id: str
    timestamp: float
    state: str
    mode: str
    config: str
    duration: float
    operator: str
    test_results: tuple[TestResult, ...]
    flash_results: tuple[FlashResult, ...]
    system: SystemRecord

    @property
    def filename(self) -> str:
        stamp = datetime.fromtimestamp(self.timestamp).strftime("%Y%m%d_%H%M%S")
        return f"{self.system.product}_{self.system.mb_serial}_{stamp}_{self.state}.yaml"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "session": self.session_id,
            "timestamp": _iso(self.timestamp),
            "state": self.state,
            "pipeline": {
                "mode": self.mode,
                "config": self.config,
                "duration": round(self.duration, 3),
                "operator": self.operator,
            },
            "test_results": [r.to_dict() for r in self.test_results],
        }
        if self.flash_results:
            data["flash_results"] = [r.to_dict() for r in self.flash_results]
        data["system"] = self.system.to_dict()
        return data

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts).astimezone().isoformat(timespec="seconds")


def save_local(record: SessionRecord, config: LogConfig) -> Optional[str]:
    """Write the record under ``config.log_dir``. Returns the path, or ``None`` if disabled."""
    if not config.save_local:
        return None
    log_dir = config.log_dir or "logs"
    os.makedirs(log_dir, exist_ok=True)
    path = os.path.join(log_dir, record.filename)
    with open(path, "w") as f:
        f.write(record.to_yaml())
    logger.info("Log saved: %s", path)
    return path


class SessionUploader:
    """Copies session records to ``server:server_dir/product/op_name/`` over ssh/scp."""

    def __init__(self, runner: CommandRunner, config: LogConfig):
        self.runner = runner
        self.config = config
        self.enabled = bool(config.send_logs and config.server)

    def probe(self) -> bool:
        """Check the server answers. A failure disables uploading for this session."""
        if not self.enabled:
            return False
        logger.info("Testing connection to server: %s", self.config.server)
        res = self.runner.run(["ssh", *SSH_OPTIONS, self.config.server, "echo 'Connection test successful'"],
                              timeout=30)
        if not res.ok:
            logger.error("Server connection test failed: %s", res.output.strip() or res.error_summary)
            logger.error("Log sending will be disabled for this session")
            self.enabled = False
            return False
        logger.info("Server connection test passed")
        return True

    def remote_dir(self, product: str) -> str:
        parts = [p for p in (self.config.server_dir, product, self.config.op_name) if p]
        return "/".join(parts) if parts else "."

    def upload(self, record: SessionRecord) -> str:
        """Upload *record*. Returns the remote ``host:path``.

        Raises:
            ExecutionError: ssh or scp failed.
        """
        remote_dir = self.remote_dir(record.system.product)
        target = f"{self.config.server}:{remote_dir}/{record.filename}"

        if remote_dir != ".":
            res = self.runner.run(["ssh", *SSH_OPTIONS, self.config.server, f'mkdir -p "{remote_dir}"'], timeout=30)
            if not res.ok:
                raise ExecutionError(f"failed to create remote directory: {res.error_summary}")

        fd, tmp = tempfile.mkstemp(prefix="firestarter_", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(record.to_yaml())
            res = self.runner.run(["scp", *SSH_OPTIONS, tmp, target], timeout=120)
        finally:
            os.unlink(tmp)
        if not res.ok:
            raise ExecutionError(f"failed to upload file: {res.output.strip() or res.error_summary}")
        logger.info("Log successfully sent to %s", target)
        return target


def print_execution_summary(
    output: OutputManager,
    test_results: list[TestResult],
    flash_results: list[FlashResult],
    duration: float,
) -> str:
    """Print the session summary and return SUCCESS, FAILED or PARTIAL."""
    counts = {s: sum(1 for r in test_results if r.status is s) for s in Status}
    flash_ok = sum(1 for r in flash_results if r.status is Status.PASSED)
    flash_failed = sum(1 for r in flash_results if r.failed)
    flash_skipped = len(flash_results) - flash_ok - flash_failed

    output.subheader("Session Summary")
    output.separator(thick=True)
    output.line(f"  {'Total Tests':<18}: {len(test_results)}")
    output.line(f"  {'Passed':<18}: {counts[Status.PASSED]}")
    output.line(f"  {'Failed':<18}: {counts[Status.FAILED]}")
    output.line(f"  {'Skipped':<18}: {counts[Status.SKIPPED]}")
    output.line(f"  {'Timeout':<18}: {counts[Status.TIMEOUT]}")
    if test_results:
        output.line(f"  {'Success Rate':<18}: {counts[Status.PASSED] * 100 // len(test_results)}%")
    if flash_results:
        output.line(f"\n  {'Flash Operations':<18}: {len(flash_results)} Total")
        output.line(f"  {'Flash Success':<18}: {flash_ok}")
        output.line(f"  {'Flash Failed':<18}: {flash_failed}")
        output.line(f"  {'Flash Skipped':<18}: {flash_skipped}")
    output.line(f"\n  {'Total Duration':<18}: {format_duration(round(duration))}")

    if counts[Status.FAILED] or flash_failed:
        status = "FAILED"
    elif counts[Status.SKIPPED] or counts[Status.TIMEOUT] or flash_skipped:
        status = "PARTIAL"
    else:
        status = "SUCCESS"
    output.line(f"  {'Session Status':<18}: {status}")

    failed = [r for r in test_results if r.failed]
    if failed:
        output.line("\nCRITICAL ISSUES REQUIRING ATTENTION")
        output.separator()
        for r in failed:
            output.line(f"  {r.name:<20} {r.error or 'Test execution failed'}")
    return status


def session_id(now: Optional[float] = None) -> str:
    return str(int(now if now is not None else time.time()))
