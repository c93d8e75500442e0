"""Host-wide run lock.

Kernel modules, NIC firmware and EFI variables are global to the machine, so
only one provisioning session may run at a time. The lock is an exclusive
``portalocker`` lock on a PID file; a JSON sidecar describes the holder.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import portalocker
import psutil

from firestarter.errors import PreconditionError

logger = logging.getLogger(__name__)


def default_run_dir() -> str:
    return os.environ.get("FIRESTARTER_RUN_DIR", "/tmp")


@dataclass
class LockHolder:
    pid: int
    is_alive: bool
    started: str = "unknown"
    config: str = "unknown"


class RunLock:
    """Exclusive, non-blocking lock for one provisioning session.

    Usage::

        with RunLock(config=path):
            ...
    """

    def __init__(self, run_dir: Optional[str] = None, config: str = ""):
        run_dir = run_dir or default_run_dir()
        self.lock_file = os.path.join(run_dir, "firestarter.lock")
        self.info_file = os.path.join(run_dir, "firestarter.info")
        self.config = config
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def holder(self) -> Optional[LockHolder]:
        """Process recorded in the info sidecar, if any."""
        try:
            with open(self.info_file) as f:
                info = json.load(f)
            pid = int(info["pid"])
        except (OSError, ValueError, KeyError, TypeError):
            return None
        return LockHolder(
            pid=pid,
            is_alive=psutil.pid_exists(pid),
            started=str(info.get("started", "unknown")),
            config=str(info.get("config", "unknown")),
        )

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            PreconditionError: Another session holds it.
        """
        if self.held:
            return
        os.makedirs(os.path.dirname(self.lock_file), exist_ok=True)
        fd = os.open(self.lock_file, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            portalocker.lock(fd, portalocker.LOCK_EX | portalocker.LOCK_NB)
        except (portalocker.exceptions.LockException, OSError) as exc:
            os.close(fd)
            holder = self.holder()
            who = f" (PID {holder.pid}, started {holder.started})" if holder and holder.is_alive else ""
            raise PreconditionError(f"another firestarter session is running{who}") from exc

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd

        try:
            with open(self.info_file, "w") as f:
                json.dump({
                    "pid": os.getpid(),
                    "started": time.strftime("%Y-%m-%dT%H:%M:%S"),
                    "config": self.config,
                }, f)
        except OSError as exc:
            logger.warning("Could not write lock info file: %s", exc)
        logger.debug("Acquired run lock %s", self.lock_file)

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.unlink(self.info_file)
        except OSError:
            pass
        try:
            portalocker.unlock(fd)
        except (portalocker.exceptions.LockException, OSError) as exc:
            logger.debug("unlock failed: %s", exc)
        os.close(fd)
        try:
            os.unlink(self.lock_file)
        except OSError:
            pass
        logger.debug("Released run lock %s", self.lock_file)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
