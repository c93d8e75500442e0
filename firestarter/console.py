"""Operator-facing console output.

All printing that can happen from parallel test workers goes through one
:class:`OutputManager`. Each call is written under its lock; use
:meth:`OutputManager.report` to keep a result line and its output together.
"""

from __future__ import annotations

import sys
import threading
import time
from typing import Optional, TextIO

from firestarter import __version__
from firestarter.process_utils import format_duration

WIDTH = 80


class OutputManager:
    """Serialised writer for sections, result lines and status messages."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def _write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def separator(self, thick: bool = False) -> None:
        with self._lock:
            self._write(("=" if thick else "-") * WIDTH + "\n")

    def header(self, title: str) -> None:
        """Program banner followed by an upper-cased section title."""
        with self._lock:
            self._write(f"\nFIRESTARTER Hardware Validation System v{__version__}\n")
            self._write("=" * WIDTH + "\n")
            self._write(f"\n{title.upper()}\n")

    def subheader(self, title: str, subtitle: str = "") -> None:
        with self._lock:
            self._write(f"\n{title.upper()}\n")
            if subtitle:
                self._write(f"{subtitle}\n")

    def _section(self, title: str, content: str) -> None:
        self._write(f"\n{title.upper()}\n")
        self._write("-" * WIDTH + "\n")
        self._write(content)
        if not content.endswith("\n"):
            self._write("\n")
        self._write("\n")

    @staticmethod
    def _result_line(name: str, status: str, duration: float, error: str) -> str:
        line = f"[{time.strftime('%H:%M:%S')}] {name} {status} | Duration: {format_duration(duration)}"
        if error and status != "RUNNING":
            line += f" | ERROR: {error}"
        return line + "\n"

    def section(self, title: str, content: str) -> None:
        """Print a titled block of captured tool output, verbatim."""
        with self._lock:
            self._section(title, content)

    def result(self, name: str, status: str, duration: float, error: str = "") -> None:
        """One status line: ``[hh:mm:ss] name STATUS | Duration: 1s | ERROR: ...``."""
        with self._lock:
            self._write(self._result_line(name, status, duration, error))

    def report(self, name: str, status: str, duration: float, error: str = "",
               title: str = "", content: str = "") -> None:
        """A result line followed by its output section, written as one block."""
        with self._lock:
            self._write(self._result_line(name, status, duration, error))
            if content:
                self._section(title or name, content)

    def message(self, level: str, text: str) -> None:
        with self._lock:
            self._write(f"[{level}] {text}\n")

    def info(self, text: str) -> None:
        self.message("INFO", text)

    def success(self, text: str) -> None:
        self.message("OK", text)

    def warning(self, text: str) -> None:
        self.message("WARN", text)

    def error(self, text: str) -> None:
        self.message("ERROR", text)

    def line(self, text: str = "") -> None:
        with self._lock:
            self._write(text + "\n")
