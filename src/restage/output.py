"""Console output for restage.

A single OutputManager formats everything the user sees: the pipeline entry
line, one block per stage, one status line per job, warnings for tolerated
failures, and the final summary.

Features:
- Tree-style output with rich colors (local mode)
- Collapsible ``section_start``/``section_end`` markers under GitLab CI
- ``NO_COLOR`` honoured through rich
"""

from __future__ import annotations

import os
import re
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rich.console import Console


class Verbosity(Enum):
    """Verbosity levels for output."""

    QUIET = 0  # Errors and the final summary only
    NORMAL = 1  # Stage headers and job status
    VERBOSE = 2  # Sync steps and other debug detail


SYMBOLS = {
    "entry": "\u25bc",  # Pipeline entry point (▼)
    "branch": "\u251c\u2500\u25b6",  # Stage (├─▶)
    "last": "\u2514\u2500\u25b6",  # Summary (└─▶)
    "pipe": "\u2502",  # Continuation line (│)
    "success": "\u2713",  # Success (✓)
    "failure": "\u2717",  # Failure (✗)
    "warning": "\u26a0",  # Tolerated failure (⚠)
    "skipped": "\u2218",  # Not run (∘)
}

ENV_GITLAB_CI = "GITLAB_CI"

_SECTION_NAME = re.compile(r"[^a-zA-Z0-9_.-]+")


def _section_name(name: str) -> str:
    return _SECTION_NAME.sub("_", name)


@dataclass
class OutputManager:
    """
    Centralized output formatting for restage.

    Safe to call from the stage runner's worker threads: lines are written
    whole under a lock so concurrent jobs never interleave mid-line.
    """

    console: Console = field(default_factory=Console)
    verbosity: Verbosity = Verbosity.NORMAL
    _in_gitlab: bool = field(default_factory=lambda: os.environ.get(ENV_GITLAB_CI) == "true")
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def in_gitlab(self) -> bool:
        """Whether running under GitLab CI."""
        return self._in_gitlab

    @property
    def colors_enabled(self) -> bool:
        return self.console.color_system is not None

    def _print(self, message: str, style: str | None = None, end: str = "\n") -> None:
        # Markup and highlighting off: job names and paths are printed verbatim
        with self._lock:
            self.console.print(message, style=style, end=end, markup=False, highlight=False, soft_wrap=True)

    def _at(self, level: Verbosity) -> bool:
        return self.verbosity.value >= level.value

    # -------------------------------------------------------------------------
    # Free-form messages
    # -------------------------------------------------------------------------

    def debug(self, message: str) -> None:
        """Print a detail line (verbose mode only)."""
        if self._at(Verbosity.VERBOSE):
            self._print(f"{SYMBOLS['pipe']}  {message}", style="dim")

    def info(self, message: str) -> None:
        if self._at(Verbosity.NORMAL):
            self._print(f"{SYMBOLS['pipe']}  {message}")

    def warning(self, message: str) -> None:
        if self._at(Verbosity.NORMAL):
            self._print(f"{SYMBOLS['pipe']}  {SYMBOLS['warning']} {message}", style="yellow")

    def error(self, message: str) -> None:
        """Print an error message (always shown)."""
        self._print(f"Error: {message}", style="bold red")

    # -------------------------------------------------------------------------
    # Pipeline structure
    # -------------------------------------------------------------------------

    def pipeline_header(self, description: str) -> None:
        if not self._at(Verbosity.NORMAL):
            return
        self._print(f"\n{SYMBOLS['entry']} {description}", style="bold blue")
        self._print(SYMBOLS["pipe"])

    @contextmanager
    def section(self, name: str, header: str, *, collapsed: bool = False) -> Generator[None, None, None]:
        """
        Group output under a header.

        Under GitLab CI this emits a collapsible section; locally it prints
        a tree header line.
        """
        if self._in_gitlab:
            key = _section_name(name)
            options = "[collapsed=true]" if collapsed else ""
            print(f"\x1b[0Ksection_start:{int(time.time())}:{key}{options}\r\x1b[0K{header}", flush=True)
            try:
                yield
            finally:
                print(f"\x1b[0Ksection_end:{int(time.time())}:{key}\r\x1b[0K", flush=True)
            return

        if self._at(Verbosity.NORMAL):
            self._print(f"{SYMBOLS['branch']} {header}", style="bold cyan")
        yield

    def job_status(self, name: str, status: str, elapsed: float, *, tolerated: bool = False, detail: str = "") -> None:
        """Print the final status of one job."""
        suffix = f" ({detail})" if detail else ""
        if status == "success":
            if self._at(Verbosity.NORMAL):
                self._print(f"{SYMBOLS['pipe']}    {SYMBOLS['success']} {name} {elapsed:.2f}s", style="green")
        elif tolerated:
            if self._at(Verbosity.NORMAL):
                self._print(
                    f"{SYMBOLS['pipe']}    {SYMBOLS['warning']} {name} {status} in {elapsed:.2f}s, allowed to fail{suffix}",
                    style="yellow",
                )
        elif status == "skipped":
            if self._at(Verbosity.NORMAL):
                self._print(f"{SYMBOLS['pipe']}    {SYMBOLS['skipped']} {name}{suffix}", style="dim")
        else:
            self._print(f"{SYMBOLS['pipe']}    {SYMBOLS['failure']} {name} {status} in {elapsed:.2f}s{suffix}", style="red")

    def stage_status(self, stage: str, state: str) -> None:
        if not self._at(Verbosity.NORMAL):
            return
        style = {"succeeded": "green", "failed": "bold red"}.get(state, "yellow")
        self._print(f"{SYMBOLS['pipe']}  stage {stage} {state}", style=style)
        self._print(SYMBOLS["pipe"])

    def pipeline_status(self, state: str, elapsed: float, job_count: int) -> None:
        """Print the pipeline summary (always shown)."""
        if state == "succeeded":
            self._print(
                f"{SYMBOLS['last']} {SYMBOLS['success']} pipeline succeeded in {elapsed:.2f}s ({job_count} jobs)",
                style="bold green",
            )
        elif state == "partially_failed":
            self._print(
                f"{SYMBOLS['last']} {SYMBOLS['warning']} pipeline passed with warnings in {elapsed:.2f}s ({job_count} jobs)",
                style="bold yellow",
            )
        else:
            self._print(f"{SYMBOLS['last']} {SYMBOLS['failure']} pipeline {state} in {elapsed:.2f}s", style="bold red")


# Global output manager instance
_output_manager: OutputManager | None = None


def get_output_manager() -> OutputManager:
    """Get the global output manager instance."""
    global _output_manager
    if _output_manager is None:
        _output_manager = OutputManager()
    return _output_manager


def reset_output_manager() -> None:
    """Reset the global output manager (for testing)."""
    global _output_manager
    _output_manager = None


def configure_output(
    verbosity: Verbosity = Verbosity.NORMAL,
    force_color: bool | None = None,
) -> OutputManager:
    """
    Configure the global output manager.

    Args:
        verbosity: Output verbosity level
        force_color: Force color output on/off (None for auto-detect)

    Returns:
        The configured OutputManager instance.

    """
    global _output_manager

    console_kwargs: dict[str, Any] = {}
    if force_color is not None:
        console_kwargs["force_terminal"] = force_color

    _output_manager = OutputManager(
        console=Console(**console_kwargs),
        verbosity=verbosity,
    )
    return _output_manager
