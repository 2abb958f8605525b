"""Execution of opaque job commands.

Job scripts are shell-level commands handed to a `CommandExecutor`. The core
only looks at the exit status; output goes to the job's log file and is never
parsed.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TextIO

# How often a running command is checked for cancellation and deadlines
POLL_INTERVAL = 0.05


class CancelToken:
    """
    Cooperative cancellation signal shared by a pipeline run.

    Setting it kills in-flight commands and keeps further stages from starting.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True once cancel() has been called."""
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Block up to `timeout` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass
class CommandResult:
    """
    Result from running one command.

    Attributes:
        returncode: The exit code of the process (-1 if it was killed).
        command: The command that was executed.
        timed_out: True if the command was killed because its deadline passed.
        cancelled: True if the command was killed by a CancelToken.

    """

    returncode: int
    command: str = ""
    timed_out: bool = False
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        """True if the command succeeded (exit code 0)."""
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    @property
    def failed(self) -> bool:
        """True if the command failed for any reason."""
        return not self.ok


class CommandExecutor(Protocol):
    """External collaborator that runs one opaque command."""

    def execute(
        self,
        command: str,
        *,
        cwd: Path,
        env: dict[str, str],
        log: TextIO,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult: ...


def _kill(proc: subprocess.Popen[str]) -> None:
    """Kill a command together with anything it spawned."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
    else:
        proc.kill()


class ShellExecutor:
    """
    Runs each command through the system shell.

    Output (stdout and stderr interleaved) is written straight to `log`.
    The process is polled so that deadlines and cancellation can kill it.
    """

    def __init__(self, shell: str | None = None):
        self.shell = shell

    def execute(
        self,
        command: str,
        *,
        cwd: Path,
        env: dict[str, str],
        log: TextIO,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        start = time.perf_counter()
        deadline = start + timeout if timeout is not None else None

        log.write(f"$ {command}\n")
        log.flush()

        popen_kwargs: dict[str, object] = {}
        if sys.platform != "win32":
            # Own process group so a kill reaches the whole pipeline of the command
            popen_kwargs["start_new_session"] = True

        proc = subprocess.Popen(
            command,
            shell=True,
            executable=self.shell,
            cwd=str(cwd),
            env=env,
            stdout=log,
            stderr=subprocess.STDOUT,
            text=True,
            **popen_kwargs,  # type: ignore[arg-type]
        )

        timed_out = False
        cancelled = False
        while True:
            try:
                proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.cancelled:
                cancelled = True
            elif deadline is not None and time.perf_counter() >= deadline:
                timed_out = True
            else:
                continue

            _kill(proc)
            proc.wait()
            break

        elapsed = time.perf_counter() - start
        if timed_out:
            log.write(f"Command killed after {elapsed:.2f}s (timeout)\n")
        elif cancelled:
            log.write("Command killed (pipeline cancelled)\n")
        log.flush()

        return CommandResult(
            returncode=proc.returncode if not (timed_out or cancelled) else -1,
            command=command,
            timed_out=timed_out,
            cancelled=cancelled,
            elapsed_seconds=elapsed,
        )


def build_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Copy the current environment and overlay `extra`."""
    env = os.environ.copy()
    if extra:
        env.update(extra)
    return env
