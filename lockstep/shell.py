"""Shell utilities and console output.

Provides a cancellable wrapper around subprocess calls for running external
tools (git, gh, go, pip), a cancellation token shared by every blocking
call in a release run, and output formatting helpers.
"""

from __future__ import annotations

import subprocess
import sys
import threading
import time
from collections.abc import Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel

from .errors import Cancelled, CommandError

# Granularity at which in-flight commands and sleeps notice cancellation.
_POLL_SECONDS = 0.2

_print_lock = threading.Lock()


class CommandResult(BaseModel):
    """Outcome of one external command.

    Attributes:
        args: The full argument vector that was executed.
        returncode: Process exit status.
        output: Combined stdout and stderr, stripped.
    """

    args: list[str]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CancelToken:
    """Top-level cancellation handle threaded through every external call.

    A token is cancelled explicitly via cancel() or implicitly once its
    optional deadline passes. Cancelling only stops further work; it never
    undoes side effects that already happened.
    """

    def __init__(self, deadline_seconds: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = (
            time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        )

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
        return self._event.is_set()

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise Cancelled("operation cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for up to `seconds`, waking early (and raising) on cancel."""
        end = time.monotonic() + seconds
        while True:
            self.raise_if_cancelled()
            left = end - time.monotonic()
            if left <= 0:
                return
            self._event.wait(min(left, _POLL_SECONDS))


def run_command(
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
    timeout: float | None = None,
    token: CancelToken | None = None,
) -> CommandResult:
    """Run an external command and capture its combined output.

    Non-zero exit codes are reported through CommandResult.returncode rather
    than raised, so callers decide what counts as failure.

    Args:
        args: Command and arguments (e.g., ["git", "status"]).
        cwd: Working directory for the command.
        env: Full environment for the child, or None to inherit.
        input_text: Text written to the child's stdin.
        timeout: Seconds after which the child is killed and CommandError raised.
        token: Cancellation token; the child is killed promptly when it fires.

    Raises:
        Cancelled: If the token fires while the command is running.
        CommandError: If the executable is missing or the timeout elapses.
    """
    argv = [str(a) for a in args]
    if token is not None:
        token.raise_if_cancelled()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError as exc:
        raise CommandError(argv, -1, str(exc)) from exc

    started = time.monotonic()
    pending_input = input_text
    while True:
        try:
            out, _ = proc.communicate(input=pending_input, timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            pending_input = None
            if token is not None and token.cancelled:
                proc.kill()
                proc.communicate()
                raise Cancelled(f"cancelled while running: {' '.join(argv)}") from None
            if timeout is not None and time.monotonic() - started > timeout:
                proc.kill()
                out, _ = proc.communicate()
                raise CommandError(
                    argv, -1, f"timed out after {timeout:.0f}s\n{out or ''}".strip()
                ) from None

    return CommandResult(args=argv, returncode=proc.returncode, output=(out or "").strip())


def echo(msg: str = "") -> None:
    """Print one line of progress output.

    Safe to call from concurrent release tasks: lines never interleave.
    """
    with _print_lock:
        print(msg, flush=True)


def warn(msg: str) -> None:
    """Print a non-fatal warning to stderr."""
    with _print_lock:
        print(f"Warning: {msg}", file=sys.stderr, flush=True)


def step(msg: str) -> None:
    """Print a visually distinct step header.

    Used to separate major phases of the release pipeline in terminal output.
    """
    echo(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")


def fatal(msg: str) -> None:
    """Print an error message and exit with code 1.

    Use for unrecoverable errors that should halt the CLI. Library code
    raises LockstepError subclasses instead.
    """
    with _print_lock:
        print(f"ERROR: {msg}", file=sys.stderr, flush=True)
    sys.exit(1)
