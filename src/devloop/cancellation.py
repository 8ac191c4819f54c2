"""Cooperative cancellation with an optional deadline.

A single CancelToken is created by the controller and handed down through the
per-task lifecycle. Long-running steps (agent calls, git and gate
subprocesses) check it between units of work and size their own timeouts from
``remaining()``. run_shell() polls the token while a command runs, so a
cancel request stops the child process within a fraction of a second.
"""

from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from typing import Optional, Union

POLL_INTERVAL = 0.2


class OperationCancelled(Exception):
    """Raised when work is stopped by a cancel request or an expired deadline."""

    def __init__(self, message: str = "Operation cancelled", expired: bool = False):
        super().__init__(message)
        self.expired = expired


class CancelToken:
    """Shared cancellation signal with an optional monotonic deadline."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        _event: Optional[threading.Event] = None,
        _deadline: Optional[float] = None,
    ):
        """Initialize the token.

        Args:
            timeout: Seconds from now until the token expires. None = no deadline.
        """
        self._event = _event or threading.Event()
        deadline = time.monotonic() + timeout if timeout is not None else None
        if _deadline is not None:
            deadline = _deadline if deadline is None else min(deadline, _deadline)
        self._deadline = deadline

    def cancel(self) -> None:
        """Request cancellation. Shared with every child token."""
        self._event.set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def timeout_for(self, limit: Optional[float]) -> Optional[float]:
        """Clamp a per-call timeout to what is left of the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return limit
        if limit is None:
            return remaining
        return min(limit, remaining)

    def child(self, timeout: Optional[float] = None) -> CancelToken:
        """Create a token that shares this cancel signal with a tighter deadline."""
        return CancelToken(timeout=timeout, _event=self._event, _deadline=self._deadline)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled")
        if self.expired:
            raise OperationCancelled("Deadline exceeded", expired=True)


def _kill(process: subprocess.Popen) -> None:
    process.kill()
    try:
        process.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        # a grandchild may still hold the pipes open
        pass


def run_shell(
    command: str,
    cwd: Union[str, Path],
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
    poll_interval: float = POLL_INTERVAL,
) -> subprocess.CompletedProcess:
    """Run a shell command, killing it on timeout or cancellation.

    Args:
        command: Shell command line.
        cwd: Working directory.
        timeout: Seconds the command may run. None means no limit of its own.
        cancel: Token polled while the command runs.
        poll_interval: Seconds between cancellation checks.

    Returns:
        CompletedProcess with text stdout and stderr.

    Raises:
        subprocess.TimeoutExpired: The command ran past ``timeout``.
        OperationCancelled: Cancellation was requested or the token's deadline passed.
    """
    cancel = cancel or CancelToken()
    cancel.raise_if_cancelled()
    process = subprocess.Popen(
        command,
        cwd=cwd,
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    start = time.monotonic()
    while True:
        try:
            stdout, stderr = process.communicate(timeout=poll_interval)
        except subprocess.TimeoutExpired:
            if cancel.cancelled:
                _kill(process)
                cancel.raise_if_cancelled()
            if timeout is not None and time.monotonic() - start >= timeout:
                _kill(process)
                raise subprocess.TimeoutExpired(command, timeout)
            continue
        return subprocess.CompletedProcess(command, process.returncode, stdout, stderr)
