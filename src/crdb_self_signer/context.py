"""
Cancellation context for a generation run.

The generator checks the context before every blocking call (secret store
access, key generation, file writes). Cancelling it, or letting its deadline
pass, makes the next check raise RunCancelled.
"""

import threading
import time
from typing import Optional

from .error_handling import RunCancelled


class RunContext:
    """Cancellation token with an optional deadline.

    Safe to cancel from another thread (e.g. a signal handler).
    """

    def __init__(self, timeout: Optional[float] = None):
        """Initialize the context.

        Args:
            timeout: Seconds until the run is considered cancelled
        """
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: str = "run cancelled") -> None:
        """Request cancellation of the run."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def check(self, operation: str) -> None:
        """Raise RunCancelled if the run should stop before an operation.

        Args:
            operation: Description of the blocking call about to happen
        """
        if self.cancelled:
            raise RunCancelled(f"{self._reason} before {operation}")
