"""
Per-run context handed to every bootstrap step.

Carries the logger handle, the external cancellation signal and the aggregate
deadline. Steps check it at their start and while waiting between polls.
"""
import logging
import threading
import time
from typing import Callable, Optional

from fluxstrap.errors import CancelledError


class RunContext:
    """Logger, cancellation signal and deadline for one bootstrap run."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize run context.

        Args:
            logger: Logger for this run (default: fluxstrap logger)
            timeout: Aggregate run timeout in seconds (None = unbounded)
            clock: Monotonic clock, injectable for tests
        """
        self.logger = logger or logging.getLogger("fluxstrap")
        self.clock = clock
        self.deadline = clock() + timeout if timeout is not None else None
        self._cancelled = threading.Event()
        self.cancel_reason: Optional[str] = None

    def cancel(self, reason: str = "aborted"):
        """Request cancellation. In-flight remote calls are allowed to finish."""
        self.cancel_reason = reason
        self._cancelled.set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the aggregate deadline, or None if unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock())

    def is_cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        if self.deadline is not None and self.clock() >= self.deadline:
            self.cancel_reason = self.cancel_reason or "aggregate timeout elapsed"
            return True
        return False

    def raise_if_cancelled(self):
        """Raise CancelledError if the run was aborted or its deadline passed."""
        if self.is_cancelled():
            raise CancelledError(f"Bootstrap cancelled: {self.cancel_reason}")

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to seconds, waking early on cancellation.

        Returns:
            True if the run was cancelled while waiting
        """
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._cancelled.wait(seconds)
        return self.is_cancelled()
