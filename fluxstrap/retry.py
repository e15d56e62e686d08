"""
Bounded retry for transient failures.

Only TransientError (network timeouts, rate limits, 5xx) is retried; every
other error propagates on the first occurrence.
"""
from typing import Callable, Optional, TypeVar

from fluxstrap.context import RunContext
from fluxstrap.errors import CancelledError, TransientError


T = TypeVar('T')


class RetryPolicy:
    """Retry policy for transient step failures."""

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0
    ):
        """
        Initialize retry policy.

        Args:
            max_attempts: Total attempts including the first one
            base_delay: Delay before the first retry, doubled after each failure
            max_delay: Upper bound for the computed backoff
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Seconds to wait after the given failed attempt (1-based).

        A provider supplied retry_after is honoured even when it exceeds the
        computed backoff.
        """
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


def run_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    ctx: RunContext,
    description: str = "operation"
) -> T:
    """
    Call fn, retrying transient failures with exponential backoff.

    Args:
        fn: Zero-argument callable performing the remote work
        policy: Retry policy
        ctx: Run context (logger, cancellation)
        description: Human readable name for log lines

    Returns:
        fn's return value

    Raises:
        TransientError: The last transient error once attempts are exhausted
        CancelledError: If the run is cancelled while backing off
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except TransientError as e:
            if attempt >= policy.max_attempts:
                ctx.logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise

            delay = policy.delay_for(attempt, e.retry_after)
            ctx.logger.warning(
                f"{description} failed transiently (attempt {attempt}/{policy.max_attempts}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            if ctx.wait(delay):
                raise CancelledError(f"Bootstrap cancelled during retry of {description}: {ctx.cancel_reason}") from e
