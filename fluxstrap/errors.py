"""
Classified errors raised by fluxstrap components.

Lower layers never swallow failures: they raise one of these classes and the
reconciler decides whether to retry (transient) or abort (everything else).
"""
from typing import List, Optional


class FluxstrapError(Exception):
    """Base class for all fluxstrap errors."""
    pass


class ConfigError(FluxstrapError):
    """Raised when a bootstrap request is malformed. Fails before any remote call."""
    pass


class AuthError(FluxstrapError):
    """Raised when credentials are rejected by the provider or the cluster."""
    pass


class ConflictError(FluxstrapError):
    """Raised when remote state exists but is incompatible with the request."""
    pass


class QuotaError(FluxstrapError):
    """Raised when the provider refuses a deploy key because of a limit."""
    pass


class ProviderError(FluxstrapError):
    """Raised for provider responses that fit no other class."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(FluxstrapError):
    """Raised for failures that may succeed on retry (timeouts, 5xx, rate limits)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitError(TransientError):
    """Raised when the provider reports an exhausted rate limit."""
    pass


class ReadinessTimeoutError(FluxstrapError):
    """Raised when convergence targets are still unsatisfied at the deadline."""

    def __init__(self, targets: List[str], message: Optional[str] = None):
        self.targets = list(targets)
        super().__init__(message or f"Timed out waiting for: {', '.join(self.targets)}")


class FatalConditionError(FluxstrapError):
    """Raised when a convergence target reports a terminal failure condition."""

    def __init__(self, targets: List[str], reason: str):
        self.targets = list(targets)
        self.reason = reason
        super().__init__(f"Terminal condition on {', '.join(self.targets)}: {reason}")


class CancelledError(FluxstrapError):
    """Raised when a run is aborted or its aggregate deadline elapses."""
    pass


def classify(error: BaseException) -> str:
    """
    Return the failure class name reported for an error.

    Args:
        error: Exception raised during a run

    Returns:
        Failure type string (e.g. 'transient', 'auth', 'unexpected')
    """
    mapping = [
        (RateLimitError, 'rate_limit'),
        (TransientError, 'transient'),
        (AuthError, 'auth'),
        (ConflictError, 'conflict'),
        (QuotaError, 'quota'),
        (ConfigError, 'config'),
        (ReadinessTimeoutError, 'timeout'),
        (FatalConditionError, 'fatal_condition'),
        (CancelledError, 'cancelled'),
        (ProviderError, 'provider'),
    ]
    for error_class, name in mapping:
        if isinstance(error, error_class):
            return name
    return 'unexpected'
