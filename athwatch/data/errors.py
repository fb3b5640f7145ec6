"""
Price feed error types.
"""

from typing import Optional


class PriceFeedError(Exception):
    """Base class for price feed failures."""

    pass


class UpstreamError(PriceFeedError):
    """The feed was called and failed: network error, non-2xx or bad payload.

    Attributes:
        status_code: HTTP status when the upstream answered, else None.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(PriceFeedError):
    """The feed was not called because the circuit breaker is open.

    Attributes:
        retry_after: Seconds until the breaker lets a call through.
    """

    def __init__(self, retry_after: float):
        super().__init__(f"Circuit breaker is open (retry in {retry_after:.0f}s)")
        self.retry_after = retry_after
