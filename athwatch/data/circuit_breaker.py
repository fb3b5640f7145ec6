"""
Circuit breaker for the price feed.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Breaker position."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # cooldown over, next call is a trial


@dataclass
class CircuitBreakerState:
    """Mutable breaker state."""

    failure_count: int = 0
    opened_until: Optional[float] = None


class CircuitBreaker:
    """Opens after consecutive failures and fails fast for a cooldown."""

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_seconds: float = 300.0,
        state: Optional[CircuitBreakerState] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            failure_threshold: Consecutive failures that open the circuit
            cooldown_seconds: How long the circuit stays open
            state: Initial state, defaults to closed
            clock: Time source in seconds
        """
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.state = state or CircuitBreakerState()
        self.clock = clock

    @property
    def position(self) -> CircuitState:
        """Current breaker position."""
        if self.state.opened_until is None:
            return CircuitState.CLOSED
        if self.clock() < self.state.opened_until:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    def before_call(self) -> None:
        """
        Check the breaker before a call.

        Raises:
            CircuitOpenError: If the circuit is open
        """
        if self.position == CircuitState.OPEN:
            raise CircuitOpenError(retry_after=self.state.opened_until - self.clock())

    def record_success(self) -> None:
        """Close the breaker and reset the failure counter."""
        if self.state.failure_count or self.state.opened_until is not None:
            logger.info("Circuit breaker closed after successful call")
        self.state.failure_count = 0
        self.state.opened_until = None

    def record_failure(self) -> None:
        """Count a failure, opening the circuit at the threshold."""
        self.state.failure_count += 1
        logger.warning(
            f"Circuit breaker failure {self.state.failure_count}/{self.failure_threshold}"
        )
        # A failed trial call after cooldown re-opens immediately since the count
        # is still at or above the threshold.
        if self.state.failure_count >= self.failure_threshold:
            self.state.opened_until = self.clock() + self.cooldown_seconds
            logger.critical(f"Circuit breaker OPEN for {self.cooldown_seconds:.0f}s")

    def describe(self) -> dict:
        """Breaker state for health reporting."""
        retry_after = None
        if self.position == CircuitState.OPEN:
            retry_after = round(self.state.opened_until - self.clock(), 1)
        return {
            "state": self.position.value,
            "failure_count": self.state.failure_count,
            "retry_after_seconds": retry_after,
        }
