"""
Request pacing and API key rotation for the price feed.
"""

import logging
import threading
import time
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)


class MinIntervalThrottle:
    """Enforces a fixed minimum delay between consecutive calls.

    Callers that arrive early are made to wait, never rejected.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            min_interval: Minimum seconds between calls
            clock: Monotonic time source
            sleep: Sleep function
        """
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = threading.Lock()

    def wait(self) -> float:
        """
        Block until a call is allowed, then mark the call.

        Returns:
            Seconds spent waiting
        """
        with self._lock:
            waited = 0.0
            if self._last_call is not None:
                remaining = self.min_interval - (self.clock() - self._last_call)
                if remaining > 0:
                    logger.debug(f"Throttling price feed call for {remaining:.2f}s")
                    self.sleep(remaining)
                    waited = remaining
            self._last_call = self.clock()
            return waited


class KeyRotator:
    """Hands out API keys round-robin."""

    def __init__(self, keys: Iterable[str]):
        self._keys = [key for key in keys if key]
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def next_key(self) -> Optional[str]:
        """Get the next key, or None when no keys are configured."""
        if not self._keys:
            return None
        with self._lock:
            key = self._keys[self._index % len(self._keys)]
            self._index += 1
            return key
