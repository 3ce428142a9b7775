from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Reconnection backoff settings.

    Attributes:
        base_delay: Seconds to wait per attempt; attempt ``n`` waits ``n * base_delay``
        max_delay: Largest delay allowed before the breaker trips
        max_attempts: Largest number of reconnection attempts before the breaker trips
        cooldown: Seconds to wait after tripping before a fresh connection cycle
    """

    base_delay: float = 1.0
    max_delay: float = 10.0
    max_attempts: int = 10
    cooldown: float = 60.0

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError(f"base_delay must be > 0, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ValueError(f"max_delay ({self.max_delay}) cannot be less than base_delay ({self.base_delay})")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.cooldown < 0:
            raise ValueError(f"cooldown must be >= 0, got {self.cooldown}")


class CircuitBreaker:
    """
    Circuit breaker guarding reconnection attempts.

    States:
    - CLOSED: Reconnecting normally, each attempt waits a little longer
    - OPEN: Backoff exhausted, no more retries until the cooldown elapses

    Flow:
    1. Start in CLOSED state
    2. Each failed attempt asks for the next delay (base_delay * attempt)
    3. Delay above max_delay, or attempts above max_attempts -> OPEN
    4. Successful connection or a new cycle after cooldown -> reset to CLOSED
    """

    CLOSED = "closed"
    OPEN = "open"

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()
        self.attempts = 0
        self.state = self.CLOSED
        self._lock = threading.Lock()

    def next_delay(self) -> Optional[float]:
        """
        Register one more reconnection attempt.

        Returns:
            Seconds to wait before the attempt, or None if the breaker tripped
        """
        with self._lock:
            if self.state == self.OPEN:
                return None

            self.attempts += 1
            delay = self.policy.base_delay * self.attempts

            if delay > self.policy.max_delay:
                logger.warning(
                    f"Circuit breaker opening: retry delay {delay:.1f}s exceeds {self.policy.max_delay:.1f}s"
                )
                self.state = self.OPEN
                return None

            if self.attempts > self.policy.max_attempts:
                logger.warning(
                    f"Circuit breaker opening after {self.attempts} reconnection attempts"
                )
                self.state = self.OPEN
                return None

            return delay

    def reset(self) -> None:
        """Reset the breaker to CLOSED state."""
        with self._lock:
            self.state = self.CLOSED
            self.attempts = 0

    def get_state(self) -> str:
        """Get current circuit breaker state."""
        with self._lock:
            return self.state
