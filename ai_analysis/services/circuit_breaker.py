"""
Circuit breaker guarding a provider transport.

After `failure_threshold` consecutive failures the circuit opens and calls
are rejected without touching the network. Once `recovery_timeout` seconds
have passed since the last failure a single trial call is allowed
(half-open); its success closes the circuit, its failure re-opens it.
"""
import logging
import time
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

OPEN_CIRCUIT_MESSAGE = (
    "Service temporarily unavailable due to repeated failures. "
    "Please try again in a minute."
)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATUS_TEXT = {
    CircuitState.CLOSED: "Normal",
    CircuitState.OPEN: "Blocked (too many failures)",
    CircuitState.HALF_OPEN: "Testing recovery",
}


class RequestCircuitBreaker:
    """Consecutive-failure circuit breaker for one provider"""

    def __init__(
        self,
        name: str = "provider",
        failure_threshold: int = 3,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def status(self) -> str:
        return _STATUS_TEXT[self._state]

    def allow_request(self) -> bool:
        """Return True if a call may go out now (may move open -> half-open)."""
        if self._state == CircuitState.OPEN:
            if self._can_attempt_reset():
                self._state = CircuitState.HALF_OPEN
                logger.info(
                    f"Circuit {self.name} half-open, attempting recovery",
                    extra={"event_type": "circuit_half_open", "provider": self.name}
                )
                return True
            return False
        return True

    def record_success(self) -> None:
        self._failure_count = 0
        self._last_failure_time = None
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            logger.info(
                f"Circuit {self.name} closed",
                extra={"event_type": "circuit_closed", "provider": self.name}
            )

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                f"Circuit {self.name} recovery failed, re-opened",
                extra={"event_type": "circuit_reopened", "provider": self.name}
            )
        elif self._failure_count >= self.failure_threshold and self._state != CircuitState.OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                f"Circuit {self.name} opened after {self._failure_count} failures",
                extra={
                    "event_type": "circuit_opened",
                    "provider": self.name,
                    "failure_count": self._failure_count,
                }
            )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None

    def _can_attempt_reset(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.recovery_timeout
