import enum
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import CircuitOpenError
from .logging import get_logger

logger = get_logger()

T = TypeVar("T")


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Protects an outbound dependency from being hammered while it is down.

    closed -> open after ``failure_threshold`` consecutive failures. While open,
    calls are rejected with CircuitOpenError. Once ``reset_timeout`` seconds
    have passed the breaker goes half_open and lets exactly one trial call
    through: success closes it, failure opens it again with a fresh timer.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_progress = False

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info(f"Circuit breaker '{self.name}' is half open")
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def _before_call(self) -> None:
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(f"Circuit breaker '{self.name}' is open")
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_progress:
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is half open and a trial call is running"
                )
            self._trial_in_progress = True

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under breaker protection, re-raising its exceptions."""
        self._before_call()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        finally:
            # Cancelled trials must not leave the half-open slot taken
            self._trial_in_progress = False
        self.record_success()
        return result

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit breaker '{self.name}' closed")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_progress = False

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(
                    f"Circuit breaker '{self.name}' opened after {self._failures} consecutive failures"
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
        self._trial_in_progress = False

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_progress = False
