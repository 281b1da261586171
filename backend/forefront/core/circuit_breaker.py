"""
Circuit breaker for model provider calls.

One breaker per model id guards the shared provider pool:
- Opens when the error rate over the time window reaches the threshold
  (after a minimum number of calls)
- Stays open for open_duration_seconds, rejecting calls immediately
- Then lets a single probe call through (half-open); success closes the
  circuit, failure reopens it
"""
import time
from collections import deque
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from forefront.core.logging import get_logger
from forefront.core.metrics import set_circuit_open

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Probing recovery


class CircuitBreakerOpenError(Exception):
    """Raised when the circuit is open and the call is rejected."""

    def __init__(self, name: str, state: CircuitState):
        super().__init__(f"Circuit breaker {name} is {state.value}; provider unavailable")
        self.name = name
        self.state = state


class CircuitBreaker:
    """Error-rate circuit breaker, safe to share between concurrent requests."""

    def __init__(
        self,
        name: str,
        failure_threshold: float = 0.5,
        time_window_seconds: float = 60.0,
        open_duration_seconds: float = 30.0,
        min_requests_for_threshold: int = 10,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.time_window_seconds = time_window_seconds
        self.open_duration_seconds = open_duration_seconds
        self.min_requests_for_threshold = min_requests_for_threshold

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._history: Deque[Tuple[float, bool]] = deque()  # (timestamp, success)
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh(time.monotonic())
            return self._state

    def _refresh(self, now: float) -> None:
        """Expire old history and move OPEN -> HALF_OPEN when the cool-down ends."""
        cutoff = now - self.time_window_seconds
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and now - self._opened_at >= self.open_duration_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            logger.info("circuit_breaker_half_open", circuit_breaker=self.name)

    def _open(self, now: float, **fields: Any) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._history.clear()
        set_circuit_open(self.name, True)
        logger.warning("circuit_breaker_opened", circuit_breaker=self.name, **fields)

    def _acquire(self) -> bool:
        """Admit a call; returns True when the call is the half-open probe."""
        with self._lock:
            self._refresh(time.monotonic())
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(self.name, self._state)
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitBreakerOpenError(self.name, self._state)
                self._probe_in_flight = True
                return True
            return False

    def _record(self, success: bool, is_probe: bool) -> None:
        now = time.monotonic()
        with self._lock:
            if is_probe:
                self._probe_in_flight = False
                if success:
                    self._state = CircuitState.CLOSED
                    self._opened_at = None
                    set_circuit_open(self.name, False)
                    logger.info("circuit_breaker_closed", circuit_breaker=self.name)
                else:
                    self._open(now, reason="probe_failed")
                return

            self._history.append((now, success))
            total = len(self._history)
            if self._state == CircuitState.CLOSED and total >= self.min_requests_for_threshold:
                failures = sum(1 for _, ok in self._history if not ok)
                error_rate = failures / total
                if error_rate >= self.failure_threshold:
                    self._open(now, error_rate=error_rate, failures=failures, total=total)

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute an async callable under circuit breaker protection.

        Raises:
            CircuitBreakerOpenError if the circuit rejects the call.
        """
        is_probe = self._acquire()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._record(False, is_probe)
            raise
        except BaseException:
            # Cancellation says nothing about provider health; free the probe slot.
            if is_probe:
                with self._lock:
                    self._probe_in_flight = False
            raise
        self._record(True, is_probe)
        return result

    def get_metrics(self) -> dict:
        """Snapshot for monitoring."""
        with self._lock:
            self._refresh(time.monotonic())
            total = len(self._history)
            failures = sum(1 for _, ok in self._history if not ok)
            return {
                "name": self.name,
                "state": self._state.value,
                "recent_requests": total,
                "recent_failures": failures,
                "error_rate": failures / total if total else 0.0,
            }


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = Lock()


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Process-wide breaker per name (one per model id)."""
    with _breakers_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name)
            _breakers[name] = breaker
        return breaker


def reset_circuit_breakers() -> None:
    with _breakers_lock:
        _breakers.clear()
