"""Circuit breaker registry for external module calls.

Stops calling a failing dependency until it cools down. After N
consecutive failures for a key the breaker opens and rejects calls; once
the recovery timeout has elapsed a single half-open probe is let through,
and its outcome decides whether the breaker closes or opens again.

The registry is injected into the step executor. Each key has its own
lock, so failures against one dependency never contend with another.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Point-in-time view of one breaker."""
    key: str
    state: CircuitState
    failure_count: int
    last_failure_at: Optional[float]
    opened_at: Optional[float]
    half_open_successes: int
    probe_in_flight: bool
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at,
            "opened_at": self.opened_at,
            "half_open_successes": self.half_open_successes,
            "probe_in_flight": self.probe_in_flight,
            "last_error": self.last_error,
        }


class CircuitBreaker:
    """State machine for a single dependency key."""

    def __init__(
        self,
        key: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_successes: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._probe_successes = 0
        self._probe_in_flight = False
        self._last_error: Optional[str] = None

    async def acquire(self) -> None:
        """Admit a call or raise CircuitOpenError."""
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.recovery_timeout:
                    raise CircuitOpenError(self.key, retry_after=self.recovery_timeout - elapsed)
                self._state = CircuitState.HALF_OPEN
                self._probe_successes = 0
                logger.info(f"Circuit half-open for {self.key} after {elapsed:.0f}s cooldown")

            # half-open: one probe at a time
            if self._probe_in_flight:
                raise CircuitOpenError(self.key)
            self._probe_in_flight = True

    async def record_success(self) -> None:
        async with self._lock:
            # A call admitted before the circuit opened cannot close it; only the probe can
            if self._state == CircuitState.OPEN:
                return
            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._probe_successes += 1
                if self._probe_successes < self.half_open_successes:
                    return
                logger.info(f"Circuit CLOSED for {self.key} after successful probe")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._probe_successes = 0

    async def record_failure(self, error: Optional[str] = None) -> None:
        async with self._lock:
            now = self._clock()
            self._failures += 1
            self._last_failure = now
            self._last_error = error

            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._probe_successes = 0
                self._state = CircuitState.OPEN
                self._opened_at = now
                logger.warning(f"Circuit re-OPENED for {self.key}, probe failed: {error}")
                return

            if self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = now
                logger.error(
                    f"Circuit OPENED for {self.key} after "
                    f"{self._failures} consecutive failures. "
                    f"Cooldown: {self.recovery_timeout}s. Last error: {error}"
                )

    def release(self) -> None:
        """Give back an admitted half-open probe that never reported (cancelled call)."""
        if self._state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            key=self.key,
            state=self._state,
            failure_count=self._failures,
            last_failure_at=self._last_failure,
            opened_at=self._opened_at,
            half_open_successes=self._probe_successes,
            probe_in_flight=self._probe_in_flight,
            last_error=self._last_error,
        )


class CircuitBreakerRegistry:
    """Per-dependency breakers, created lazily on first use."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_successes: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakerRegistry":
        return cls(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_RECOVERY_TIMEOUT,
            half_open_successes=settings.CIRCUIT_HALF_OPEN_SUCCESSES,
        )

    def breaker(self, key: str) -> CircuitBreaker:
        # setdefault is atomic with respect to the event loop, no await in between
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = self._breakers.setdefault(
                key,
                CircuitBreaker(
                    key,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                    half_open_successes=self.half_open_successes,
                    clock=self._clock,
                ),
            )
        return breaker

    async def acquire(self, key: str) -> None:
        await self.breaker(key).acquire()

    async def record_success(self, key: str) -> None:
        await self.breaker(key).record_success()

    async def record_failure(self, key: str, error: Optional[str] = None) -> None:
        await self.breaker(key).record_failure(error)

    def release(self, key: str) -> None:
        breaker = self._breakers.get(key)
        if breaker:
            breaker.release()

    def get_state(self, key: str) -> Optional[CircuitBreakerState]:
        breaker = self._breakers.get(key)
        return breaker.snapshot() if breaker else None

    def snapshot(self) -> Dict[str, dict]:
        """Status of all tracked keys, for the admin surface."""
        return {key: b.snapshot().to_dict() for key, b in sorted(self._breakers.items())}

    def reset(self, key: Optional[str] = None) -> bool:
        """Forget a key's state (or all keys). Returns False for unknown keys."""
        if key is None:
            self._breakers.clear()
            return True
        return self._breakers.pop(key, None) is not None
