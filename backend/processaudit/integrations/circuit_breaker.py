from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from threading import Lock
import time
from typing import Awaitable, Callable, TypeVar

from processaudit.core.metrics import integration_circuit_state
from processaudit.core.settings import Settings
from processaudit.integrations.errors import CircuitOpenError, IntegrationError
from processaudit.observability.events import emit_circuit_transition


T = TypeVar("T")

logger = logging.getLogger("processaudit.integrations.circuit_breaker")

_STATE_GAUGE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    target: str
    state: str
    consecutive_failures: int
    failure_threshold: int
    opened_at: float | None
    open_until: float | None


CALLER_FAULT_REASONS = frozenset({"auth_failed", "bad_request"})


def counts_against_target(exc: BaseException) -> bool:
    # Only a 4xx rejection means the target answered and the request was at fault.
    if isinstance(exc, IntegrationError):
        return exc.reason_code not in CALLER_FAULT_REASONS
    return True


class CircuitBreaker:
    def __init__(
        self,
        *,
        target: str = "default",
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        is_failure: Callable[[BaseException], bool] = counts_against_target,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be greater than 0")
        if cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be greater than 0")
        self.target = target
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._is_failure = is_failure
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._half_open_probe_in_flight = False
        self._lock = Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            open_until = self._opened_at + self.cooldown_seconds if self._opened_at is not None else None
            return CircuitBreakerSnapshot(
                target=self.target,
                state=self._state.value,
                consecutive_failures=self._consecutive_failures,
                failure_threshold=self.failure_threshold,
                opened_at=self._opened_at,
                open_until=open_until,
            )

    def before_call(self, *, now: float | None = None) -> None:
        now_value = self._clock() if now is None else now
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._opened_at is not None and now_value - self._opened_at >= self.cooldown_seconds:
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    raise CircuitOpenError(f"Circuit breaker is OPEN for {self.target}.")
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_probe_in_flight:
                    raise CircuitOpenError(f"Circuit breaker half-open probe already in progress for {self.target}.")
                self._half_open_probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._opened_at = None
            self._half_open_probe_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def record_failure(self, *, now: float | None = None) -> None:
        now_value = self._clock() if now is None else now
        with self._lock:
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_probe_in_flight = False
                self._opened_at = now_value
                self._transition(CircuitState.OPEN)
                return
            if self._state == CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
                self._opened_at = now_value
                self._transition(CircuitState.OPEN)

    def release_probe(self) -> None:
        with self._lock:
            self._half_open_probe_in_flight = False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.before_call()
        try:
            result = await operation()
        except Exception as exc:
            if self._is_failure(exc):
                self.record_failure()
            else:
                self.release_probe()
            raise
        except BaseException:
            # Cancelled probes must not leave the breaker stuck half-open.
            self.release_probe()
            raise
        self.record_success()
        return result

    def _transition(self, new_state: CircuitState) -> None:
        prior_state = self._state
        self._state = new_state
        integration_circuit_state.labels(target=self.target).set(_STATE_GAUGE_VALUES[new_state.value])
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "circuit %s: %s -> %s",
            self.target,
            prior_state.value,
            new_state.value,
            extra={"target": self.target},
        )
        emit_circuit_transition(
            target=self.target,
            prior_state=prior_state.value,
            new_state=new_state.value,
            consecutive_failures=self._consecutive_failures,
        )


class CircuitBreakerRegistry:
    """One breaker per target, created lazily and kept for the process lifetime."""

    def __init__(
        self,
        *,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be greater than 0")
        if cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be greater than 0")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "CircuitBreakerRegistry":
        options = {
            "failure_threshold": settings.circuit_failure_threshold,
            "cooldown_seconds": settings.circuit_cooldown_seconds,
        }
        options.update(overrides)
        return cls(**options)

    def get(self, target: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(target)
            if breaker is None:
                breaker = CircuitBreaker(
                    target=target,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                )
                self._breakers[target] = breaker
            return breaker

    def snapshots(self) -> list[CircuitBreakerSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [breaker.snapshot() for breaker in sorted(breakers, key=lambda item: item.target)]
