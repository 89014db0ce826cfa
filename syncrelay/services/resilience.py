from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import httpx
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from syncrelay.core.config import Settings
from syncrelay.core.errors import CircuitOpenError, ComplianceViolation, ExternalServiceError, IdentityConflict
from syncrelay.core.logs import log_event
from syncrelay.core.metrics import set_circuit_state

logger = logging.getLogger("syncrelay.worker")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    exponential: bool = True
    retryable_patterns: tuple[str, ...] = ("timeout", "network", "500", "502", "503", "504")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
        )


def is_transient_error(exc: BaseException, *, patterns: tuple[str, ...] = RetryPolicy.retryable_patterns) -> bool:
    if isinstance(exc, CircuitOpenError | ComplianceViolation | IdentityConflict):
        return False
    if isinstance(exc, ExternalServiceError):
        return exc.transient
    if isinstance(exc, httpx.TimeoutException | httpx.NetworkError):
        return True
    message = str(exc).lower()
    return any(p in message for p in patterns)


def execute_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    if policy.exponential:
        wait = wait_exponential(multiplier=policy.base_delay_seconds, max=policy.max_delay_seconds)
    else:
        wait = wait_fixed(policy.base_delay_seconds)

    retrying = Retrying(
        stop=stop_after_attempt(max(0, policy.max_retries) + 1),
        wait=wait,
        retry=retry_if_exception(lambda e: is_transient_error(e, patterns=policy.retryable_patterns)),
        sleep=sleep,
        reraise=True,
    )
    return retrying(fn)


class CircuitState(enum.StrEnum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


@dataclass
class CircuitBreaker:
    """Per-service breaker. Process-local; instances do not share state."""

    service_name: str
    failure_threshold: int = 5
    success_threshold: int = 2
    cooldown_seconds: float = 60.0
    clock: Callable[[], float] = time.monotonic
    state: CircuitState = CircuitState.closed
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: float | None = None
    _trial_in_flight: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def call(self, fn: Callable[[], T]) -> T:
        self._before_call()
        try:
            result = fn()
        except Exception as e:
            if isinstance(e, ExternalServiceError) and not e.transient:
                # Permanent 4xx answers count as a healthy service.
                self.record_success()
            else:
                self.record_failure()
            raise
        self.record_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            if self.state == CircuitState.closed:
                return
            now = self.clock()
            if self.state == CircuitState.open:
                elapsed = now - (self.last_failure_at or now)
                if elapsed < self.cooldown_seconds:
                    raise CircuitOpenError(
                        service=self.service_name,
                        retry_after_seconds=self.cooldown_seconds - elapsed,
                    )
                self._transition(CircuitState.half_open)
            # Half-open admits a single trial call at a time.
            if self._trial_in_flight:
                raise CircuitOpenError(service=self.service_name, retry_after_seconds=0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            if self.state == CircuitState.half_open:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.failure_count = 0
                    self.success_count = 0
                    self._transition(CircuitState.closed)
                return
            self.failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            self.failure_count += 1
            self.success_count = 0
            self.last_failure_at = self.clock()
            if self.state == CircuitState.half_open:
                self._transition(CircuitState.open)
            elif self.state == CircuitState.closed and self.failure_count >= self.failure_threshold:
                self._transition(CircuitState.open)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "service": self.service_name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "last_failure_at": self.last_failure_at,
            }

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        if new_state == CircuitState.half_open:
            self.success_count = 0
        set_circuit_state(service=self.service_name, state=new_state.value)
        log_event(
            logger,
            "circuit.transition",
            level=logging.WARNING if new_state == CircuitState.open else logging.INFO,
            service=self.service_name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self.failure_count,
        )


@dataclass
class CircuitBreakerRegistry:
    failure_threshold: int = 5
    success_threshold: int = 2
    cooldown_seconds: float = 60.0
    clock: Callable[[], float] = time.monotonic
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _breakers: dict[str, CircuitBreaker] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> CircuitBreakerRegistry:
        return cls(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            success_threshold=settings.CIRCUIT_SUCCESS_THRESHOLD,
            cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS,
        )

    def get(self, service_name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(service_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    service_name=service_name,
                    failure_threshold=self.failure_threshold,
                    success_threshold=self.success_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self.clock,
                )
                self._breakers[service_name] = breaker
            return breaker

    def reset(self) -> None:
        with self._lock:
            self._breakers.clear()

    def snapshot(self) -> list[dict]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.snapshot() for b in breakers]
