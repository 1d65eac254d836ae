from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from timeledger.core.config import get_settings
from timeledger.core.errors import IntegrationUnavailableError, RemoteTransientError
from timeledger.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, RemoteTransientError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status >= 500 or status == 429):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Linear backoff (attempt * backoff_ms) capped at max_backoff_ms.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        return min(self.backoff_ms * attempt, self.max_backoff_ms) / 1000.0


def default_retry_policy(timeout_ms: int | None = None) -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=timeout_ms or settings.remote_timeout_ms,
        max_attempts=settings.remote_retry_max_attempts,
        backoff_ms=settings.remote_retry_backoff_ms,
        max_backoff_ms=settings.remote_retry_max_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "external_call",
) -> Any:
    # Retry transient failures only; everything else propagates on the first attempt.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            sleep_s = policy.delay_s(attempt)
            logger.warning(
                "retrying operation=%s attempt=%d max_attempts=%d sleep_s=%.1f error=%s",
                operation,
                attempt,
                policy.max_attempts,
                sleep_s,
                type(exc).__name__,
            )
            await asyncio.sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    """Consecutive-failure breaker scoped to one caller.

    A paginated fetch creates its own breaker, so "open" means "this fetch has
    seen too many failed pages in a row" rather than a process-wide outage.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig(
            failure_threshold=get_settings().remote_breaker_consecutive_failures,
            open_seconds=3600,
            half_open_trials=1,
        )
        self._time = time_source or time.monotonic
        self._state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> str:
        return self._state.state

    @property
    def failures(self) -> int:
        return self._state.failures

    def _transition(self, target: str) -> None:
        # Emit logs on state transitions for operator visibility.
        if self._state.state != target:
            logger.warning(
                "circuit_breaker_transition name=%s from=%s to=%s", self._name, self._state.state, target
            )
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            if target == "open":
                increment_counter("circuit_breaker_open_total")
            state_value = {"closed": 0.0, "half_open": 0.5, "open": 1.0}.get(target, 0.0)
            set_gauge(f"circuit_breaker_state.{self._name}", state_value)
        self._state = CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    def before_call(self) -> None:
        # Decide whether calls are allowed and update half-open counters.
        state = self._state
        if state.state == "open":
            if state.opened_at is not None and (self._time() - state.opened_at) >= self._config.open_seconds:
                self._transition("half_open")
            else:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
        if self._state.state == "half_open":
            if self._state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            self._state.half_open_trials += 1

    def record_success(self) -> None:
        if self._state.state != "closed":
            self._transition("closed")
        else:
            self._state.failures = 0

    def record_failure(self) -> None:
        if self._state.state == "half_open":
            self._transition("open")
            return
        failures = self._state.failures + 1
        if failures >= self._config.failure_threshold:
            self._transition("open")
        else:
            self._state.failures = failures
