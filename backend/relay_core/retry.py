from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.1


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(RuntimeError):
    """Raised inside ``retry`` results when a breaker short-circuits a call."""


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: bool = True


@dataclass
class RetryResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    total_time: float = 0.0


def compute_backoff_delay(
    attempt: int,
    config: RetryConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds to wait after the ``attempt``-th failure (1-based)."""

    delay = min(config.base_delay * config.backoff_multiplier ** (attempt - 1), config.max_delay)
    if config.jitter:
        delay += delay * JITTER_FRACTION * rand()
    return delay


# ---- circuit breaker -------------------------------------------------------------


@dataclass(frozen=True)
class BreakerState:
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_failure_time: Optional[float] = None
    trial_in_flight: bool = False


def breaker_allows(current: BreakerState, now: float, recovery_timeout: float) -> BreakerState | None:
    """Return the state to proceed with, or ``None`` when the call is rejected.

    A half-open breaker admits a single trial call; everything else is
    rejected until that trial records a success or a failure.
    """

    if current.state is CircuitState.CLOSED:
        return current
    if current.state is CircuitState.HALF_OPEN:
        return None if current.trial_in_flight else replace(current, trial_in_flight=True)
    if current.last_failure_time is not None and now - current.last_failure_time >= recovery_timeout:
        return replace(current, state=CircuitState.HALF_OPEN, trial_in_flight=True)
    return None


def breaker_release_trial(current: BreakerState) -> BreakerState:
    return replace(current, trial_in_flight=False)


def breaker_on_success(current: BreakerState) -> BreakerState:
    return BreakerState()


def breaker_on_failure(current: BreakerState, now: float, failure_threshold: int) -> BreakerState:
    failures = current.failures + 1
    if current.state is CircuitState.HALF_OPEN or failures >= failure_threshold:
        return BreakerState(state=CircuitState.OPEN, failures=failures, last_failure_time=now)
    return BreakerState(state=CircuitState.CLOSED, failures=failures, last_failure_time=now)


class CircuitBreaker:
    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = BreakerState()

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def failures(self) -> int:
        return self._state.failures

    def allow(self) -> bool:
        next_state = breaker_allows(self._state, self._clock(), self.recovery_timeout)
        if next_state is None:
            return False
        if next_state.state is not self._state.state:
            logger.info("Circuit breaker %s moving to %s", self.name, next_state.state.value)
        self._state = next_state
        return True

    def record_success(self) -> None:
        if self._state.state is not CircuitState.CLOSED:
            logger.info("Circuit breaker %s closed", self.name)
        self._state = breaker_on_success(self._state)

    def record_failure(self) -> None:
        previous = self._state.state
        self._state = breaker_on_failure(self._state, self._clock(), self.failure_threshold)
        if self._state.state is CircuitState.OPEN and previous is not CircuitState.OPEN:
            logger.warning("Circuit breaker %s opened after %d failures", self.name, self._state.failures)

    def release_trial(self) -> None:
        self._state = breaker_release_trial(self._state)

    def reset(self) -> None:
        self._state = BreakerState()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.state.value,
            "failures": self._state.failures,
            "lastFailureTime": self._state.last_failure_time,
        }


# ---- retry ---------------------------------------------------------------------


async def retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    breaker: CircuitBreaker | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> RetryResult[T]:
    """Run ``fn`` with a per-attempt timeout and exponential backoff.

    Never raises; the outcome is reported through ``RetryResult``. When a
    breaker is given it guards a single attempt and the breaker, not the
    backoff loop, decides when the next call may go through.
    """

    config = config or RetryConfig()
    started = time.monotonic()

    if breaker is not None:
        if not breaker.allow():
            error = CircuitOpenError(f"Circuit breaker {breaker.name} is OPEN")
            return RetryResult(success=False, error=error, attempts=0, total_time=time.monotonic() - started)
        try:
            data = await asyncio.wait_for(fn(), timeout=config.timeout)
        except asyncio.CancelledError:
            breaker.release_trial()
            raise
        except Exception as exc:
            breaker.record_failure()
            logger.warning("Call guarded by %s failed: %s", breaker.name, exc)
            return RetryResult(success=False, error=exc, attempts=1, total_time=time.monotonic() - started)
        breaker.record_success()
        return RetryResult(success=True, data=data, attempts=1, total_time=time.monotonic() - started)

    last_error: BaseException | None = None
    attempts = 0
    for attempt in range(1, max(1, config.max_attempts) + 1):
        attempts = attempt
        try:
            data = await asyncio.wait_for(fn(), timeout=config.timeout)
        except Exception as exc:
            last_error = exc
            if attempt >= config.max_attempts:
                break
            delay = compute_backoff_delay(attempt, config, rand)
            logger.info("Attempt %d failed (%s); retrying in %.2fs", attempt, exc, delay)
            await sleep(delay)
            continue
        return RetryResult(success=True, data=data, attempts=attempt, total_time=time.monotonic() - started)

    logger.warning("All %d attempts failed: %s", attempts, last_error)
    return RetryResult(success=False, error=last_error, attempts=attempts, total_time=time.monotonic() - started)


class RetryManager:
    """Owns named circuit breakers so unrelated operations fail independently."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def breaker(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        config: RetryConfig | None = None,
        circuit: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> RetryResult[T]:
        breaker = self.breaker(circuit) if circuit else None
        return await retry(fn, config, breaker=breaker, sleep=sleep)

    def reset(self, name: str | None = None) -> None:
        if name is None:
            for breaker in self._breakers.values():
                breaker.reset()
            return
        breaker = self._breakers.get(name)
        if breaker is not None:
            breaker.reset()

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}


class ReconnectBackoff:
    """Full-jitter reconnect delays for one realtime channel, capped at ``max_attempts``."""

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        min_delay: float = 0.5,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.min_delay = min_delay
        self._rand = rand
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> Optional[float]:
        """Consume one attempt and return its delay, or ``None`` once exhausted."""

        if self.exhausted:
            return None
        ceiling = min(self.max_delay, self.base_delay * 2 ** self.attempts)
        self.attempts += 1
        return max(self.min_delay, self._rand() * ceiling)

    def reset(self) -> None:
        self.attempts = 0
