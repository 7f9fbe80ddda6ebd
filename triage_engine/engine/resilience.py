# =============================================================================
# ISSUE TRIAGE SYSTEM - RESILIENCE DECORATOR
# =============================================================================
"""
Resilience Decorator

Wraps every outbound call with bounded retries, exponential backoff with
jitter, and a per-downstream circuit breaker.

Retry schedule:
    delay(attempt) = min(base_delay * 2**attempt + uniform(0, jitter), max_delay)
    with attempt starting at 0. A server-supplied Retry-After replaces the
    computed delay.

Circuit breaker:
    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN   --(reset_timeout elapsed, next call)--------> HALF_OPEN (one trial)
    HALF_OPEN --success--> CLOSED
    HALF_OPEN --failure--> OPEN

Usage:
    registry = CircuitRegistry(failure_threshold=5, reset_timeout=60)
    resilience = ResilienceDecorator(RetryPolicy(max_attempts=3), registry)

    data = await resilience.execute(fetch_issue, circuit="github")
    await resilience.execute(post_comment, circuit="github", idempotent=False)
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Tuple, TYPE_CHECKING

from triage_engine.engine.errors import (
    CircuitOpenError,
    IntegrationError,
    RateLimitedError,
    ServerError,
)

if TYPE_CHECKING:
    from monitoring.metrics import MetricsCollector


logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


# =============================================================================
# RETRY POLICY
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry configuration.

    max_attempts counts retries, not calls: 3 means up to 4 calls.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5
    retryable_statuses: FrozenSet[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "RetryPolicy":
        """Create policy from the ``retry`` configuration section."""
        statuses = config.get("retryable_statuses")
        return cls(
            max_attempts=int(config.get("max_attempts", 3)),
            base_delay=float(config.get("base_delay", 1.0)),
            max_delay=float(config.get("max_delay", 30.0)),
            jitter=float(config.get("jitter", 0.5)),
            retryable_statuses=(
                frozenset(int(s) for s in statuses)
                if statuses is not None else frozenset({429, 500, 502, 503, 504})
            ),
        )

    def compute_delay(self, attempt: int, rng: random.Random) -> float:
        """Backoff for the given zero-based attempt."""
        delay = self.base_delay * (2 ** attempt)
        if self.jitter > 0:
            delay += rng.uniform(0, self.jitter)
        return min(delay, self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        """Return True for transient failures worth another attempt."""
        if not isinstance(error, IntegrationError):
            return False
        if isinstance(error, CircuitOpenError):
            return False
        if isinstance(error, RateLimitedError):
            # Primary GitHub limits arrive as 403 but are gated on 429
            return error.retryable and 429 in self.retryable_statuses
        if isinstance(error, ServerError):
            return error.status_code in self.retryable_statuses
        return error.retryable


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker for one downstream.

    All state changes happen under an asyncio.Lock so concurrent calls
    cannot interleave a half-open trial or double-count a failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._metrics = metrics
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def opened_at(self) -> Optional[float]:
        return self._opened_at

    def _transition(self, new_state: CircuitState):
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(f"Circuit {self.name}: {old_state.value} -> {new_state.value}")
        if self._metrics:
            self._metrics.record_circuit_transition(self.name, old_state.value, new_state.value)

    async def before_call(self):
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: Circuit open and cool-down not elapsed, or a
                half-open trial is already running
        """
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return
            now = self._clock()
            if self._state == CircuitState.OPEN:
                elapsed = now - (self._opened_at or now)
                if elapsed < self.reset_timeout:
                    self._reject(self.reset_timeout - elapsed)
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return
            # HALF_OPEN: exactly one trial
            if self._trial_in_flight:
                self._reject(None)
            self._trial_in_flight = True

    def _reject(self, retry_after: Optional[float]):
        if self._metrics:
            self._metrics.record_circuit_rejection(self.name)
        logger.debug(f"Circuit {self.name} open, rejecting call")
        raise CircuitOpenError(self.name, retry_after=retry_after)

    async def record_success(self):
        async with self._lock:
            self._failures = 0
            self._trial_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._opened_at = None
                self._transition(CircuitState.CLOSED)

    async def record_failure(self):
        async with self._lock:
            self._trial_in_flight = False
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._opened_at = self._clock()
                self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._opened_at = self._clock()
                logger.warning(
                    f"Circuit {self.name} opened after {self._failures} consecutive failures"
                )
                self._transition(CircuitState.OPEN)

    async def record_neutral(self):
        """
        Record a terminal client error.

        The downstream answered, so the failure streak ends and a half-open
        trial counts as recovered.
        """
        async with self._lock:
            self._failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._opened_at = None
                self._transition(CircuitState.CLOSED)

    async def release(self):
        """Free a half-open trial slot without judging the downstream."""
        async with self._lock:
            self._trial_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._failures,
            "opened_at": self._opened_at,
        }


class CircuitRegistry:
    """
    Lock-guarded container of circuit breakers, one per downstream.

    Built once per process (or per test) and handed to every client.
    ``overrides`` maps a name prefix (e.g. ``"ai:"``) to its own
    ``(failure_threshold, reset_timeout)``; the longest matching prefix wins.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
        overrides: Optional[Dict[str, Tuple[int, float]]] = None,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.overrides = dict(overrides or {})
        self._clock = clock
        self._metrics = metrics
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        """Return the breaker for a downstream, creating it on first use."""
        breaker = self._breakers.get(name)
        if breaker is None:
            failure_threshold, reset_timeout = self.settings_for(name)
            breaker = CircuitBreaker(
                name,
                failure_threshold=failure_threshold,
                reset_timeout=reset_timeout,
                clock=self._clock,
                metrics=self._metrics,
            )
            self._breakers[name] = breaker
        return breaker

    def settings_for(self, name: str) -> Tuple[int, float]:
        matches = [prefix for prefix in self.overrides if name.startswith(prefix)]
        if not matches:
            return self.failure_threshold, self.reset_timeout
        return self.overrides[max(matches, key=len)]

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: b.snapshot() for name, b in self._breakers.items()}


# =============================================================================
# DECORATOR
# =============================================================================

class ResilienceDecorator:
    """
    Retry + backoff + circuit breaker around async operations.

    Operations are zero-argument coroutine functions that raise
    IntegrationError subclasses on failure.
    """

    def __init__(
        self,
        policy: RetryPolicy = None,
        circuits: CircuitRegistry = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.policy = policy or RetryPolicy()
        self.circuits = circuits or CircuitRegistry()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._metrics = metrics

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        circuit: str,
        idempotent: bool = True,
    ) -> Any:
        """
        Run an operation under the retry policy and the named circuit.

        Args:
            operation: Coroutine function performing one remote call
            circuit: Downstream name selecting the circuit breaker
            idempotent: False for writes; they are attempted exactly once

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: Circuit open, nothing attempted
            IntegrationError: Terminal error, or retries exhausted
        """
        breaker = self.circuits.get(circuit)
        max_retries = self.policy.max_attempts if idempotent else 0
        attempt = 0

        while True:
            await breaker.before_call()
            try:
                result = await operation()
            except IntegrationError as e:
                if not self.policy.is_retryable(e):
                    await breaker.record_neutral()
                    raise
                await breaker.record_failure()
                if attempt >= max_retries:
                    if idempotent and max_retries:
                        logger.warning(
                            f"{circuit}: giving up after {attempt + 1} attempts: {e}"
                        )
                    raise
                delay = self._delay_for(e, attempt)
                logger.info(
                    f"{circuit}: attempt {attempt + 1} failed ({e.__class__.__name__}), "
                    f"retrying in {delay:.2f}s"
                )
                if self._metrics:
                    self._metrics.record_retry(circuit, e.__class__.__name__)
                await self._sleep(delay)
                attempt += 1
                continue
            except BaseException:
                # Cancellation or a programming error
                await breaker.release()
                raise
            await breaker.record_success()
            return result

    def _delay_for(self, error: IntegrationError, attempt: int) -> float:
        if error.retry_after is not None and error.retry_after > 0:
            return float(error.retry_after)
        return self.policy.compute_delay(attempt, self._rng)


__all__ = [
    "RetryPolicy",
    "CircuitState",
    "CircuitBreaker",
    "CircuitRegistry",
    "ResilienceDecorator",
]
