"""
Circuit Breaker — failure isolation for calls to an external service.

States:
  CLOSED    requests pass through, consecutive failures counted
  OPEN      requests rejected immediately, the wrapped call is never made
  HALF_OPEN one trial request at a time is let through to test recovery

Behavioral Contract:
- CLOSED -> OPEN after failure_threshold consecutive failures
- OPEN -> HALF_OPEN once reset_timeout_ms has elapsed since opening
  (checked lazily, on the next call attempt)
- HALF_OPEN -> CLOSED after success_threshold consecutive successes
- HALF_OPEN -> OPEN on any failure, restarting the reset timeout
- Timeouts, network errors and 5xx responses are failures. 4xx responses
  propagate to the caller but do not count against the circuit.
- Every admitted call carries the generation it was admitted under. An
  outcome from an older generation is counted in the stats but never
  moves the state machine, so only the HALF_OPEN trial decides recovery.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Callable, Dict, NamedTuple, Optional, TypeVar

import httpx

from agent_kernel.errors import CircuitOpenError, RequestTimeoutError, ServiceError
from agent_kernel.models.resilience import CircuitBreakerConfig, CircuitState, CircuitStats

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_circuit_failure(error: BaseException) -> bool:
    """Whether an error signals service degradation rather than a caller bug."""
    if isinstance(error, (RequestTimeoutError, TimeoutError)):
        return True
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, ServiceError):
        return not error.is_client_error
    return False


class Admission(NamedTuple):
    """Ticket handed to an admitted call."""
    generation: int
    is_trial: bool


class CircuitBreaker:
    """
    Per-service breaker. All state lives behind a single lock; the wrapped
    call itself runs outside the lock on a worker thread so it can be
    abandoned when it exceeds the request timeout.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 8,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"circuit-{name}"
        )

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._generation = 0                # Bumped on every transition
        self._last_transition_at: Optional[datetime] = None
        self._last_error: Optional[str] = None

        self._total_requests = 0
        self._rejected_requests = 0
        self._failed_requests = 0
        self._circuit_trips = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def execute(self, fn: Callable[[], T]) -> T:
        """Run fn under breaker protection. Raises CircuitOpenError without calling fn while OPEN."""
        admission = self._acquire()
        try:
            result = self._call_with_timeout(fn)
        except Exception as e:
            self._record_outcome(admission, error=e)
            raise
        self._record_outcome(admission, error=None)
        return result

    def stats(self) -> CircuitStats:
        with self._lock:
            return CircuitStats(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                consecutive_successes=self._consecutive_successes,
                total_requests=self._total_requests,
                rejected_requests=self._rejected_requests,
                failed_requests=self._failed_requests,
                circuit_trips=self._circuit_trips,
                last_transition_at=self._last_transition_at,
                last_error=self._last_error,
            )

    def reset(self) -> None:
        """Manually close the circuit."""
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._last_error = None

    def force_open(self) -> None:
        """Manually trip the circuit."""
        with self._lock:
            self._transition(CircuitState.OPEN)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # --- Internals (call with the lock held unless noted) ---

    def _acquire(self) -> Admission:
        with self._lock:
            self._total_requests += 1

            if self._state == CircuitState.OPEN:
                elapsed_ms = (self._clock() - self._opened_at) * 1000
                if elapsed_ms >= self.config.reset_timeout_ms:
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    self._rejected_requests += 1
                    raise CircuitOpenError(self.name)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self._rejected_requests += 1
                    raise CircuitOpenError(self.name)
                self._trial_in_flight = True
                return Admission(self._generation, is_trial=True)

            return Admission(self._generation, is_trial=False)

    def _call_with_timeout(self, fn: Callable[[], T]) -> T:
        # Runs without the lock.
        timeout_s = self.config.request_timeout_ms / 1000
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=timeout_s)
        except FutureTimeoutError:
            future.cancel()
            raise RequestTimeoutError(
                f"Request to {self.name} exceeded {self.config.request_timeout_ms}ms"
            ) from None

    def _record_outcome(self, admission: Admission, error: Optional[BaseException]) -> None:
        with self._lock:
            failure = error is not None and is_circuit_failure(error)

            if admission.generation != self._generation:
                # Admitted before the last transition: stats only.
                if failure:
                    self._failed_requests += 1
                    self._last_error = str(error) or type(error).__name__
                logger.debug(
                    "Circuit %s ignored outcome from generation %d (now %d)",
                    self.name, admission.generation, self._generation,
                )
                return

            if admission.is_trial:
                self._trial_in_flight = False

            if error is None:
                self._on_success()
            elif failure:
                self._on_failure(error)
            elif admission.is_trial:
                # The service answered; only the request was bad.
                self._on_success()

    def _on_success(self) -> None:
        self._consecutive_failures = 0
        self._consecutive_successes += 1
        if (
            self._state == CircuitState.HALF_OPEN
            and self._consecutive_successes >= self.config.success_threshold
        ):
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, error: BaseException) -> None:
        self._failed_requests += 1
        self._consecutive_successes = 0
        self._consecutive_failures += 1
        self._last_error = str(error) or type(error).__name__

        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._state == CircuitState.CLOSED
            and self._consecutive_failures >= self.config.failure_threshold
        ):
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._generation += 1
        self._trial_in_flight = False
        self._last_transition_at = datetime.utcnow()

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._circuit_trips += 1
        elif new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._consecutive_successes = 0
            self._opened_at = None
        elif new_state == CircuitState.HALF_OPEN:
            self._consecutive_successes = 0

        logger.info(
            "Circuit %s transition: %s -> %s", self.name, old_state.value, new_state.value
        )


class CircuitRegistry:
    """One shared breaker per downstream service."""

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._circuits: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        with self._lock:
            if name not in self._circuits:
                self._circuits[name] = CircuitBreaker(
                    name, config or self._default_config, clock=self._clock
                )
            return self._circuits[name]

    def status(self) -> Dict[str, dict]:
        with self._lock:
            circuits = list(self._circuits.values())
        return {c.name: c.stats().model_dump(mode="json") for c in circuits}

    def reset_all(self) -> None:
        with self._lock:
            circuits = list(self._circuits.values())
        for circuit in circuits:
            circuit.reset()
