"""
Resilient Caller — bounded retries with exponential backoff, inside a circuit breaker.

Behavioral Contract:
- At most max_retries + 1 attempts per call
- Delay before retry n (0-based) is base * 2^n, jittered by +/- jitter
  and capped at max_backoff_ms
- Only transient faults are retried: timeouts, transport errors and 5xx
  responses. Anything else (an open circuit, 4xx, configuration errors,
  a malformed response) is raised on the first attempt
- When retries are exhausted, the last error is raised
- Holds no per-call state, so one caller may be shared across threads
"""

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from agent_kernel.models.resilience import RetryConfig
from agent_kernel.resilience.circuit_breaker import CircuitBreaker, is_circuit_failure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Transient faults are exactly the ones that count against a circuit."""
    return is_circuit_failure(error)


def compute_backoff_ms(attempt: int, config: RetryConfig, rng: Callable[[], float]) -> float:
    """Delay before retry number `attempt` (0-based)."""
    base = config.backoff_base_ms * (2 ** attempt)
    jitter = base * config.jitter * (2 * rng() - 1)
    return min(base + jitter, config.max_backoff_ms)


class ResilientCaller:
    """Wraps a CircuitBreaker and retries transient failures."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.breaker = breaker
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng

    def call(self, fn: Callable[[], T]) -> T:
        attempt = 0

        while True:
            try:
                return self.breaker.execute(fn)
            except Exception as e:
                if not is_retryable(e) or attempt >= self.config.max_retries:
                    raise

                delay_ms = compute_backoff_ms(attempt, self.config, self._rng)
                logger.warning(
                    "Call via %s failed (%s), retry %d/%d in %.0fms",
                    self.breaker.name, e, attempt + 1, self.config.max_retries, delay_ms,
                )
                self._sleep(delay_ms / 1000)
                attempt += 1
