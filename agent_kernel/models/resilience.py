"""Circuit breaker and retry configuration."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerConfig(BaseModel):
    """Configuration for one per-service circuit breaker."""

    failure_threshold: int = Field(ge=1, default=5)
    success_threshold: int = Field(ge=1, default=2)
    reset_timeout_ms: int = Field(ge=0, default=30_000)
    request_timeout_ms: int = Field(ge=1, default=10_000)


class RetryConfig(BaseModel):
    """Configuration for the Resilient Caller."""

    max_retries: int = Field(ge=0, default=3)
    backoff_base_ms: int = Field(ge=0, default=1_000)
    max_backoff_ms: int = Field(ge=0, default=10_000)
    jitter: float = Field(ge=0, lt=1, default=0.2)


class CircuitStats(BaseModel):
    """Read-only view of a breaker for observability."""

    name: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    total_requests: int
    rejected_requests: int
    failed_requests: int
    circuit_trips: int
    last_transition_at: Optional[datetime] = None
    last_error: Optional[str] = None
