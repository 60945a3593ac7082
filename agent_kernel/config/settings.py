"""Environment-bound configuration.

Settings load from environment variables and an optional .env file. Several
fields accept more than one variable name (e.g. ANTHROPIC_API_KEY or
MODEL_API_KEY).

Example:
    from agent_kernel.config.settings import get_settings

    settings = get_settings()  # Cached singleton
    loop_config = settings.loop_config()
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_kernel.models.loop import LoopConfig
from agent_kernel.models.resilience import CircuitBreakerConfig, RetryConfig


class Settings(BaseSettings):
    """Process-wide settings. Component configs are built from these."""

    # Model access
    anthropic_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ANTHROPIC_API_KEY", "MODEL_API_KEY"),
    )
    model: str = Field(
        default="claude-3-5-haiku-latest",
        validation_alias=AliasChoices("MODEL", "MODEL_ID"),
    )
    model_base_url: str = Field(
        default="https://api.anthropic.com",
        validation_alias=AliasChoices("MODEL_BASE_URL", "ANTHROPIC_BASE_URL"),
    )
    max_tokens: int = Field(default=1024, validation_alias=AliasChoices("MAX_TOKENS"))

    # Agent loop
    max_iterations: int = Field(
        default=6,
        ge=1,
        validation_alias=AliasChoices("MAX_ITERATIONS", "MAX_LOOPS"),
    )
    estimated_cost_per_call: float = Field(
        default=0.01,
        validation_alias=AliasChoices("ESTIMATED_COST_PER_CALL"),
    )
    context_char_budget: int = Field(
        default=8000,
        validation_alias=AliasChoices("CONTEXT_CHAR_BUDGET"),
    )
    organization: str = Field(
        default="the organization",
        validation_alias=AliasChoices("ORGANIZATION", "ORGANIZATION_NAME"),
    )

    # Credit protection
    daily_budget_limit: float = Field(default=50.0, validation_alias=AliasChoices("DAILY_BUDGET_LIMIT"))
    monthly_budget_limit: float = Field(default=500.0, validation_alias=AliasChoices("MONTHLY_BUDGET_LIMIT"))

    # Circuit breaker / retries
    breaker_failure_threshold: int = Field(
        default=5,
        validation_alias=AliasChoices("BREAKER_FAILURE_THRESHOLD", "CIRCUIT_FAILURE_THRESHOLD"),
    )
    breaker_success_threshold: int = Field(
        default=2,
        validation_alias=AliasChoices("BREAKER_SUCCESS_THRESHOLD", "CIRCUIT_SUCCESS_THRESHOLD"),
    )
    breaker_reset_timeout_ms: int = Field(
        default=30000,
        validation_alias=AliasChoices("BREAKER_RESET_TIMEOUT_MS", "CIRCUIT_RESET_TIMEOUT_MS"),
    )
    request_timeout_ms: int = Field(default=10000, validation_alias=AliasChoices("REQUEST_TIMEOUT_MS"))
    max_retries: int = Field(default=3, validation_alias=AliasChoices("MAX_RETRIES"))
    retry_base_delay_ms: int = Field(default=1000, validation_alias=AliasChoices("RETRY_BASE_DELAY_MS"))
    retry_max_delay_ms: int = Field(default=10000, validation_alias=AliasChoices("RETRY_MAX_DELAY_MS"))

    # Service
    storage_db_path: str = Field(
        default=":memory:",
        validation_alias=AliasChoices("STORAGE_DB_PATH", "DATABASE_PATH"),
    )
    execute_timeout_seconds: float = Field(
        default=300.0,
        validation_alias=AliasChoices("EXECUTE_TIMEOUT_SECONDS"),
    )
    orchestrator_workers: int = Field(default=4, validation_alias=AliasChoices("ORCHESTRATOR_WORKERS"))
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL"))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    def loop_config(self) -> LoopConfig:
        return LoopConfig(
            max_iterations=self.max_iterations,
            model=self.model,
            max_tokens=self.max_tokens,
            estimated_cost_per_call=self.estimated_cost_per_call,
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            success_threshold=self.breaker_success_threshold,
            reset_timeout_ms=self.breaker_reset_timeout_ms,
            request_timeout_ms=self.request_timeout_ms,
        )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            backoff_base_ms=self.retry_base_delay_ms,
            max_backoff_ms=self.retry_max_delay_ms,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
