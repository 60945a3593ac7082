"""Tests for environment-bound settings and logging setup."""

import logging

import pytest

from agent_kernel.config.settings import Settings
from agent_kernel.utils.logging_utils import setup_logging


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # Keep a developer's .env out of the way
    monkeypatch.chdir(tmp_path)
    for name in ("ANTHROPIC_API_KEY", "MODEL_API_KEY", "MAX_ITERATIONS", "MAX_LOOPS", "DAILY_BUDGET_LIMIT"):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.anthropic_api_key is None
        assert settings.max_iterations == 6
        assert settings.context_char_budget == 8000
        assert settings.daily_budget_limit == 50.0

    def test_alias_environment_variables(self, monkeypatch):
        monkeypatch.setenv("MODEL_API_KEY", "sk-ant-from-env")
        monkeypatch.setenv("MAX_LOOPS", "3")

        settings = Settings()

        assert settings.anthropic_api_key == "sk-ant-from-env"
        assert settings.max_iterations == 3

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("DAILY_BUDGET_LIMIT=12.5\nUNRELATED=1\n")
        assert Settings().daily_budget_limit == 12.5

    def test_component_configs(self):
        settings = Settings(MAX_ITERATIONS=4, MAX_RETRIES=1, RETRY_BASE_DELAY_MS=250,
                            BREAKER_FAILURE_THRESHOLD=2, REQUEST_TIMEOUT_MS=500)

        assert settings.loop_config().max_iterations == 4
        retry = settings.retry_config()
        assert (retry.max_retries, retry.backoff_base_ms) == (1, 250)
        breaker = settings.breaker_config()
        assert (breaker.failure_threshold, breaker.request_timeout_ms) == (2, 500)


class TestLogging:
    def test_setup_logging_is_idempotent(self):
        logger = setup_logging("DEBUG")
        setup_logging("DEBUG")

        assert logger.name == "agent_kernel"
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert logger.propagate is False
