"""
Model API client — the Agent Loop's only path to a language model.

The loop depends on the ModelClient protocol; AnthropicModelClient is the
production implementation over the Messages API. Calls are made through the
Resilient Caller, so this module only translates and classifies errors:
  - missing / malformed credentials  -> ConfigurationError (never retried)
  - non-2xx responses                -> ServiceError(status_code)
  - network failures propagate as httpx.TransportError
"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import httpx

from agent_kernel.errors import ConfigurationError, ServiceError
from agent_kernel.models.loop import ModelRequest, ModelResponse, Usage
from agent_kernel.models.tools import ToolInvocation

logger = logging.getLogger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


class ModelClient(Protocol):
    """Protocol for model access — pluggable backend."""

    def complete(self, request: ModelRequest) -> ModelResponse: ...


def parse_messages_response(payload: dict) -> ModelResponse:
    """Split a Messages API response into text and tool invocations."""
    content: List[dict] = payload.get("content") or []
    text = [block.get("text", "") for block in content if block.get("type") == "text"]
    invocations = [
        ToolInvocation(id=block.get("id", ""), name=block.get("name", ""), input=block.get("input") or {})
        for block in content
        if block.get("type") == "tool_use"
    ]
    usage = payload.get("usage") or {}
    return ModelResponse(
        text=text,
        tool_invocations=invocations,
        usage=Usage(
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            api_calls=1,
        ),
        raw_content=content,
    )


class AnthropicModelClient:
    """httpx client for the Anthropic Messages API."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = ANTHROPIC_BASE_URL,
        timeout: float = 20.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.Client(timeout=timeout)

    def _validate_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("API key required for provider: anthropic")
        if not self.api_key.startswith("sk-ant-"):
            raise ConfigurationError("Valid Anthropic API key required (sk-ant-...)")
        return self.api_key

    def complete(self, request: ModelRequest) -> ModelResponse:
        api_key = self._validate_key()

        response = self._client.post(
            f"{self.base_url}/v1/messages",
            headers={
                "content-type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            json={
                "model": request.model,
                "max_tokens": request.max_tokens,
                "system": request.system_prompt,
                "messages": request.messages,
                "tools": request.tools,
            },
        )

        if response.status_code >= 400:
            body = response.text[:500]
            if response.status_code in (401, 403):
                raise ConfigurationError(f"Model API rejected credentials ({response.status_code}): {body}")
            raise ServiceError(f"Model API error {response.status_code}: {body}", response.status_code)

        return parse_messages_response(response.json())

    def close(self) -> None:
        self._client.close()
