"""Language-model backends: a local Ollama server (httpx) or Claude (anthropic SDK)."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import anthropic
import httpx
from anthropic import AsyncAnthropic
from anthropic.types import TextBlock, ToolUseBlock

from meeting_pipeline.config import Settings
from meeting_pipeline.errors import ConfigError, NetworkError, RemoteError, ServiceTimeoutError
from meeting_pipeline.pipeline_config import LlmProvider, ServiceConfig

API_GENERATE_ENDPOINT = "/api/generate"
API_TAGS_ENDPOINT = "/api/tags"

# Tool Claude is forced to call when a reply schema is requested.
STRUCTURED_TOOL_NAME = "record_summary"


@dataclass(frozen=True)
class CompletionRequest:
    """One prompt for the language model."""

    system: str
    prompt: str
    schema: dict[str, Any] | None = None  # JSON schema the reply must follow


class OllamaBackend:
    """Ollama ``/api/generate`` over httpx (non-streaming)."""

    name = "ollama"

    def __init__(
        self,
        endpoint: str,
        model: str,
        context_size: int = 8096,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.context_size = context_size
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, f"{self.endpoint}{path}", **kwargs)
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError(f"Ollama request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Failed to send request to Ollama: {exc}") from exc

        if response.status_code != 200:
            raise RemoteError(
                f"Ollama returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def send(self, request: CompletionRequest) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "system": request.system,
            "prompt": request.prompt,
            "stream": False,
            "options": {"num_ctx": self.context_size},
        }
        if request.schema is not None:
            payload["format"] = request.schema
        response = await self._request("POST", API_GENERATE_ENDPOINT, json=payload)
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteError(f"Failed to parse Ollama response: {exc}") from exc

        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise RemoteError("Ollama response has no 'response' field")
        return text

    async def ping(self) -> None:
        await self._request("GET", API_TAGS_ENDPOINT)


class AnthropicBackend:
    """Claude Messages API via the async anthropic SDK (SDK retries disabled)."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        client: AsyncAnthropic | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or AsyncAnthropic(api_key=api_key, base_url=base_url, max_retries=0)

    async def send(self, request: CompletionRequest) -> str:
        kwargs: dict[str, Any] = {}
        if request.schema is not None:
            kwargs["tools"] = [
                {
                    "name": STRUCTURED_TOOL_NAME,
                    "description": "Record the summary in the required structure.",
                    "input_schema": request.schema,
                }
            ]
            kwargs["tool_choice"] = {"type": "tool", "name": STRUCTURED_TOOL_NAME}
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=request.system,
                messages=[{"role": "user", "content": request.prompt}],
                **kwargs,
            )
        except anthropic.APITimeoutError as exc:
            raise ServiceTimeoutError(f"Claude request timed out: {exc}") from exc
        except anthropic.APIConnectionError as exc:
            raise NetworkError(f"Failed to reach Claude: {exc}") from exc
        except anthropic.APIStatusError as exc:
            raise RemoteError(f"Claude returned {exc.status_code}: {exc}", exc.status_code) from exc

        if request.schema is not None:
            for item in response.content:
                if isinstance(item, ToolUseBlock) and item.name == STRUCTURED_TOOL_NAME:
                    data = item.input
                    return data if isinstance(data, str) else json.dumps(data)
            raise RemoteError(f"Claude did not call the {STRUCTURED_TOOL_NAME} tool")

        # Plain-text requests: the first block should be a TextBlock.
        block = response.content[0] if response.content else None
        if not isinstance(block, TextBlock):
            raise RemoteError(f"Expected TextBlock from Claude, got {type(block).__name__}")
        return block.text

    async def ping(self) -> None:
        try:
            await self._client.models.list(limit=1)
        except anthropic.APITimeoutError as exc:
            raise ServiceTimeoutError(str(exc)) from exc
        except anthropic.APIConnectionError as exc:
            raise NetworkError(str(exc)) from exc
        except anthropic.APIStatusError as exc:
            raise RemoteError(str(exc), exc.status_code) from exc


def build_llm_backend(settings: Settings, config: ServiceConfig) -> OllamaBackend | AnthropicBackend:
    """Instantiate the configured language-model backend."""
    try:
        provider = LlmProvider(settings.llm_provider)
    except ValueError as exc:
        raise ConfigError(f"Unknown LLM provider: {settings.llm_provider!r}") from exc

    if provider is LlmProvider.ANTHROPIC:
        if not settings.anthropic_api_key:
            raise ConfigError("ANTHROPIC_API_KEY is required for the anthropic provider")
        return AnthropicBackend(
            api_key=settings.anthropic_api_key,
            model=config.model,
            base_url=config.endpoint,
        )

    return OllamaBackend(
        endpoint=config.endpoint,
        model=config.model,
        context_size=settings.llm_context_size,
        timeout=config.timeout_seconds,
    )
