"""
LLM provider adapters for JSON generation.

Every backend speaks the OpenAI chat-completions dialect:
- OpenAIProvider            api.openai.com, response_format=json_object
- OpenRouterProvider        openrouter.ai, attribution headers
- OpenAICompatibleProvider  any base URL (LM Studio, vLLM, Ollama...), json_schema
                            response format with tolerant content parsing

RoutingLLMProvider picks the adapter from the resolved runtime config.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from app.errors import ConfigurationError, LlmResponseError, ProviderTimeoutError
from app.services.ai_settings import (
    PROVIDER_COMPATIBLE,
    PROVIDER_OPENAI,
    PROVIDER_OPENROUTER,
    AiRuntimeConfig,
    env_runtime_config,
)
from app.settings import Settings, get_settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "Return a single valid JSON object only. No markdown, no prose, no extra keys."
OPENAI_URL = "https://api.openai.com/v1/chat/completions"
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
ERROR_BODY_PREVIEW_CHARS = 500

_JSON_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)


@dataclass
class LlmJsonResult:
    provider: str
    model: str
    tokens: int | None
    request_id: str | None
    data: Any


class LLMProvider(ABC):
    """Abstract LLM provider producing parsed JSON."""

    name: str

    @abstractmethod
    async def generate_json(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        config: AiRuntimeConfig | None = None,
        response_schema: dict | None = None,
    ) -> LlmJsonResult:
        ...


def _first_balanced_block(text: str) -> str | None:
    """First balanced {...} or [...] block, skipping brackets inside strings."""
    start = next((i for i, ch in enumerate(text) if ch in "{["), None)
    if start is None:
        return None
    closing = {"{": "}", "[": "]"}
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in closing:
            stack.append(closing[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
            if not stack:
                return text[start:index + 1]
    return None


def parse_json_tolerant(text: str) -> Any:
    """Parse model output that may wrap JSON in prose or markdown fences.

    Order: whole text -> ```json fence -> first balanced object/array.
    Raises ValueError when nothing parses.
    """
    candidates = [text]
    fence = _JSON_FENCE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    block = _first_balanced_block(text)
    if block:
        candidates.append(block)

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    raise ValueError("no JSON payload found in model output")


def _provider_error_message(body: str) -> str | None:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"].strip() or None
    return None


class ChatCompletionsProvider(LLMProvider):
    """Shared HTTP flow for OpenAI-style chat completion endpoints."""

    label = "LLM provider"

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self.transport = transport

    def _config(self, config: AiRuntimeConfig | None) -> AiRuntimeConfig:
        if config is not None and config.provider == self.name:
            return config
        return env_runtime_config(self.settings, self.name)

    async def _post(self, url: str, headers: dict[str, str], body: dict) -> httpx.Response:
        timeout_sec = self.settings.ai_http_timeout_sec
        try:
            async with httpx.AsyncClient(timeout=timeout_sec, transport=self.transport) as client:
                return await client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{self.label} request timed out after {int(timeout_sec * 1000)} ms") from exc
        except httpx.HTTPError as exc:
            raise LlmResponseError(f"{self.label} request failed: {exc}", "provider_request_failed") from exc

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        body = response.text
        detail = _provider_error_message(body) or body[:ERROR_BODY_PREVIEW_CHARS] or response.reason_phrase
        raise LlmResponseError(
            f"{self.label} request failed with status {response.status_code}: {detail}",
            "provider_request_failed",
            body,
        )

    def _parse_content(self, content: str) -> Any:
        try:
            return json.loads(content)
        except ValueError as exc:
            raise LlmResponseError(
                f"{self.label} returned invalid JSON payload", "invalid_json_payload", content
            ) from exc

    def _to_result(self, response: httpx.Response, model: str) -> LlmJsonResult:
        body = response.text
        try:
            payload = response.json()
        except ValueError as exc:
            raise LlmResponseError(f"{self.label} returned a non-JSON response", "invalid_json_payload", body) from exc

        content = None
        choices = payload.get("choices") if isinstance(payload, dict) else None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                content = message["content"].strip()
        if not content:
            raise LlmResponseError(f"{self.label} returned empty response", "empty_response", body)

        usage = payload.get("usage") or {}
        tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
        return LlmJsonResult(
            provider=self.name,
            model=payload.get("model") or model,
            tokens=tokens if isinstance(tokens, int) else None,
            request_id=response.headers.get("x-request-id"),
            data=self._parse_content(content),
        )

    @staticmethod
    def _messages(prompt: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]


class OpenAIProvider(ChatCompletionsProvider):
    name = PROVIDER_OPENAI
    label = "OpenAI"

    async def generate_json(self, prompt, *, max_tokens, temperature, config=None, response_schema=None):
        cfg = self._config(config)
        if not cfg.api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured for AI generation")
        response = await self._post(
            OPENAI_URL,
            {"Authorization": f"Bearer {cfg.api_key}"},
            {
                "model": cfg.model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": {"type": "json_object"},
                "messages": self._messages(prompt),
            },
        )
        self._raise_for_status(response)
        return self._to_result(response, cfg.model)


class OpenRouterProvider(ChatCompletionsProvider):
    name = PROVIDER_OPENROUTER
    label = "OpenRouter"

    async def generate_json(self, prompt, *, max_tokens, temperature, config=None, response_schema=None):
        cfg = self._config(config)
        if not cfg.api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is not configured for AI generation")
        response = await self._post(
            OPENROUTER_URL,
            {
                "Authorization": f"Bearer {cfg.api_key}",
                "HTTP-Referer": self.settings.openrouter_site_url,
                "X-Title": self.settings.openrouter_app_name,
            },
            {
                "model": cfg.model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "messages": self._messages(prompt),
            },
        )
        self._raise_for_status(response)
        return self._to_result(response, cfg.model)


class OpenAICompatibleProvider(ChatCompletionsProvider):
    name = PROVIDER_COMPATIBLE
    label = "OpenAI-compatible provider"

    def _parse_content(self, content: str) -> Any:
        try:
            return parse_json_tolerant(content)
        except ValueError as exc:
            raise LlmResponseError(
                f"{self.label} returned invalid JSON payload", "invalid_json_payload", content
            ) from exc

    async def generate_json(self, prompt, *, max_tokens, temperature, config=None, response_schema=None):
        cfg = self._config(config)
        if not cfg.model:
            raise ConfigurationError("LLM_MODEL is not configured for AI generation")
        if not cfg.base_url:
            raise ConfigurationError("LLM_BASE_URL is not configured for AI generation")

        url = f"{cfg.base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {cfg.api_key}"} if cfg.api_key else {}
        body: dict[str, Any] = {
            "model": cfg.model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": self._messages(prompt),
        }
        if response_schema:
            body["response_format"] = {"type": "json_schema", "json_schema": response_schema}

        response = await self._post(url, headers, body)
        # Many local servers reject json_schema; retry once in plain mode
        if response.status_code == 400 and "response_format" in body and "response_format" in response.text:
            logger.info(f"[llm] {cfg.base_url} rejected response_format, retrying without it")
            body.pop("response_format")
            response = await self._post(url, headers, body)

        self._raise_for_status(response)
        return self._to_result(response, cfg.model)


class RoutingLLMProvider(LLMProvider):
    """Dispatch to the adapter matching config.provider (default: openai)."""

    name = "router"

    def __init__(self, providers: dict[str, LLMProvider], settings: Settings | None = None):
        self.providers = providers
        self.settings = settings or get_settings()

    def select(self, config: AiRuntimeConfig | None) -> LLMProvider:
        provider_name = config.provider if config else None
        return self.providers.get(provider_name) or self.providers[PROVIDER_OPENAI]

    async def generate_json(self, prompt, *, max_tokens, temperature, config=None, response_schema=None):
        if config is None:
            config = env_runtime_config(self.settings)
        return await self.select(config).generate_json(
            prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            config=config,
            response_schema=response_schema,
        )


def build_llm_provider(
    settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None
) -> RoutingLLMProvider:
    settings = settings or get_settings()
    adapters: list[ChatCompletionsProvider] = [
        OpenAIProvider(settings, transport),
        OpenRouterProvider(settings, transport),
        OpenAICompatibleProvider(settings, transport),
    ]
    return RoutingLLMProvider({adapter.name: adapter for adapter in adapters}, settings)
