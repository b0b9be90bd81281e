from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .config import get_settings
from .models import Completion, ToolCall

logger = logging.getLogger("clara-chat")


class GatewayError(RuntimeError):
    """Non-2xx, malformed, or failed response from the chat-completion gateway."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayRateLimited(GatewayError):
    """Gateway answered 429."""


class GatewayPaymentRequired(GatewayError):
    """Gateway answered 402 (credits exhausted on the gateway account)."""


@dataclass
class ModelParams:
    model: str
    temperature: float
    max_tokens: int


class BaseProvider:
    """
    Chat-completion provider interface.

    `complete` is synchronous like the rest of the request pipeline; each
    network call carries its own timeout.
    """

    def complete(
        self,
        system_prompt: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        params: ModelParams,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Completion:  # pragma: no cover - interface only
        raise NotImplementedError


class StubProvider(BaseProvider):
    """
    Deterministic provider used when no gateway credentials are configured.

    Never requests a tool call.
    """

    def complete(
        self,
        system_prompt: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        params: ModelParams,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Completion:
        last_user = next(
            (m.get("content", "") for m in reversed(list(messages)) if m.get("role") == "user"),
            "",
        )
        content = f"stub reply to: {last_user}" if last_user else "stub reply"
        return Completion(content=content, raw_message={"role": "assistant", "content": content})


def build_request_body(
    system_prompt: str,
    messages: Sequence[Mapping[str, Any]],
    *,
    params: ModelParams,
    tools: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": params.model,
        "messages": [{"role": "system", "content": system_prompt}, *[dict(m) for m in messages]],
        "temperature": params.temperature,
        "max_tokens": params.max_tokens,
    }
    if tools:
        body["tools"] = tools
    return body


def parse_completion(data: Mapping[str, Any]) -> Completion:
    """Extract the assistant message from an OpenAI-style response body."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise GatewayError("AI gateway returned no choices") from exc

    tool_calls: List[ToolCall] = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        tool_calls.append(
            ToolCall(
                id=str(raw.get("id") or ""),
                name=str(function.get("name") or ""),
                arguments=function.get("arguments") or "{}",
            )
        )
    return Completion(content=message.get("content"), tool_calls=tool_calls, raw_message=dict(message))


def first_tool_call(completion: Completion) -> Optional[ToolCall]:
    """Only the first requested tool call is executed; the rest are logged and dropped."""
    if not completion.tool_calls:
        return None
    first = completion.tool_calls[0]
    if len(completion.tool_calls) > 1:
        logger.warning(
            "model requested %s tool calls; executing %s, ignoring %s",
            len(completion.tool_calls),
            first.name,
            [c.name for c in completion.tool_calls[1:]],
        )
    return first


class ChatCompletionsProvider(BaseProvider):
    """Any OpenAI-compatible /chat/completions endpoint."""

    url: str = ""

    def __init__(
        self,
        api_key: str,
        *,
        model: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        # When set, overrides the model stored in the agent configuration.
        self.model = model
        self.timeout = timeout
        self._client = client

    def _post(self, body: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self._client is not None:
            return self._client.post(self.url, headers=headers, json=body, timeout=self.timeout)
        return httpx.post(self.url, headers=headers, json=body, timeout=self.timeout)

    def complete(
        self,
        system_prompt: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        params: ModelParams,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Completion:
        if self.model:
            params = ModelParams(model=self.model, temperature=params.temperature, max_tokens=params.max_tokens)
        body = build_request_body(system_prompt, messages, params=params, tools=tools)

        try:
            resp = self._post(body)
        except httpx.TimeoutException as exc:
            raise GatewayError(f"AI gateway timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"AI gateway request failed: {exc}") from exc

        if resp.status_code == 429:
            raise GatewayRateLimited("Rate limit exceeded. Please try again later.", status_code=429)
        if resp.status_code == 402:
            raise GatewayPaymentRequired("Service unavailable. Please contact support.", status_code=402)
        if resp.status_code < 200 or resp.status_code >= 300:
            logger.error("AI gateway error status=%s body=%s", resp.status_code, resp.text[:500])
            raise GatewayError(f"AI gateway error: {resp.status_code}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise GatewayError("AI gateway returned invalid JSON") from exc
        return parse_completion(data)


class GatewayProvider(ChatCompletionsProvider):
    """Hosted AI gateway used in production (one key, several model families)."""

    url = "https://ai.gateway.lovable.dev/v1/chat/completions"


class OpenAIProvider(ChatCompletionsProvider):
    url = "https://api.openai.com/v1/chat/completions"


class OpenRouterProvider(ChatCompletionsProvider):
    url = "https://openrouter.ai/api/v1/chat/completions"


def build_provider() -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = get_settings()
    timeout = settings.gateway_timeout_seconds

    if settings.provider_name in {"lovable", "gateway"}:
        api_key = _get_env("LOVABLE_API_KEY")
        if api_key:
            return GatewayProvider(api_key=api_key, timeout=timeout)
    elif settings.provider_name == "openrouter":
        api_key = _get_env("OPENROUTER_API_KEY")
        if api_key:
            return OpenRouterProvider(api_key=api_key, model=_get_env("OPENROUTER_MODEL"), timeout=timeout)
    elif settings.provider_name == "openai":
        api_key = _get_env("OPENAI_API_KEY")
        if api_key:
            return OpenAIProvider(api_key=api_key, model=_get_env("OPENAI_MODEL"), timeout=timeout)

    if settings.provider_name != "stub":
        logger.warning("provider=%s has no API key configured; using stub provider", settings.provider_name)
    return StubProvider()


def _get_env(name: str) -> Optional[str]:
    return os.getenv(name) or None
