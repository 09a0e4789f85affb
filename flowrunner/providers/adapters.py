"""Text-generation adapters for hosted model providers.

Each adapter speaks one provider's REST API through httpx and normalizes the
answer into a GenerateResult (text plus token counts). Adapters hold no
per-call state, so one instance can serve concurrent runs.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0

_CODE_FENCE_START = re.compile(r"^```(?:json)?\n?")
_CODE_FENCE_END = re.compile(r"\n?```$")


class ProviderError(Exception):
    """Provider call failed or returned an unusable response."""

    pass


@dataclass
class GenerateParams:
    """One text-generation request."""

    model: str  # Provider-side model name
    user_prompt: str
    system_prompt: str = ""
    max_tokens: int = 2048
    temperature: float = 0.7


@dataclass
class GenerateResult:
    """Normalized provider answer."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw_response: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def strip_code_fence(text: str) -> str:
    """Remove a Markdown code fence wrapped around the whole answer."""
    if text.startswith("```"):
        return _CODE_FENCE_END.sub("", _CODE_FENCE_START.sub("", text, count=1), count=1)
    return text


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", error))
    if error:
        return str(error)
    return response.text[:500]


class ProviderAdapter(ABC):
    """Base class: POSTs a JSON payload and parses the provider's answer."""

    provider: str = ""

    def __init__(self, api_key: str, client: httpx.AsyncClient | None = None):
        if not api_key:
            raise ProviderError(f"API key for provider '{self.provider}' is required")
        self.api_key = api_key
        self._client = client

    @abstractmethod
    def _request(self, params: GenerateParams) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, json payload) for a request."""

    @abstractmethod
    def _parse(self, data: dict[str, Any]) -> GenerateResult:
        """Turn the decoded JSON answer into a GenerateResult."""

    async def generate_text(self, params: GenerateParams) -> GenerateResult:
        url, headers, payload = self._request(params)
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
                    response = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.provider} request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"{self.provider} API error {response.status_code}: {_error_message(response)}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.provider} returned invalid JSON") from e
        return self._parse(data)


class AnthropicAdapter(ProviderAdapter):
    """Claude models via the Messages API."""

    provider = "anthropic"
    url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def _request(self, params: GenerateParams) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }
        payload: dict[str, Any] = {
            "model": params.model,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "messages": [{"role": "user", "content": params.user_prompt}],
        }
        if params.system_prompt:
            payload["system"] = params.system_prompt
        return self.url, headers, payload

    def _parse(self, data: dict[str, Any]) -> GenerateResult:
        blocks = data.get("content") or []
        text = next((b.get("text", "") for b in blocks if b.get("type") == "text"), "")
        usage = data.get("usage") or {}
        return GenerateResult(
            content=strip_code_fence(text),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            raw_response=data,
        )


class OpenAIAdapter(ProviderAdapter):
    """GPT models via the Chat Completions API."""

    provider = "openai"
    url = "https://api.openai.com/v1/chat/completions"

    def _request(self, params: GenerateParams) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        messages = []
        if params.system_prompt:
            messages.append({"role": "system", "content": params.system_prompt})
        messages.append({"role": "user", "content": params.user_prompt})
        payload = {
            "model": params.model,
            "messages": messages,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
        }
        return self.url, headers, payload

    def _parse(self, data: dict[str, Any]) -> GenerateResult:
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError("openai API returned no choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return GenerateResult(
            content=content,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            raw_response=data,
        )


class GoogleAdapter(ProviderAdapter):
    """Gemini models via the generateContent API."""

    provider = "google"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def _request(self, params: GenerateParams) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = f"{self.base_url}/{params.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": params.user_prompt}]}],
            "generationConfig": {
                "maxOutputTokens": params.max_tokens,
                "temperature": params.temperature,
            },
        }
        if params.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": params.system_prompt}]}
        return url, headers, payload

    def _parse(self, data: dict[str, Any]) -> GenerateResult:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError("google API returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        usage = data.get("usageMetadata") or {}
        return GenerateResult(
            content="".join(p.get("text", "") for p in parts),
            input_tokens=usage.get("promptTokenCount", 0),
            output_tokens=usage.get("candidatesTokenCount", 0),
            raw_response=data,
        )


ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    AnthropicAdapter.provider: AnthropicAdapter,
    OpenAIAdapter.provider: OpenAIAdapter,
    GoogleAdapter.provider: GoogleAdapter,
}
