"""Model registry and provider lookup for AI agent nodes.

Workflow authors pick a model by registry id ("claude-sonnet", "gpt-4o");
the registry maps that id to a provider, the provider's model name and
default limits, and hands out a ready adapter when credentials exist.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

from flowrunner.providers.adapters import (
    ADAPTER_CLASSES,
    GenerateParams,
    GenerateResult,
    ProviderAdapter,
    ProviderError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelConfig:
    """Profile of a selectable model."""

    id: str
    provider: str
    model_name: str  # Identifier sent to the provider API
    display_name: str
    max_tokens: int
    default_temperature: float | None = None  # None: use the engine default
    is_default: bool = False


MODEL_REGISTRY: dict[str, ModelConfig] = {
    # Anthropic
    "claude-sonnet": ModelConfig(
        id="claude-sonnet",
        provider="anthropic",
        model_name="claude-sonnet-4-20250514",
        display_name="Claude Sonnet",
        max_tokens=8192,
        is_default=True,
    ),
    "claude-haiku": ModelConfig(
        id="claude-haiku",
        provider="anthropic",
        model_name="claude-3-5-haiku-20241022",
        display_name="Claude Haiku",
        max_tokens=8192,
    ),
    "claude-opus": ModelConfig(
        id="claude-opus",
        provider="anthropic",
        model_name="claude-3-opus-20240229",
        display_name="Claude Opus",
        max_tokens=4096,
    ),
    # OpenAI
    "gpt-4o": ModelConfig(
        id="gpt-4o",
        provider="openai",
        model_name="gpt-4o",
        display_name="GPT-4o",
        max_tokens=16384,
    ),
    "gpt-4o-mini": ModelConfig(
        id="gpt-4o-mini",
        provider="openai",
        model_name="gpt-4o-mini",
        display_name="GPT-4o Mini",
        max_tokens=16384,
    ),
    # Google
    "gemini-flash": ModelConfig(
        id="gemini-flash",
        provider="google",
        model_name="gemini-2.0-flash",
        display_name="Gemini Flash",
        max_tokens=8192,
    ),
    "gemini-pro": ModelConfig(
        id="gemini-pro",
        provider="google",
        model_name="gemini-1.5-pro",
        display_name="Gemini Pro",
        max_tokens=8192,
    ),
}

# Environment variables holding each provider's key, first match wins
PROVIDER_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    "openai": ("OPENAI_API_KEY",),
    "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
}


class ProviderRegistry:
    """Resolve models, check credentials and dispatch generation calls.

    Adapters passed in ``adapters`` take precedence over environment-built
    ones and count as available.
    """

    def __init__(
        self,
        models: Mapping[str, ModelConfig] | None = None,
        environ: Mapping[str, str] | None = None,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.models = dict(MODEL_REGISTRY if models is None else models)
        self._environ = os.environ if environ is None else environ
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})
        self._http_client = http_client

    def resolve_model(self, model_id: str) -> ModelConfig | None:
        return self.models.get(model_id)

    def _api_key(self, provider: str) -> str | None:
        for env_name in PROVIDER_ENV_KEYS.get(provider, ()):
            value = self._environ.get(env_name)
            if value:
                return value
        return None

    def is_provider_available(self, provider: str) -> bool:
        if provider in self._adapters:
            return True
        return provider in ADAPTER_CLASSES and self._api_key(provider) is not None

    def get_adapter(self, provider: str) -> ProviderAdapter:
        """Return (and cache) the adapter for a provider.

        Raises:
            ProviderError: Unknown provider or missing credentials
        """
        adapter = self._adapters.get(provider)
        if adapter is not None:
            return adapter
        adapter_cls = ADAPTER_CLASSES.get(provider)
        if adapter_cls is None:
            raise ProviderError(f"Unknown provider: {provider}")
        api_key = self._api_key(provider)
        if not api_key:
            raise ProviderError(
                f"Provider {provider} is not configured. "
                f"Set {' or '.join(PROVIDER_ENV_KEYS[provider])}."
            )
        adapter = adapter_cls(api_key, client=self._http_client)
        self._adapters[provider] = adapter
        return adapter

    async def generate_text(self, provider: str, params: GenerateParams) -> GenerateResult:
        adapter = self.get_adapter(provider)
        logger.debug(f"Generating with {provider}/{params.model} (max_tokens={params.max_tokens})")
        return await adapter.generate_text(params)

    def list_models(self) -> list[dict[str, object]]:
        """Model summaries with availability, for display."""
        return [
            {
                "id": m.id,
                "provider": m.provider,
                "displayName": m.display_name,
                "maxTokens": m.max_tokens,
                "isDefault": m.is_default,
                "available": self.is_provider_available(m.provider),
            }
            for m in self.models.values()
        ]
