"""Model providers used by AI agent nodes."""

from flowrunner.providers.adapters import (
    GenerateParams,
    GenerateResult,
    ProviderAdapter,
    ProviderError,
)
from flowrunner.providers.registry import MODEL_REGISTRY, ModelConfig, ProviderRegistry

__all__ = [
    "GenerateParams",
    "GenerateResult",
    "MODEL_REGISTRY",
    "ModelConfig",
    "ProviderAdapter",
    "ProviderError",
    "ProviderRegistry",
]
