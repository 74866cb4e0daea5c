"""
Categorization providers for SortEngine.

This package provides a unified interface over the places a category
can come from:
- Prototypes: learned on-device centroids (private, instant)
- Ollama: local LLM server (free, privacy-focused)
- OpenAI: cloud chat completions (paid)
- Heuristic: extension table and folder hints (always available)

Use the ProviderFactory for creating configurable providers:
    from sortengine.providers import ProviderFactory
    provider = ProviderFactory.create("ollama", config)
"""

from .base import (
    CategorizationProvider,
    CategorizationRequest,
    CategorizationResult,
    FileSignature,
    ProviderTier,
)
from .factory import ProviderFactory
from .heuristic_provider import HeuristicProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider
from .prototype_provider import PrototypeProvider

__all__ = [
    "CategorizationProvider",
    "CategorizationRequest",
    "CategorizationResult",
    "FileSignature",
    "ProviderTier",
    "ProviderFactory",
    "HeuristicProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "PrototypeProvider",
]
