"""
Provider factory.

Single entry point to instantiate configurable providers by name, using
a class-level registry. The on-device prototype provider needs live
engine objects and is wired by the engine directly.
"""

import logging
from typing import Dict, List, Optional, Type

from .base import CategorizationProvider

logger = logging.getLogger(__name__)


class ProviderFactory:
    """
    Factory for creating and managing provider instances.

    Features:
    - Registry pattern for provider classes
    - Instance caching per (name, config)
    """

    _providers: Dict[str, Type[CategorizationProvider]] = {}
    _instances: Dict[str, CategorizationProvider] = {}

    @classmethod
    def register(cls, name: str, provider_class: Type[CategorizationProvider]) -> None:
        """
        Register a provider class.

        Args:
            name: Provider identifier (e.g., 'ollama', 'openai')
            provider_class: CategorizationProvider subclass taking a config dict
        """
        cls._providers[name] = provider_class
        logger.debug(f"Registered provider: {name}")

    @classmethod
    def unregister(cls, name: str) -> bool:
        if name not in cls._providers:
            return False
        del cls._providers[name]
        for key in [k for k in cls._instances if k == name or k.startswith(f"{name}:")]:
            del cls._instances[key]
        return True

    @classmethod
    def create(
        cls, name: str, config: Optional[Dict] = None, use_cache: bool = True
    ) -> CategorizationProvider:
        """
        Create or retrieve a provider instance.

        Raises:
            ValueError: If provider name is unknown or the provider rejects its config
        """
        cache_key = f"{name}:{sorted((config or {}).items())!r}" if config else name
        if use_cache and cache_key in cls._instances:
            return cls._instances[cache_key]

        if name not in cls._providers:
            available = list(cls._providers.keys())
            raise ValueError(f"Unknown provider: '{name}'. Available: {available}")

        instance = cls._providers[name](config or {})
        if use_cache:
            cls._instances[cache_key] = instance
        logger.info(f"Created provider instance: {name}")
        return instance

    @classmethod
    def create_configured(cls, providers_config: Dict[str, Dict]) -> List[CategorizationProvider]:
        """
        Instantiate every provider named in a `providers` config section.

        Providers that fail to initialise (e.g. missing API key) are logged
        and skipped.
        """
        created = []
        for name, config in providers_config.items():
            if config.get("enabled", True) is False:
                continue
            try:
                created.append(cls.create(name, config, use_cache=False))
            except ValueError as e:
                logger.warning(f"Skipping provider '{name}': {e}")
        return created

    @classmethod
    def list_providers(cls) -> List[str]:
        return list(cls._providers.keys())

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return name in cls._providers

    @classmethod
    def clear_cache(cls) -> None:
        cls._instances.clear()


def _auto_register_providers() -> None:
    """Register built-in providers."""
    from .heuristic_provider import HeuristicProvider
    from .ollama_provider import OllamaProvider
    from .openai_provider import OpenAIProvider

    ProviderFactory.register("heuristic", HeuristicProvider)
    ProviderFactory.register("ollama", OllamaProvider)
    ProviderFactory.register("openai", OpenAIProvider)


_auto_register_providers()
