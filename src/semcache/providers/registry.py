"""Provider registry for routing requests to the appropriate LLM provider."""

import logging

from semcache.providers.base import LLMProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of LLM providers for model-based routing."""

    def __init__(self) -> None:
        self._providers: dict[str, LLMProvider] = {}
        self._model_map: dict[str, str] = {}

    def __len__(self) -> int:
        """Return the number of registered providers."""
        return len(self._providers)

    def __contains__(self, name: str) -> bool:
        """Return True if a provider with this name is registered."""
        return name in self._providers

    def register(self, provider: LLMProvider) -> None:
        """Register a provider."""
        if provider.name in self._providers:
            logger.warning("Provider '%s' already registered, overwriting", provider.name)
            # Drop the old provider's exact model ids
            for model, prov_name in list(self._model_map.items()):
                if prov_name == provider.name:
                    del self._model_map[model]

        self._providers[provider.name] = provider
        for model in provider.models:
            self._model_map[model] = provider.name

        logger.info(
            "Registered provider '%s' with %d model(s)",
            provider.name,
            len(provider.models),
        )

    def get_provider(self, name: str) -> LLMProvider | None:
        """Look up by provider name, return None if not found."""
        return self._providers.get(name)

    def get_provider_for_model(self, model: str) -> LLMProvider | None:
        """Exact model id first, then the provider with the longest matching family prefix."""
        prov_name = self._model_map.get(model)
        if prov_name is not None:
            return self._providers.get(prov_name)

        best: tuple[int, LLMProvider] | None = None
        for provider in self._providers.values():
            for prefix in provider.model_prefixes:
                if model.startswith(prefix) and (best is None or len(prefix) > best[0]):
                    best = (len(prefix), provider)
        return best[1] if best else None

    def list_available(self) -> list[LLMProvider]:
        """Return all providers where is_available() is True."""
        return [p for p in self._providers.values() if p.is_available()]

    def list_models(self) -> list[str]:
        """Return all registered model names."""
        return list(self._model_map.keys())

    def list_providers(self) -> list[LLMProvider]:
        """Return all registered providers, available or not."""
        return list(self._providers.values())
