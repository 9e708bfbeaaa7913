"""Provider gateway: one completion per cache miss, with a common error taxonomy."""

import asyncio
import logging

from semcache.core.metrics import metrics, semcache_metrics
from semcache.domain.exceptions import (
    CircuitOpenError,
    ModelUnsupportedError,
    ProviderAuthError,
    ProviderError,
    ProviderTimeoutError,
)
from semcache.domain.models import Completion, Message
from semcache.providers.base import LLMProvider
from semcache.providers.registry import ProviderRegistry
from semcache.services.cache_store import CacheStore

logger = logging.getLogger(__name__)


class ProviderGateway:
    """Routes a completion to the provider serving the target model.

    The tenant's stored credential is used when present, otherwise the
    service-wide key for that provider. Calls are never retried: a failed
    completion is returned to the caller as an error and nothing is cached.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: CacheStore,
        timeout_seconds: float = 30.0,
        fallback_keys: dict[str, str] | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._timeout = timeout_seconds
        self._fallback_keys = fallback_keys or {}

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def supports(self, model: str) -> bool:
        return self._registry.get_provider_for_model(model) is not None

    def provider_for(self, model: str) -> LLMProvider:
        provider = self._registry.get_provider_for_model(model)
        if provider is None:
            raise ModelUnsupportedError(f"No provider serves model {model!r}", provider="none")
        return provider

    async def _resolve_key(self, project_id: str, provider: LLMProvider) -> str:
        credential = await self._store.get_credential(project_id, provider.name)
        if credential is not None:
            return credential.secret
        fallback = self._fallback_keys.get(provider.name)
        if fallback:
            return fallback
        raise ProviderAuthError(
            f"No {provider.name} credential configured for this project", provider.name
        )

    async def complete(
        self, project_id: str, target_model: str, messages: list[Message]
    ) -> Completion:
        provider = self.provider_for(target_model)
        api_key = await self._resolve_key(project_id, provider)

        metrics.increment("provider_calls")
        try:
            completion = await asyncio.wait_for(
                provider.complete(target_model, messages, api_key), timeout=self._timeout
            )
        except TimeoutError as e:
            provider.circuit_breaker.record_failure()
            metrics.increment("provider_errors")
            semcache_metrics.record_provider_call(provider.name, target_model, "timeout")
            raise ProviderTimeoutError(
                f"{provider.name} did not answer within {self._timeout:g}s", provider.name
            ) from e
        except CircuitOpenError:
            semcache_metrics.record_provider_call(provider.name, target_model, "circuit_open")
            raise
        except ProviderError as e:
            metrics.increment("provider_errors")
            semcache_metrics.record_provider_call(provider.name, target_model, type(e).__name__)
            logger.warning(
                "Provider '%s' failed for model %s: %s", provider.name, target_model, e.message
            )
            raise

        semcache_metrics.record_provider_call(provider.name, target_model, "success")
        return completion
