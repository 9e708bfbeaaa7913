"""Abstract base class for LLM providers."""

import time
from abc import ABC, abstractmethod

import httpx

from semcache.core.circuit_breaker import CircuitBreaker
from semcache.domain.exceptions import (
    CircuitOpenError,
    ModelUnsupportedError,
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from semcache.domain.models import Completion, Message


class LLMProvider(ABC):
    """Base class for all LLM providers.

    Subclasses implement `_do_completion` and may refine `_raise_for_status`;
    the base class owns circuit breaking and the mapping of transport
    failures onto the common error taxonomy.
    """

    def __init__(self, circuit_breaker: CircuitBreaker, client: httpx.AsyncClient, base_url: str):
        self._circuit_breaker = circuit_breaker
        self._client = client
        self._base_url = base_url.rstrip("/")

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the name of the provider."""
        ...

    @property
    @abstractmethod
    def models(self) -> list[str]:
        """Return the list of models supported by the provider."""
        ...

    @property
    def model_prefixes(self) -> tuple[str, ...]:
        """Model id families routed to this provider (e.g. dated snapshots)."""
        return ()

    def supports(self, model: str) -> bool:
        return model in self.models or any(model.startswith(p) for p in self.model_prefixes)

    @abstractmethod
    async def _do_completion(self, model: str, messages: list[Message], api_key: str) -> Completion: ...

    async def complete(self, model: str, messages: list[Message], api_key: str) -> Completion:
        """Run one completion. Only outages count against the circuit breaker."""
        if not self._circuit_breaker.can_execute():
            raise CircuitOpenError(
                f"Provider '{self.name}' is temporarily unavailable",
                retry_after=self._circuit_breaker.retry_after(),
                details={"provider": self.name},
            )

        start = time.perf_counter()
        try:
            result = await self._do_completion(model, messages, api_key)
        except httpx.TimeoutException as e:
            self._circuit_breaker.record_failure()
            raise ProviderTimeoutError(f"{self.name} request timed out", self.name) from e
        except httpx.TransportError as e:
            self._circuit_breaker.record_failure()
            raise ProviderUnavailableError(f"{self.name} connection failed: {e}", self.name) from e
        except ProviderUnavailableError:
            self._circuit_breaker.record_failure()
            raise
        except ProviderError:
            raise
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(f"Malformed response from {self.name}: {e}", self.name) from e
        self._circuit_breaker.record_success()
        return Completion(
            text=result.text,
            model=result.model,
            provider=result.provider,
            usage=result.usage,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Map a non-2xx provider response onto the error taxonomy."""
        status = response.status_code
        if 200 <= status < 300:
            return
        body = response.text[:500]
        details = {"response": body}
        if status in (401, 403):
            raise ProviderAuthError(
                f"{self.name} rejected the credential (status {status})", self.name, status, details
            )
        if status == 402 or (status == 429 and "quota" in body.lower()):
            raise ProviderQuotaError(
                f"{self.name} quota or billing exhausted", self.name, status, details
            )
        if status == 429:
            details["retry_after"] = response.headers.get("retry-after", "unknown")
            raise ProviderQuotaError(f"{self.name} rate limit exceeded", self.name, status, details)
        if status == 404:
            raise ModelUnsupportedError(
                f"{self.name} does not serve the requested model", self.name, status, details
            )
        if status >= 500:
            raise ProviderUnavailableError(
                f"{self.name} service unavailable (status {status})", self.name, status, details
            )
        raise ProviderError(f"Request failed with status {status}", self.name, status, details)

    def is_available(self) -> bool:
        """Check if provider is available (circuit breaker allows execution)."""
        return self._circuit_breaker.can_execute()

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        """Expose circuit breaker for health/metrics (read-only)."""
        return self._circuit_breaker
