"""
Domain-level exceptions.

Hierarchical exceptions allow catching at different granularities.
Each exception knows the HTTP status it maps to; the API layer renders
every SemCacheError through a single handler.
"""

from typing import Any


class SemCacheError(Exception):
    """Base exception for all semcache errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        retry_after: int | None = None,
        fallback: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after
        self.fallback = fallback

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to the public error body."""
        body: dict[str, Any] = {"detail": self.message}
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        if self.fallback is not None:
            body["fallback"] = self.fallback
        return body


class ValidationError(SemCacheError):
    """Request was invalid (threshold out of range, missing field, etc)."""
    status_code = 400


class InternalError(SemCacheError):
    status_code = 500


# =============================================================================
# AUTH EXCEPTIONS
# =============================================================================

class AuthError(SemCacheError):
    """Base error for authentication and authorization."""
    status_code = 401


class AuthenticationError(AuthError):
    """Missing, unknown or revoked API key."""
    status_code = 401


class ScopeError(AuthError):
    """Key is valid but not for the requested project."""
    status_code = 403


class NotFoundError(SemCacheError):
    status_code = 404


class NotCacheableError(SemCacheError):
    """Payload type cannot be cached; the caller should call its LLM directly."""
    status_code = 422

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, details, fallback="call_llm_directly")


# =============================================================================
# QUOTA EXCEPTIONS
# =============================================================================

class QuotaExceeded(SemCacheError):
    """Rate or monthly cap hit. No usage counters were changed."""
    status_code = 429


class RateLimitExceededError(QuotaExceeded):
    def __init__(self, message: str, limit: int, remaining: int, reset_at: float, retry_after: int):
        super().__init__(
            message,
            details={"limit": limit, "remaining": remaining, "reset_at": reset_at},
            retry_after=retry_after,
        )
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at


class MonthlyQuotaExceededError(QuotaExceeded):
    def __init__(self, count: int, limit: int, retry_after: int | None = None):
        super().__init__(
            f"Monthly quota exceeded: {count} of {limit} queries used",
            details={"count": count, "limit": limit},
            retry_after=retry_after,
        )
        self.count = count
        self.limit = limit


# =============================================================================
# PROVIDER EXCEPTIONS
# =============================================================================

class ProviderError(SemCacheError):
    """Error from an LLM provider. Never produces a cache entry."""
    status_code = 502

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.upstream_status = status_code


class ProviderAuthError(ProviderError):
    """Tenant credential missing, invalid or revoked at the provider."""
    pass


class ProviderQuotaError(ProviderError):
    """Provider quota, billing or rate limit exhausted."""
    pass


class ProviderUnavailableError(ProviderError):
    """Provider outage (5xx, connection error)."""
    pass


class ProviderTimeoutError(ProviderUnavailableError):
    """Provider did not answer within the gateway time budget."""
    pass


class ModelUnsupportedError(ProviderError):
    """No provider serves the requested model, or the provider rejected it."""
    pass


# =============================================================================
# AVAILABILITY EXCEPTIONS
# =============================================================================

class ServiceUnavailableError(SemCacheError):
    """A dependency is down; retry after the given interval or fall back."""
    status_code = 503

    def __init__(
        self,
        message: str,
        retry_after: int = 5,
        details: dict | None = None,
        fallback: str | None = "call_llm_directly",
    ):
        super().__init__(message, details, retry_after=retry_after, fallback=fallback)


class EmbeddingError(ServiceUnavailableError):
    """Embedding generation failed. Terminal for the request."""
    pass


class CircuitOpenError(ServiceUnavailableError):
    """Circuit breaker is open."""
    pass


class RequestTimeoutError(ServiceUnavailableError):
    """The caller's deadline passed. Any in-flight provider call keeps running."""
    pass


# =============================================================================
# CACHE EXCEPTIONS
# =============================================================================

class CacheError(SemCacheError):
    """Cache store operation failed."""
    status_code = 500


class CacheConnectionError(CacheError):
    """Storage backend connection failed."""
    pass


class CacheSerializationError(CacheError):
    """Failed to serialize/deserialize cache data."""
    pass


class DecryptionError(CacheSerializationError):
    """Stored ciphertext could not be decrypted with the current key."""
    pass
