"""SemCache Domain Layer."""

from semcache.domain.models import (
    # Conversation
    Role,
    Message,
    TokenUsage,
    CostCalculation,
    Completion,
    # Tenancy
    Tier,
    KeyState,
    Project,
    APIKey,
    ProviderCredential,
    UsageRecord,
    # Cache
    EncryptionVersion,
    PartitionKey,
    CacheEntry,
    # Queries
    QueryState,
    QueryRequest,
    QueryDebug,
    QueryResult,
)

from semcache.domain.exceptions import (
    SemCacheError,
    ValidationError,
    InternalError,
    AuthError,
    AuthenticationError,
    ScopeError,
    NotFoundError,
    NotCacheableError,
    QuotaExceeded,
    RateLimitExceededError,
    MonthlyQuotaExceededError,
    ProviderError,
    ProviderAuthError,
    ProviderQuotaError,
    ProviderUnavailableError,
    ProviderTimeoutError,
    ModelUnsupportedError,
    ServiceUnavailableError,
    EmbeddingError,
    CircuitOpenError,
    RequestTimeoutError,
    CacheError,
    CacheConnectionError,
    CacheSerializationError,
    DecryptionError,
)

__all__ = [
    # Models
    "Role",
    "Message",
    "TokenUsage",
    "CostCalculation",
    "Completion",
    "Tier",
    "KeyState",
    "Project",
    "APIKey",
    "ProviderCredential",
    "UsageRecord",
    "EncryptionVersion",
    "PartitionKey",
    "CacheEntry",
    "QueryState",
    "QueryRequest",
    "QueryDebug",
    "QueryResult",
    # Exceptions
    "SemCacheError",
    "ValidationError",
    "InternalError",
    "AuthError",
    "AuthenticationError",
    "ScopeError",
    "NotFoundError",
    "NotCacheableError",
    "QuotaExceeded",
    "RateLimitExceededError",
    "MonthlyQuotaExceededError",
    "ProviderError",
    "ProviderAuthError",
    "ProviderQuotaError",
    "ProviderUnavailableError",
    "ProviderTimeoutError",
    "ModelUnsupportedError",
    "ServiceUnavailableError",
    "EmbeddingError",
    "CircuitOpenError",
    "RequestTimeoutError",
    "CacheError",
    "CacheConnectionError",
    "CacheSerializationError",
    "DecryptionError",
]
