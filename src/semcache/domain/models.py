"""
Provider-agnostic domain models.

These represent the internal truth of the system.
No external dependencies - only Python standard library.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum


def _utc_now() -> datetime:
    """Helper function for UTC now."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class Role(str, Enum):
    """Message roles in a conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Tier(str, Enum):
    """Subscription tier of a project. Drives rate limits and monthly quota."""
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class KeyState(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class EncryptionVersion(IntEnum):
    """Encoding of the text fields of a stored record.

    PLAINTEXT marks records written before at-rest encryption existed.
    """
    PLAINTEXT = 0
    FERNET_V1 = 1


class QueryState(str, Enum):
    """States of the per-query state machine."""
    AUTHENTICATING = "authenticating"
    RATE_LIMIT_CHECK = "rate_limit_check"
    QUOTA_CHECK = "quota_check"
    EMBEDDING = "embedding"
    SEARCHING = "searching"
    HIT = "hit"
    MISS = "miss"
    INVOKING = "invoking"
    PERSISTING = "persisting"
    RESPOND = "respond"
    FAILED = "failed"


@dataclass(frozen=True)
class Message:
    """A single message. Frozen to prevent modification after creation."""
    role: Role
    content: str


@dataclass(frozen=True)
class TokenUsage:
    """Token consumption for a completion."""
    prompt_tokens: int
    completion_tokens: int
    model: str = ""
    provider: str = ""

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class CostCalculation:
    """Priced token usage (USD)."""
    prompt_cost: float
    completion_cost: float
    usage: TokenUsage

    @property
    def total_cost(self) -> float:
        return self.prompt_cost + self.completion_cost


@dataclass(frozen=True)
class Completion:
    """A successful provider answer."""
    text: str
    model: str
    provider: str
    usage: TokenUsage
    latency_ms: float = 0.0


# =============================================================================
# TENANCY
# =============================================================================

@dataclass
class Project:
    """Tenant boundary. Owns API keys, cache entries and provider credentials."""
    name: str
    tier: Tier = Tier.FREE
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)


@dataclass
class APIKey:
    """Bearer key metadata. The token itself is never stored, only its hash."""
    project_id: str
    key_hash: str
    prefix: str
    key_id: str = field(default_factory=_new_id)
    state: KeyState = KeyState.ACTIVE
    created_at: datetime = field(default_factory=_utc_now)
    revoked_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.state == KeyState.ACTIVE


@dataclass
class ProviderCredential:
    """A tenant's LLM provider API key."""
    project_id: str
    provider: str
    secret: str = field(repr=False)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)


@dataclass
class UsageRecord:
    """Per-project, per-calendar-month counters."""
    project_id: str
    period: str
    total_queries: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cost_saved: float = 0.0


# =============================================================================
# CACHE
# =============================================================================

@dataclass(frozen=True)
class PartitionKey:
    """(project, context, target model) tuple bounding which entries can match.

    A missing context and an empty context name the same partition.
    """
    project_id: str
    context: str
    target_model: str

    @classmethod
    def build(cls, project_id: str, context: str | None, target_model: str) -> "PartitionKey":
        return cls(project_id=project_id, context=context or "", target_model=target_model)

    @property
    def storage_key(self) -> str:
        """Stable digest used in storage keys so the context never appears in clear."""
        raw = "\x1f".join((self.project_id, self.context, self.target_model))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """One previously answered prompt."""
    project_id: str
    prompt: str
    response: str
    context: str
    vector: list[float]
    embedding_model: str
    target_model: str
    id: str = field(default_factory=_new_id)
    provider: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    created_at: datetime = field(default_factory=_utc_now)
    last_accessed: datetime = field(default_factory=_utc_now)
    encryption_version: EncryptionVersion = EncryptionVersion.FERNET_V1
    expires_at: datetime | None = None

    @property
    def partition(self) -> PartitionKey:
        return PartitionKey.build(self.project_id, self.context, self.target_model)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utc_now()) >= self.expires_at


# =============================================================================
# QUERIES
# =============================================================================

@dataclass
class QueryRequest:
    """Internal representation of a cache query."""
    prompt: str
    model: str
    similarity_threshold: float = 0.85
    context: str | None = None
    include_debug: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utc_now)


@dataclass
class QueryDebug:
    embedding_time_ms: float
    search_time_ms: float
    total_time_ms: float
    matched_cache_entry_id: str | None
    cache_entry_count: int


@dataclass
class QueryResult:
    """Outcome of a successful query, hit or miss."""
    cache_hit: bool
    response: str
    similarity_score: float | None
    cost_saved: float
    llm_provider: str
    entry_id: str | None = None
    coalesced: bool = False
    debug: QueryDebug | None = None
