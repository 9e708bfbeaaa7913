from functools import lru_cache
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from semcache.domain.models import Tier


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: SecretStr | None = None
    socket_timeout: float = 5.0
    key_prefix: str = "semcache"


class EncryptionSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ENCRYPTION_", extra="ignore")
    master_secret: SecretStr | None = None
    salt: str = "semcache-at-rest-v1"
    iterations: int = 100_000


class CacheSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CACHE_", extra="ignore")
    default_similarity_threshold: float = 0.85
    # None disables expiry; entries then live until explicitly deleted.
    entry_ttl_seconds: int | None = None
    max_prompt_chars: int = 32_000


class IndexSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="INDEX_", extra="ignore")
    type: Literal["hnsw", "flat"] = "hnsw"
    hnsw_m: int = 32
    hnsw_ef_search: int = 64
    candidate_k: int = 16
    exact_search_max: int = 4096


class EmbeddingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EMBEDDING_", extra="ignore")
    model_name: str = "all-MiniLM-L6-v2"
    model_version: str = "1"


class GatewaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GATEWAY_", extra="ignore")
    timeout_seconds: float = 30.0
    circuit_failure_threshold: int = 3
    circuit_recovery_seconds: float = 30.0


class PersistRetrySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PERSIST_RETRY_", extra="ignore")
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 40.0


class TierSettings(BaseSettings):
    """Per-tier request rate (per window) and monthly query cap. A cap of 0 is unlimited."""

    model_config = SettingsConfigDict(env_prefix="TIER_", extra="ignore")
    free_rate_limit: int = 100
    free_monthly_quota: int = 10_000
    pro_rate_limit: int = 1_000
    pro_monthly_quota: int = 1_000_000
    enterprise_rate_limit: int = 10_000
    enterprise_monthly_quota: int = 0

    def rate_limit(self, tier: Tier) -> int:
        return getattr(self, f"{tier.value}_rate_limit")

    def monthly_quota(self, tier: Tier) -> int:
        return getattr(self, f"{tier.value}_monthly_quota")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    semcache_env: str = "development"
    store_backend: Literal["redis", "memory"] = "redis"
    admin_token: SecretStr | None = None
    request_timeout_seconds: float = 45.0
    host: str = "0.0.0.0"
    port: int = 8000

    # Service-wide provider keys, used when a project has no stored credential
    openai_api_key: SecretStr | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: SecretStr | None = None
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    google_api_key: SecretStr | None = None
    google_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    # Nested settings
    redis: RedisSettings = RedisSettings()
    encryption: EncryptionSettings = EncryptionSettings()
    cache: CacheSettings = CacheSettings()
    index: IndexSettings = IndexSettings()
    embedding: EmbeddingSettings = EmbeddingSettings()
    gateway: GatewaySettings = GatewaySettings()
    persist_retry: PersistRetrySettings = PersistRetrySettings()
    tiers: TierSettings = TierSettings()

    # Rate limiting window (limits themselves are per tier)
    rate_limit_window_seconds: int = 60

    @property
    def is_production(self) -> bool:
        return self.semcache_env == "production"

    def fallback_provider_keys(self) -> dict[str, str]:
        """Service-wide provider keys by provider name, skipping unset ones."""
        keys = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
        }
        return {name: key.get_secret_value() for name, key in keys.items() if key}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
