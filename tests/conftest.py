"""Pytest configuration for SemCache tests."""

import asyncio
import os
import sys
import threading
from types import SimpleNamespace

import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from semcache.core.circuit_breaker import CircuitBreaker
from semcache.core.config import TierSettings
from semcache.core.crypto import EncryptionManager, FieldCodec, derive_key
from semcache.core.quota import InMemoryQuotaTracker
from semcache.core.rate_limiter import InMemoryRateLimiter
from semcache.core.retry import RetryPolicy
from semcache.domain.models import Completion, Message, Tier, TokenUsage
from semcache.providers.base import LLMProvider
from semcache.providers.gateway import ProviderGateway
from semcache.providers.registry import ProviderRegistry
from semcache.services.auth import InMemoryKeyStore
from semcache.services.cache_store import InMemoryCacheStore
from semcache.services.embedding import Embedder
from semcache.services.orchestrator import QueryOrchestrator, normalize_prompt
from semcache.services.vector_index import VectorIndex

DIMENSION = 64


def unit(*components: float) -> np.ndarray:
    vector = np.zeros(DIMENSION)
    vector[: len(components)] = components
    return vector


class FakeEmbedder(Embedder):
    """Known texts map to fixed vectors; any other text gets its own orthogonal axis."""

    def __init__(self):
        self._vectors: dict[str, np.ndarray] = {}
        self._next_axis = 8
        self._lock = threading.Lock()
        self.calls = 0
        self.fail = False

    @property
    def model_tag(self) -> str:
        return "fake-embedder@1"

    def set(self, text: str, vector: np.ndarray) -> None:
        self._vectors[normalize_prompt(text)] = np.asarray(vector, dtype=np.float64)

    def _encode(self, text: str) -> np.ndarray:
        with self._lock:
            self.calls += 1
            if self.fail:
                raise RuntimeError("model crashed")
            key = normalize_prompt(text)
            if key not in self._vectors:
                vector = np.zeros(DIMENSION)
                vector[self._next_axis % DIMENSION] = 1.0
                self._next_axis += 1
                self._vectors[key] = vector
            return self._vectors[key]


class FakeProvider(LLMProvider):
    """Provider double that answers without HTTP and records every call."""

    def __init__(self, name: str = "openai", prefixes: tuple[str, ...] = ("gpt-",), delay: float = 0.0):
        super().__init__(CircuitBreaker(name=name), client=None, base_url="http://fake")
        self._name = name
        self._prefixes = prefixes
        self.delay = delay
        self.error: Exception | None = None
        self.calls: list[tuple[str, list[Message], str]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def models(self) -> list[str]:
        return ["gpt-4o-mini", "gpt-4o"] if self._name == "openai" else []

    @property
    def model_prefixes(self) -> tuple[str, ...]:
        return self._prefixes

    async def _do_completion(self, model: str, messages: list[Message], api_key: str) -> Completion:
        self.calls.append((model, messages, api_key))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Completion(
            text=f"answer to: {messages[-1].content}",
            model=model,
            provider=self.name,
            usage=TokenUsage(prompt_tokens=12, completion_tokens=40, model=model, provider=self.name),
        )


@pytest.fixture
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


@pytest.fixture
def codec():
    return FieldCodec(EncryptionManager(derive_key("test-master-secret", "test-salt", 1_000)))


@pytest.fixture
def embedder():
    embedder = FakeEmbedder()
    embedder.set("What is ML?", unit(1.0))
    embedder.set("What is machine learning?", unit(0.95, 0.3122))
    return embedder


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(codec, embedder, provider):
    """A fully wired in-memory orchestrator plus handles on every component."""
    store = InMemoryCacheStore(codec)
    key_store = InMemoryKeyStore()
    quota = InMemoryQuotaTracker()
    rate_limiter = InMemoryRateLimiter(window_seconds=60)
    index = VectorIndex(index_type="flat")
    registry = ProviderRegistry()
    registry.register(provider)
    gateway = ProviderGateway(registry, store, timeout_seconds=5.0, fallback_keys={"openai": "sk-service"})
    orchestrator = QueryOrchestrator(
        key_store=key_store,
        rate_limiter=rate_limiter,
        quota=quota,
        embedder=embedder,
        index=index,
        store=store,
        gateway=gateway,
        tiers=TierSettings(),
        persist_retry=RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05),
    )

    async def new_key(tier: Tier = Tier.FREE, name: str = "acme"):
        project = await key_store.create_project(name, tier)
        token, key = await key_store.issue_key(project.id)
        return token, project, key

    return SimpleNamespace(
        store=store,
        key_store=key_store,
        quota=quota,
        rate_limiter=rate_limiter,
        index=index,
        registry=registry,
        gateway=gateway,
        orchestrator=orchestrator,
        embedder=embedder,
        provider=provider,
        new_key=new_key,
    )
