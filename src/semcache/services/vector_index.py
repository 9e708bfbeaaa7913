"""Partitioned FAISS vector index with exact cosine rescoring.

Each (partition, embedding model) pair owns its own index, so vectors from
different tenants, contexts, target models or embedding versions are never
compared. Small partitions are scored exactly over an L2-normalised float64
matrix; large ones retrieve candidates from FAISS and rescore them exactly,
so the hit/miss comparison never depends on float32 rounding.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime

import faiss
import numpy as np

from semcache.domain.models import PartitionKey

logger = logging.getLogger(__name__)

_INITIAL_CAPACITY = 64
_UNIT_TOLERANCE = 1e-12


@dataclass(frozen=True)
class IndexMatch:
    entry_id: str
    score: float
    created_at: datetime


@dataclass(frozen=True)
class SearchOutcome:
    match: IndexMatch | None
    partition_size: int


def _normalize(vector) -> np.ndarray:
    x = np.asarray(vector, dtype=np.float64).reshape(-1)
    norm = np.linalg.norm(x)
    if norm == 0.0:
        return x
    return x / norm


def _cosine(vectors: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Dot products of unit vectors, with rounding noise around 1.0 removed.

    Normalising the same vector twice can land a few ULP below 1.0, which
    would make an identical prompt miss at threshold 1.0.
    """
    scores = vectors @ query
    scores = np.where(np.isclose(scores, 1.0, rtol=0.0, atol=_UNIT_TOLERANCE), 1.0, scores)
    return np.minimum(scores, 1.0)


class _Partition:
    """Vectors of one partition. All access goes through its lock."""

    def __init__(self, dimension: int, index_type: str, hnsw_m: int, ef_search: int):
        self.dimension = dimension
        self.lock = threading.Lock()
        if index_type == "hnsw":
            self.index = faiss.IndexHNSWFlat(dimension, hnsw_m, faiss.METRIC_INNER_PRODUCT)
            self.index.hnsw.efSearch = ef_search
        else:
            self.index = faiss.IndexFlatIP(dimension)
        self.vectors = np.zeros((_INITIAL_CAPACITY, dimension), dtype=np.float64)
        self.entry_ids: list[str] = []
        self.created_at: list[float] = []
        self.expires_at = np.full(_INITIAL_CAPACITY, np.inf, dtype=np.float64)
        self.alive = np.zeros(_INITIAL_CAPACITY, dtype=bool)
        self.live_count = 0

    @property
    def ntotal(self) -> int:
        return len(self.entry_ids)

    def add(self, entry_id: str, vector: np.ndarray, created_at: float, expires_at: float) -> int:
        position = self.ntotal
        if position == self.vectors.shape[0]:
            capacity = self.vectors.shape[0] * 2
            vectors = np.zeros((capacity, self.dimension), dtype=np.float64)
            vectors[:position] = self.vectors[:position]
            alive = np.zeros(capacity, dtype=bool)
            alive[:position] = self.alive[:position]
            expires = np.full(capacity, np.inf, dtype=np.float64)
            expires[:position] = self.expires_at[:position]
            self.vectors, self.alive, self.expires_at = vectors, alive, expires
        self.index.add(vector.astype(np.float32).reshape(1, -1))
        self.vectors[position] = vector
        self.alive[position] = True
        self.entry_ids.append(entry_id)
        self.created_at.append(created_at)
        self.expires_at[position] = expires_at
        self.live_count += 1
        return position

    def remove(self, position: int) -> bool:
        if not self.alive[position]:
            return False
        self.alive[position] = False
        self.live_count -= 1
        return True

    def eligible(self, now: float) -> np.ndarray:
        n = self.ntotal
        return self.alive[:n] & (self.expires_at[:n] > now)

    def eligible_at(self, positions: np.ndarray, now: float) -> np.ndarray:
        return positions[self.alive[positions] & (self.expires_at[positions] > now)]

    def best(self, positions: np.ndarray, scores: np.ndarray) -> tuple[int, float] | None:
        """Highest score; equal scores go to the most recently created, then inserted."""
        if positions.size == 0:
            return None
        top = scores.max()
        tied = positions[scores == top]
        winner = max(tied, key=lambda p: (self.created_at[p], p))
        return int(winner), float(top)


class VectorIndex:
    def __init__(
        self,
        index_type: str = "hnsw",
        hnsw_m: int = 32,
        ef_search: int = 64,
        candidate_k: int = 16,
        exact_search_max: int = 4096,
    ):
        if index_type not in ("hnsw", "flat"):
            raise ValueError(f"Unknown index type: {index_type!r}")
        self._index_type = index_type
        self._hnsw_m = hnsw_m
        self._ef_search = ef_search
        self._candidate_k = candidate_k
        self._exact_search_max = exact_search_max
        self._partitions: dict[tuple[str, str], _Partition] = {}
        self._locations: dict[str, tuple[tuple[str, str], int]] = {}
        self._registry_lock = threading.Lock()

    @staticmethod
    def _key(partition: PartitionKey, embedding_model: str) -> tuple[str, str]:
        return (partition.storage_key, embedding_model)

    def _get_or_create(self, key: tuple[str, str], dimension: int) -> _Partition:
        with self._registry_lock:
            part = self._partitions.get(key)
            if part is None:
                part = _Partition(dimension, self._index_type, self._hnsw_m, self._ef_search)
                self._partitions[key] = part
            return part

    def add(
        self,
        partition: PartitionKey,
        embedding_model: str,
        entry_id: str,
        vector,
        created_at: datetime,
        expires_at: datetime | None = None,
    ) -> None:
        """Append a vector. Entries are immutable; re-adding an id is an error."""
        normalized = _normalize(vector)
        key = self._key(partition, embedding_model)
        part = self._get_or_create(key, normalized.shape[0])
        if normalized.shape[0] != part.dimension:
            raise ValueError(
                f"Vector dimension {normalized.shape[0]} does not match partition "
                f"dimension {part.dimension} for embedding model {embedding_model!r}"
            )
        with self._registry_lock:
            if entry_id in self._locations:
                raise ValueError(f"Entry {entry_id} is already indexed")
        expires = expires_at.timestamp() if expires_at is not None else float("inf")
        with part.lock:
            position = part.add(entry_id, normalized, created_at.timestamp(), expires)
        with self._registry_lock:
            self._locations[entry_id] = (key, position)

    def remove(self, entry_id: str) -> bool:
        """Tombstone an entry. It stops matching immediately."""
        with self._registry_lock:
            location = self._locations.pop(entry_id, None)
            if location is None:
                return False
            key, position = location
            part = self._partitions[key]
        with part.lock:
            return part.remove(position)

    def contains(self, entry_id: str) -> bool:
        with self._registry_lock:
            return entry_id in self._locations

    def size(self, partition: PartitionKey, embedding_model: str) -> int:
        with self._registry_lock:
            part = self._partitions.get(self._key(partition, embedding_model))
        if part is None:
            return 0
        with part.lock:
            return part.live_count

    @property
    def total(self) -> int:
        with self._registry_lock:
            return len(self._locations)

    def clear(self) -> None:
        with self._registry_lock:
            self._partitions.clear()
            self._locations.clear()

    def search(
        self,
        partition: PartitionKey,
        embedding_model: str,
        vector,
        now: datetime | None = None,
    ) -> SearchOutcome:
        """Return the single best match (k=1) in the partition by cosine similarity."""
        with self._registry_lock:
            part = self._partitions.get(self._key(partition, embedding_model))
        if part is None:
            return SearchOutcome(match=None, partition_size=0)

        query = _normalize(vector)
        if query.shape[0] != part.dimension:
            raise ValueError(
                f"Query dimension {query.shape[0]} does not match partition dimension "
                f"{part.dimension}"
            )
        now_ts = (now or datetime.now(UTC)).timestamp()

        with part.lock:
            size = part.live_count
            if size == 0:
                return SearchOutcome(match=None, partition_size=0)
            if size <= self._exact_search_max:
                positions = np.flatnonzero(part.eligible(now_ts))
            else:
                positions = self._candidates(part, query, now_ts)
            scores = _cosine(part.vectors[positions], query)
            best = part.best(positions, scores)
            if best is None:
                return SearchOutcome(match=None, partition_size=size)
            position, score = best
            match = IndexMatch(
                entry_id=part.entry_ids[position],
                score=score,
                created_at=datetime.fromtimestamp(part.created_at[position], tz=UTC),
            )
        return SearchOutcome(match=match, partition_size=size)

    def _candidates(self, part: _Partition, query: np.ndarray, now: float) -> np.ndarray:
        # Tombstones still occupy FAISS slots, so widen k by the number of dead vectors.
        # Expired entries are only seen per candidate; widen further while none survive.
        k = min(part.ntotal, self._candidate_k + part.ntotal - part.live_count)
        flat = query.astype(np.float32).reshape(1, -1)
        while True:
            _, ids = part.index.search(flat, k)
            positions = part.eligible_at(ids[0][ids[0] >= 0].astype(np.int64), now)
            if positions.size or k >= part.ntotal:
                return positions
            k = min(part.ntotal, k * 2)
