"""Durable per-tenant storage of cache entries and provider credentials.

Text fields are encrypted at rest through a FieldCodec; vectors are kept
unencrypted so the index can be rebuilt from storage. Every record carries
its encryption version, which selects the decode path on read.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import UTC, datetime

import redis.asyncio as redis

from semcache.core.crypto import FieldCodec
from semcache.domain.exceptions import CacheConnectionError, CacheSerializationError
from semcache.domain.models import CacheEntry, EncryptionVersion, ProviderCredential

logger = logging.getLogger(__name__)

_ENTRY_TEXT_FIELDS = ("prompt", "response", "context")


def _dt_to_str(value: datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def _str_to_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def encode_entry(entry: CacheEntry, codec: FieldCodec) -> dict[str, str]:
    """Serialize an entry to a flat string mapping, encrypting its text fields."""
    record = {
        "id": entry.id,
        "project_id": entry.project_id,
        "partition": entry.partition.storage_key,
        "embedding_model": entry.embedding_model,
        "target_model": entry.target_model,
        "provider": entry.provider,
        "vector": json.dumps([float(x) for x in entry.vector]),
        "prompt_tokens": str(entry.prompt_tokens),
        "completion_tokens": str(entry.completion_tokens),
        "created_at": _dt_to_str(entry.created_at),
        "last_accessed": _dt_to_str(entry.last_accessed),
        "expires_at": _dt_to_str(entry.expires_at),
        "encryption_version": str(int(codec.version)),
    }
    for name in _ENTRY_TEXT_FIELDS:
        record[name] = codec.encode(getattr(entry, name))
    return record


def decode_entry(record: dict[str, str], codec: FieldCodec) -> CacheEntry:
    """Inverse of encode_entry. Records without a version flag predate encryption."""
    try:
        version = EncryptionVersion(int(record.get("encryption_version") or 0))
        text = {name: codec.decode(record.get(name, ""), version) for name in _ENTRY_TEXT_FIELDS}
        return CacheEntry(
            id=record["id"],
            project_id=record["project_id"],
            prompt=text["prompt"],
            response=text["response"],
            context=text["context"],
            vector=[float(x) for x in json.loads(record["vector"])],
            embedding_model=record["embedding_model"],
            target_model=record["target_model"],
            provider=record.get("provider", ""),
            prompt_tokens=int(record.get("prompt_tokens") or 0),
            completion_tokens=int(record.get("completion_tokens") or 0),
            created_at=_str_to_dt(record["created_at"]),
            last_accessed=_str_to_dt(record.get("last_accessed")) or _str_to_dt(record["created_at"]),
            encryption_version=version,
            expires_at=_str_to_dt(record.get("expires_at")),
        )
    except CacheSerializationError:
        raise
    except (KeyError, ValueError, TypeError) as e:
        raise CacheSerializationError(f"Malformed cache entry record: {e}") from e


def encode_credential(credential: ProviderCredential, codec: FieldCodec) -> dict[str, str]:
    return {
        "project_id": credential.project_id,
        "provider": credential.provider,
        "secret": codec.encode(credential.secret),
        "encryption_version": str(int(codec.version)),
        "created_at": _dt_to_str(credential.created_at),
        "updated_at": _dt_to_str(credential.updated_at),
    }


def decode_credential(record: dict[str, str], codec: FieldCodec) -> ProviderCredential:
    try:
        version = EncryptionVersion(int(record.get("encryption_version") or 0))
        return ProviderCredential(
            project_id=record["project_id"],
            provider=record["provider"],
            secret=codec.decode(record["secret"], version),
            created_at=_str_to_dt(record["created_at"]),
            updated_at=_str_to_dt(record["updated_at"]),
        )
    except CacheSerializationError:
        raise
    except (KeyError, ValueError, TypeError) as e:
        raise CacheSerializationError(f"Malformed credential record: {e}") from e


class CacheStore(ABC):
    """Storage of cache entries and provider credentials."""

    def __init__(self, codec: FieldCodec):
        self._codec = codec

    @abstractmethod
    async def put_entry(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def get_entry(self, entry_id: str) -> CacheEntry | None: ...

    @abstractmethod
    async def touch_entry(self, entry_id: str, when: datetime | None = None) -> bool: ...

    @abstractmethod
    async def delete_entry(self, entry_id: str) -> bool: ...

    @abstractmethod
    def iter_entries(self) -> AsyncIterator[CacheEntry]: ...

    @abstractmethod
    async def count_entries(self) -> int: ...

    @abstractmethod
    async def put_credential(self, credential: ProviderCredential) -> None: ...

    @abstractmethod
    async def get_credential(self, project_id: str, provider: str) -> ProviderCredential | None: ...

    @abstractmethod
    async def delete_credential(self, project_id: str, provider: str) -> bool: ...

    async def ping(self) -> bool:
        return True


class InMemoryCacheStore(CacheStore):
    """Process-local store. Records are held encoded exactly as Redis would hold them."""

    def __init__(self, codec: FieldCodec):
        super().__init__(codec)
        self._entries: dict[str, dict[str, str]] = {}
        self._credentials: dict[tuple[str, str], dict[str, str]] = {}

    async def put_entry(self, entry: CacheEntry) -> None:
        self._entries[entry.id] = encode_entry(entry, self._codec)

    def put_raw_entry(self, record: dict[str, str]) -> None:
        """Insert an already-encoded record (e.g. one written before encryption)."""
        self._entries[record["id"]] = dict(record)

    async def get_entry(self, entry_id: str) -> CacheEntry | None:
        record = self._entries.get(entry_id)
        if record is None:
            return None
        entry = decode_entry(record, self._codec)
        if entry.is_expired():
            del self._entries[entry_id]
            return None
        return entry

    async def touch_entry(self, entry_id: str, when: datetime | None = None) -> bool:
        record = self._entries.get(entry_id)
        if record is None:
            return False
        record["last_accessed"] = _dt_to_str(when or datetime.now(UTC))
        return True

    async def delete_entry(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    async def iter_entries(self) -> AsyncIterator[CacheEntry]:
        for entry_id in list(self._entries):
            entry = await self.get_entry(entry_id)
            if entry is not None:
                yield entry

    async def count_entries(self) -> int:
        return len(self._entries)

    async def put_credential(self, credential: ProviderCredential) -> None:
        existing = self._credentials.get((credential.project_id, credential.provider))
        if existing is not None:
            credential.created_at = _str_to_dt(existing["created_at"]) or credential.created_at
        self._credentials[(credential.project_id, credential.provider)] = encode_credential(
            credential, self._codec
        )

    async def get_credential(self, project_id: str, provider: str) -> ProviderCredential | None:
        record = self._credentials.get((project_id, provider))
        if record is None:
            return None
        return decode_credential(record, self._codec)

    async def delete_credential(self, project_id: str, provider: str) -> bool:
        return self._credentials.pop((project_id, provider), None) is not None


# Only touch an entry that still exists; a bare HSET would resurrect a partial hash.
_TOUCH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    redis.call('HSET', KEYS[1], 'last_accessed', ARGV[1])
    return 1
end
return 0
"""


class RedisCacheStore(CacheStore):
    """Redis-backed store. One hash per entry plus membership sets per partition."""

    def __init__(self, client: redis.Redis, codec: FieldCodec, prefix: str = "semcache"):
        super().__init__(codec)
        self.client = client
        self._prefix = prefix
        self._touch = client.register_script(_TOUCH_SCRIPT)

    def _entry_key(self, entry_id: str) -> str:
        return f"{self._prefix}:entry:{entry_id}"

    def _partition_key(self, storage_key: str) -> str:
        return f"{self._prefix}:partition:{storage_key}"

    def _all_entries_key(self) -> str:
        return f"{self._prefix}:entries"

    def _credential_key(self, project_id: str, provider: str) -> str:
        return f"{self._prefix}:credential:{project_id}:{provider}"

    async def put_entry(self, entry: CacheEntry) -> None:
        record = encode_entry(entry, self._codec)
        key = self._entry_key(entry.id)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=record)
                pipe.sadd(self._partition_key(record["partition"]), entry.id)
                pipe.sadd(self._all_entries_key(), entry.id)
                if entry.expires_at is not None:
                    pipe.expireat(key, entry.expires_at)
                await pipe.execute()
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to write cache entry: {e}") from e

    async def get_entry(self, entry_id: str) -> CacheEntry | None:
        try:
            record = await self.client.hgetall(self._entry_key(entry_id))
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to read cache entry: {e}") from e
        if not record:
            return None
        entry = decode_entry(record, self._codec)
        if entry.is_expired():
            return None
        return entry

    async def touch_entry(self, entry_id: str, when: datetime | None = None) -> bool:
        try:
            updated = await self._touch(
                keys=[self._entry_key(entry_id)],
                args=[_dt_to_str(when or datetime.now(UTC))],
            )
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to touch cache entry: {e}") from e
        return bool(updated)

    async def delete_entry(self, entry_id: str) -> bool:
        key = self._entry_key(entry_id)
        try:
            partition = await self.client.hget(key, "partition")
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.srem(self._all_entries_key(), entry_id)
                if partition:
                    pipe.srem(self._partition_key(partition), entry_id)
                results = await pipe.execute()
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to delete cache entry: {e}") from e
        return bool(results[0])

    async def iter_entries(self, batch_size: int = 500) -> AsyncIterator[CacheEntry]:
        try:
            entry_ids = sorted(await self.client.smembers(self._all_entries_key()))
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to list cache entries: {e}") from e

        for start in range(0, len(entry_ids), batch_size):
            batch = entry_ids[start : start + batch_size]
            try:
                async with self.client.pipeline(transaction=False) as pipe:
                    for entry_id in batch:
                        pipe.hgetall(self._entry_key(entry_id))
                    records = await pipe.execute()
            except redis.RedisError as e:
                raise CacheConnectionError(f"Failed to load cache entries: {e}") from e

            stale = []
            for entry_id, record in zip(batch, records):
                if not record:
                    stale.append(entry_id)
                    continue
                try:
                    entry = decode_entry(record, self._codec)
                except CacheSerializationError as e:
                    logger.warning("Skipping unreadable cache entry %s: %s", entry_id, e)
                    continue
                if not entry.is_expired():
                    yield entry
            if stale:
                # TTL-expired hashes leave their ids behind in the membership set
                try:
                    await self.client.srem(self._all_entries_key(), *stale)
                except redis.RedisError as e:
                    logger.warning("Failed to prune %d stale entry ids: %s", len(stale), e)

    async def count_entries(self) -> int:
        try:
            return await self.client.scard(self._all_entries_key())
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to count cache entries: {e}") from e

    async def put_credential(self, credential: ProviderCredential) -> None:
        key = self._credential_key(credential.project_id, credential.provider)
        record = encode_credential(credential, self._codec)
        try:
            # Rotation keeps the original creation time
            await self.client.hsetnx(key, "created_at", record.pop("created_at"))
            await self.client.hset(key, mapping=record)
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to store provider credential: {e}") from e

    async def get_credential(self, project_id: str, provider: str) -> ProviderCredential | None:
        try:
            record = await self.client.hgetall(self._credential_key(project_id, provider))
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to read provider credential: {e}") from e
        if not record:
            return None
        return decode_credential(record, self._codec)

    async def delete_credential(self, project_id: str, provider: str) -> bool:
        try:
            return bool(await self.client.delete(self._credential_key(project_id, provider)))
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to delete provider credential: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError:
            return False
