"""Projects and API keys.

Only the SHA-256 hash of a bearer token is stored. A revoked key stays
revoked: there is no operation that re-activates it.
"""

import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import UTC, datetime

import redis.asyncio as redis

from semcache.domain.exceptions import AuthenticationError, CacheConnectionError, NotFoundError
from semcache.domain.models import APIKey, KeyState, Project, Tier

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "sc_live_"
DISPLAY_PREFIX_LENGTH = 12


def hash_key(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    return TOKEN_PREFIX + secrets.token_urlsafe(32)


class KeyStore(ABC):
    @abstractmethod
    async def create_project(self, name: str, tier: Tier = Tier.FREE) -> Project: ...

    @abstractmethod
    async def get_project(self, project_id: str) -> Project | None: ...

    @abstractmethod
    async def _save_key(self, key: APIKey) -> None: ...

    @abstractmethod
    async def get_key(self, key_id: str) -> APIKey | None: ...

    @abstractmethod
    async def _find_by_hash(self, key_hash: str) -> APIKey | None: ...

    @abstractmethod
    async def list_keys(self, project_id: str) -> list[APIKey]: ...

    async def issue_key(self, project_id: str) -> tuple[str, APIKey]:
        """Create a key for a project. The token is returned once and never stored."""
        if await self.get_project(project_id) is None:
            raise NotFoundError(f"Project {project_id} not found")
        token = generate_token()
        key = APIKey(
            project_id=project_id,
            key_hash=hash_key(token),
            prefix=token[:DISPLAY_PREFIX_LENGTH],
        )
        await self._save_key(key)
        logger.info("Issued API key %s for project %s", key.key_id, project_id)
        return token, key

    async def revoke_key(self, key_id: str) -> APIKey:
        """Revoke immediately. Revoking an already revoked key is a no-op."""
        key = await self.get_key(key_id)
        if key is None:
            raise NotFoundError(f"API key {key_id} not found")
        if key.state == KeyState.REVOKED:
            return key
        key.state = KeyState.REVOKED
        key.revoked_at = datetime.now(UTC)
        await self._save_key(key)
        logger.info("Revoked API key %s of project %s", key.key_id, key.project_id)
        return key

    async def authenticate(self, token: str) -> tuple[APIKey, Project]:
        if not token:
            raise AuthenticationError("Missing API key")
        key_hash = hash_key(token)
        key = await self._find_by_hash(key_hash)
        if key is None or not hmac.compare_digest(key.key_hash, key_hash):
            raise AuthenticationError("Invalid API key")
        if not key.is_active:
            raise AuthenticationError("API key has been revoked")
        project = await self.get_project(key.project_id)
        if project is None:
            raise AuthenticationError("Invalid API key")
        return key, project


class InMemoryKeyStore(KeyStore):
    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._keys: dict[str, APIKey] = {}
        self._by_hash: dict[str, str] = {}

    async def create_project(self, name: str, tier: Tier = Tier.FREE) -> Project:
        project = Project(name=name, tier=tier)
        self._projects[project.id] = project
        return project

    async def get_project(self, project_id: str) -> Project | None:
        return self._projects.get(project_id)

    async def _save_key(self, key: APIKey) -> None:
        self._keys[key.key_id] = key
        self._by_hash[key.key_hash] = key.key_id

    async def get_key(self, key_id: str) -> APIKey | None:
        return self._keys.get(key_id)

    async def _find_by_hash(self, key_hash: str) -> APIKey | None:
        key_id = self._by_hash.get(key_hash)
        return self._keys.get(key_id) if key_id else None

    async def list_keys(self, project_id: str) -> list[APIKey]:
        return [k for k in self._keys.values() if k.project_id == project_id]


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class RedisKeyStore(KeyStore):
    """Projects and keys as Redis hashes, with a hash -> key id lookup."""

    def __init__(self, client: redis.Redis, prefix: str = "semcache"):
        self.client = client
        self._prefix = prefix

    def _project_key(self, project_id: str) -> str:
        return f"{self._prefix}:project:{project_id}"

    def _key_key(self, key_id: str) -> str:
        return f"{self._prefix}:apikey:{key_id}"

    def _hash_key(self, key_hash: str) -> str:
        return f"{self._prefix}:apikey_hash:{key_hash}"

    def _project_keys_key(self, project_id: str) -> str:
        return f"{self._prefix}:project_keys:{project_id}"

    async def create_project(self, name: str, tier: Tier = Tier.FREE) -> Project:
        project = Project(name=name, tier=tier)
        try:
            await self.client.hset(
                self._project_key(project.id),
                mapping={
                    "id": project.id,
                    "name": project.name,
                    "tier": project.tier.value,
                    "created_at": project.created_at.isoformat(),
                },
            )
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to create project: {e}") from e
        return project

    async def get_project(self, project_id: str) -> Project | None:
        try:
            record = await self.client.hgetall(self._project_key(project_id))
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to read project: {e}") from e
        if not record:
            return None
        return Project(
            id=record["id"],
            name=record["name"],
            tier=Tier(record["tier"]),
            created_at=datetime.fromisoformat(record["created_at"]),
        )

    async def _save_key(self, key: APIKey) -> None:
        record = {
            "key_id": key.key_id,
            "project_id": key.project_id,
            "key_hash": key.key_hash,
            "prefix": key.prefix,
            "state": key.state.value,
            "created_at": key.created_at.isoformat(),
            "revoked_at": key.revoked_at.isoformat() if key.revoked_at else "",
        }
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key_key(key.key_id), mapping=record)
                pipe.set(self._hash_key(key.key_hash), key.key_id)
                pipe.sadd(self._project_keys_key(key.project_id), key.key_id)
                await pipe.execute()
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to save API key: {e}") from e

    async def get_key(self, key_id: str) -> APIKey | None:
        try:
            record = await self.client.hgetall(self._key_key(key_id))
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to read API key: {e}") from e
        if not record:
            return None
        return APIKey(
            key_id=record["key_id"],
            project_id=record["project_id"],
            key_hash=record["key_hash"],
            prefix=record["prefix"],
            state=KeyState(record["state"]),
            created_at=datetime.fromisoformat(record["created_at"]),
            revoked_at=_dt(record.get("revoked_at")),
        )

    async def _find_by_hash(self, key_hash: str) -> APIKey | None:
        try:
            key_id = await self.client.get(self._hash_key(key_hash))
        except redis.RedisError as e:
            raise CacheConnectionError(f"Failed to look up API key: {e}") from e
        return await self.get_key(key_id) if key_id else None

    async def list_keys(self, project_id: str) -> list[APIKey]:
        key_ids = await self.client.smembers(self._project_keys_key(project_id))
        keys = [await self.get_key(key_id) for key_id in sorted(key_ids)]
        return [k for k in keys if k is not None]
