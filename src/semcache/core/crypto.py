"""
Field-level encryption at rest using Fernet (symmetric encryption).

The Fernet key is derived from a master secret with PBKDF2-HMAC-SHA256.
Stored records carry an explicit encryption version so records written
before encryption existed are read as plaintext without a migration pass.
"""

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from semcache.domain.exceptions import CacheSerializationError, DecryptionError
from semcache.domain.models import EncryptionVersion

logger = logging.getLogger(__name__)

DEFAULT_ITERATIONS = 100_000
CURRENT_VERSION = EncryptionVersion.FERNET_V1

# Used only outside production when no master secret is configured.
_DEVELOPMENT_SECRET = "semcache-development-master-secret"


def derive_key(master_secret: str, salt: str | bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Derive a 32-byte encryption key from the master secret using PBKDF2."""
    if not master_secret:
        raise ValueError("master secret must not be empty")
    salt_bytes = salt.encode("utf-8") if isinstance(salt, str) else salt
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt_bytes,
        iterations=iterations,
    )
    return kdf.derive(master_secret.encode("utf-8"))


class EncryptionManager:
    """
    Encrypts and decrypts individual text fields.
    Uses Fernet symmetric encryption.
    """

    def __init__(self, key: bytes):
        """Initialize with a 32-byte encryption key."""
        if len(key) != 32:
            raise ValueError(f"encryption key must be 32 bytes, got {len(key)}")
        # Fernet requires URL-safe base64 encoded key
        self._fernet = Fernet(base64.urlsafe_b64encode(key))

    @classmethod
    def from_secret(
        cls, master_secret: str, salt: str | bytes, iterations: int = DEFAULT_ITERATIONS
    ) -> "EncryptionManager":
        return cls(derive_key(master_secret, salt, iterations))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string. Returns the Fernet token as ASCII text."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a Fernet token produced by encrypt()."""
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError, UnicodeError) as e:
            raise DecryptionError("Failed to decrypt stored field") from e


class FieldCodec:
    """Encodes text fields for storage and decodes them by their stored version."""

    def __init__(self, manager: EncryptionManager):
        self._manager = manager

    @property
    def version(self) -> EncryptionVersion:
        return CURRENT_VERSION

    def encode(self, value: str) -> str:
        return self._manager.encrypt(value)

    def decode(self, value: str, version: EncryptionVersion | int) -> str:
        try:
            version = EncryptionVersion(int(version))
        except ValueError as e:
            raise CacheSerializationError(f"Unknown encryption version: {version!r}") from e
        if version == EncryptionVersion.PLAINTEXT:
            return value
        return self._manager.decrypt(value)


def create_field_codec(
    master_secret: str | None,
    salt: str,
    iterations: int = DEFAULT_ITERATIONS,
    production: bool = False,
) -> FieldCodec:
    """Build the codec used by the stores.

    Refuses to run without a master secret in production. Elsewhere a fixed
    development secret is used so data survives restarts.
    """
    if not master_secret:
        if production:
            raise RuntimeError("ENCRYPTION_MASTER_SECRET must be set in production")
        logger.warning("ENCRYPTION_MASTER_SECRET not set; using the insecure development secret")
        master_secret = _DEVELOPMENT_SECRET
    return FieldCodec(EncryptionManager.from_secret(master_secret, salt, iterations))
