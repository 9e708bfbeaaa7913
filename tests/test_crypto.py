"""Tests for at-rest field encryption."""

import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from semcache.core.crypto import (
    DEFAULT_ITERATIONS,
    EncryptionManager,
    FieldCodec,
    create_field_codec,
    derive_key,
)
from semcache.domain.exceptions import CacheSerializationError, DecryptionError
from semcache.domain.models import EncryptionVersion


class TestDeriveKey:
    def test_default_iterations(self):
        assert DEFAULT_ITERATIONS == 100_000

    def test_key_is_32_bytes_and_deterministic(self):
        first = derive_key("secret", "salt", 1_000)
        second = derive_key("secret", "salt", 1_000)
        assert len(first) == 32
        assert first == second

    def test_salt_and_secret_change_the_key(self):
        base = derive_key("secret", "salt", 1_000)
        assert derive_key("secret", "other-salt", 1_000) != base
        assert derive_key("other-secret", "salt", 1_000) != base

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            derive_key("", "salt", 1_000)


class TestEncryptionManager:
    def test_rejects_wrong_key_length(self):
        with pytest.raises(ValueError, match="32 bytes"):
            EncryptionManager(b"short")

    def test_ciphertext_differs_from_plaintext(self):
        manager = EncryptionManager(derive_key("secret", "salt", 1_000))
        token = manager.encrypt("What is ML?")
        assert "What is ML?" not in token
        assert manager.decrypt(token) == "What is ML?"

    def test_unicode_survives(self):
        manager = EncryptionManager(derive_key("secret", "salt", 1_000))
        text = "Qu'est-ce que l'apprentissage automatique ? 机器学习"
        assert manager.decrypt(manager.encrypt(text)) == text

    def test_wrong_key_raises_decryption_error(self):
        token = EncryptionManager(derive_key("secret", "salt", 1_000)).encrypt("hello")
        other = EncryptionManager(derive_key("another", "salt", 1_000))
        with pytest.raises(DecryptionError):
            other.decrypt(token)

    def test_garbage_raises_decryption_error(self):
        manager = EncryptionManager(derive_key("secret", "salt", 1_000))
        with pytest.raises(DecryptionError):
            manager.decrypt("not-a-fernet-token")


class TestFieldCodec:
    def test_writes_current_version(self, codec):
        assert codec.version == EncryptionVersion.FERNET_V1

    def test_plaintext_version_is_returned_as_is(self, codec):
        assert codec.decode("legacy text", EncryptionVersion.PLAINTEXT) == "legacy text"
        assert codec.decode("legacy text", 0) == "legacy text"

    def test_encrypted_version_is_decrypted(self, codec):
        stored = codec.encode("secret answer")
        assert stored != "secret answer"
        assert codec.decode(stored, EncryptionVersion.FERNET_V1) == "secret answer"

    def test_unknown_version_raises(self, codec):
        with pytest.raises(CacheSerializationError, match="Unknown encryption version"):
            codec.decode("x", 7)


class TestCreateFieldCodec:
    def test_production_requires_secret(self):
        with pytest.raises(RuntimeError, match="ENCRYPTION_MASTER_SECRET"):
            create_field_codec(None, "salt", 1_000, production=True)

    def test_development_falls_back_with_warning(self, caplog):
        codec = create_field_codec(None, "salt", 1_000, production=False)
        assert isinstance(codec, FieldCodec)
        assert "development secret" in caplog.text
        assert codec.decode(codec.encode("x"), codec.version) == "x"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
