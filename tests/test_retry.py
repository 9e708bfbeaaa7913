"""Tests for the background retry policy."""

import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from semcache.core.retry import RetryPolicy
from semcache.domain.exceptions import CacheConnectionError


class TestBackoff:
    def test_grows_exponentially_with_jitter(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=100.0)
        assert 1.0 <= policy.calculate_backoff_time(1) <= 1.5
        assert 4.0 <= policy.calculate_backoff_time(3) <= 4.5

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert policy.calculate_backoff_time(12) == 5.0


class TestExecuteWithRetry:
    @pytest.mark.anyio
    async def test_returns_first_success(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.001)
        attempts = []

        async def persist(entry_id, ttl=None):
            attempts.append((entry_id, ttl))
            if len(attempts) < 2:
                raise CacheConnectionError("redis down")
            return entry_id

        assert await policy.execute_with_retry(persist, "e1", ttl=60) == "e1"
        assert attempts == [("e1", 60), ("e1", 60)]

    @pytest.mark.anyio
    async def test_reraises_last_error(self):
        policy = RetryPolicy(max_attempts=4, base_delay=0.001)
        attempts = 0

        async def persist():
            nonlocal attempts
            attempts += 1
            raise CacheConnectionError(f"attempt {attempts}")

        with pytest.raises(CacheConnectionError, match="attempt 4"):
            await policy.execute_with_retry(persist)
        assert attempts == 4

    @pytest.mark.anyio
    async def test_single_attempt_does_not_sleep(self):
        policy = RetryPolicy(max_attempts=1, base_delay=60.0)

        async def persist():
            raise CacheConnectionError("down")

        with pytest.raises(CacheConnectionError):
            await policy.execute_with_retry(persist)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
