"""Tests for the Redis-backed attempt tracker and the runtime's choice of tracker."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from trackerauth.config import reset_settings_cache
from trackerauth.service.lockout import InMemoryAttemptTracker, attempt_key
from trackerauth.storage.redis_cache import RedisAttemptTracker


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=1)
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    client.pipeline.return_value = pipe
    return client


@pytest.fixture
def tracker(redis_client):
    return RedisAttemptTracker("redis://localhost:6379/0", window_seconds=900, client=redis_client)


class TestRedisAttemptTracker:
    def test_keys_are_hashed_into_namespace(self):
        key = RedisAttemptTracker._normalize_key(attempt_key("10.0.0.1"))
        assert key.startswith("auth:attempts:")
        assert "10.0.0.1" not in key
        assert key == RedisAttemptTracker._normalize_key("login_attempts_10.0.0.1")

    async def test_missing_key_counts_as_zero(self, tracker, redis_client):
        assert await tracker.get_attempts(attempt_key("10.0.0.1")) == 0
        redis_client.get.assert_awaited_once_with(
            RedisAttemptTracker._normalize_key(attempt_key("10.0.0.1"))
        )

    async def test_stored_count_is_parsed(self, tracker, redis_client):
        redis_client.get.return_value = "3"
        assert await tracker.get_attempts(attempt_key("10.0.0.1")) == 3

    async def test_corrupt_count_reads_as_zero(self, tracker, redis_client):
        redis_client.get.return_value = "not-a-number"
        assert await tracker.get_attempts(attempt_key("10.0.0.1")) == 0

    async def test_failure_increments_and_slides_window_atomically(self, tracker, redis_client):
        redis_client.pipeline.return_value.execute.return_value = [4, True]

        count = await tracker.track_failed_attempt(attempt_key("10.0.0.1"))

        assert count == 4
        redis_client.pipeline.assert_called_once_with(transaction=True)
        pipe = redis_client.pipeline.return_value
        redis_key = RedisAttemptTracker._normalize_key(attempt_key("10.0.0.1"))
        pipe.incr.assert_called_once_with(redis_key)
        pipe.expire.assert_called_once_with(redis_key, 900)

    async def test_reset_deletes_key(self, tracker, redis_client):
        await tracker.reset(attempt_key("10.0.0.1"))
        redis_client.delete.assert_awaited_once_with(
            RedisAttemptTracker._normalize_key(attempt_key("10.0.0.1"))
        )


class TestRuntimeTrackerSelection:
    """The runtime only uses Redis when REDIS_URL is set and reachable."""

    def test_defaults_to_in_memory_tracker(self):
        from trackerauth.service.runtime import get_runtime

        assert isinstance(get_runtime().attempt_tracker, InMemoryAttemptTracker)

    def test_unreachable_redis_falls_back_in_test_mode(self, monkeypatch):
        from trackerauth.service.runtime import Runtime

        monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
        reset_settings_cache()
        with patch.object(
            RedisAttemptTracker, "verify_connection", side_effect=ConnectionError("refused")
        ):
            runtime = Runtime()
        assert isinstance(runtime.attempt_tracker, InMemoryAttemptTracker)
        assert runtime.attempt_tracker.window_seconds == 15 * 60

    def test_unreachable_redis_is_fatal_outside_test_mode(self, monkeypatch):
        from trackerauth.service.runtime import Runtime

        monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
        reset_settings_cache()
        with patch.object(
            RedisAttemptTracker, "verify_connection", side_effect=ConnectionError("refused")
        ):
            with pytest.raises(RuntimeError, match="REDIS_URL is set"):
                Runtime()
        reset_settings_cache()

    def test_reachable_redis_is_used(self, monkeypatch):
        from trackerauth.service.runtime import Runtime

        monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:6379/0")
        reset_settings_cache()
        with patch.object(RedisAttemptTracker, "verify_connection", return_value=None):
            runtime = Runtime()
        assert isinstance(runtime.attempt_tracker, RedisAttemptTracker)
        assert runtime.attempt_tracker.window_seconds == 900
        assert runtime.auth.attempt_tracker is runtime.attempt_tracker
        reset_settings_cache()
