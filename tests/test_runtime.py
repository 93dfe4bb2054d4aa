import pytest

from trackerauth.config import reset_settings_cache
from trackerauth.service.runtime import (
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from trackerauth.storage.memory import MemoryStore
from trackerauth.storage.models import DEFAULT_ROLES


@pytest.mark.parametrize(
    "url,expected",
    [
        ("postgresql://app:hunter2@db:5432/tracker", "postgresql://app:***@db:5432/tracker"),
        ("redis://:pw@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://db/tracker", "postgresql://db/tracker"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


def test_runtime_is_a_singleton_with_seeded_roles():
    runtime = get_runtime()
    assert get_runtime() is runtime
    assert isinstance(runtime.store, MemoryStore)
    assert all(runtime.store.role_exists(role) for role in DEFAULT_ROLES)
    assert runtime.auth.store is runtime.store


def test_reset_requires_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    reset_settings_cache()
    with pytest.raises(RuntimeError, match="TEST_MODE"):
        reset_runtime_for_tests()
    reset_settings_cache()


def test_missing_jwt_secret_fails_startup(monkeypatch):
    from trackerauth.service.errors import ConfigurationError

    monkeypatch.delenv("JWT_SECRET", raising=False)
    reset_settings_cache()
    with pytest.raises(ConfigurationError) as exc_info:
        reset_runtime_for_tests()
    assert exc_info.value.detail == {"missing": ["JWT_SECRET"]}
    reset_settings_cache()
