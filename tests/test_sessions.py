"""Unit tests for auth/sessions.py and cache/store.py.

Covers:
- SessionRegistry set/get/delete, replacement of an existing key
- expired rows read as absent and are removed
- delete_for_user() and list_for_user() scope by user id
- purge_expired() removes only expired rows
- PrincipalCache TTL, invalidation and the disabled (ttl=0) mode
- an expired read never evicts a snapshot refreshed in the meantime
"""

import time

import pytest

from auth.models import User
from auth.sessions import SessionRegistry, session_key
from cache.store import PrincipalCache

# ---------------------------------------------------------------------------
# SessionRegistry
# ---------------------------------------------------------------------------


@pytest.fixture
def registry(db_url):
    r = SessionRegistry(db_url, ttl=3600)
    yield r
    r.close()


def test_session_key_format():
    assert session_key("abc123") == "auth:abc123"


def test_set_get_delete(registry):
    registry.set("auth:t1", "7")
    assert registry.get("auth:t1") == "7"
    assert registry.delete("auth:t1") is True
    assert registry.get("auth:t1") is None
    assert registry.delete("auth:t1") is False


def test_set_replaces_existing_key(registry):
    registry.set("auth:t1", "7")
    registry.set("auth:t1", "8")
    assert registry.get("auth:t1") == "8"


def test_expired_entry_reads_as_absent(db_url):
    expired = SessionRegistry(db_url, ttl=-1)
    try:
        expired.set("auth:old", "7")
        assert expired.get("auth:old") is None
        # The expired row was deleted on read.
        assert expired.delete("auth:old") is False
    finally:
        expired.close()


def test_delete_for_user_scopes_by_user(registry):
    registry.set("auth:a", "7")
    registry.set("auth:b", "7")
    registry.set("auth:c", "8")
    assert registry.delete_for_user("7") == 2
    assert registry.get("auth:c") == "8"


def test_list_for_user_newest_first(registry):
    registry.set("auth:first", "7")
    time.sleep(0.01)
    registry.set("auth:second", "7")
    registry.set("auth:other", "8")
    assert [s.key for s in registry.list_for_user("7")] == ["auth:second", "auth:first"]


def test_purge_expired(db_url):
    live = SessionRegistry(db_url, ttl=3600)
    stale = SessionRegistry(db_url, ttl=-1)
    try:
        live.set("auth:live", "7")
        stale.set("auth:stale", "7")
        assert live.purge_expired() == 1
        assert live.get("auth:live") == "7"
    finally:
        stale.close()
        live.close()


# ---------------------------------------------------------------------------
# PrincipalCache
# ---------------------------------------------------------------------------


def _user(role="user"):
    return User(username="alice", role=role, id=7)


def test_cache_get_set_invalidate():
    cache = PrincipalCache(ttl=60)
    assert cache.get("7") is None
    cache.set("7", _user())
    assert cache.get(7).role == "user"
    cache.invalidate("7")
    assert cache.get("7") is None


def test_cache_entry_expires():
    cache = PrincipalCache(ttl=0.01)
    cache.set("7", _user())
    time.sleep(0.03)
    assert cache.get("7") is None


def test_cache_disabled_with_zero_ttl():
    cache = PrincipalCache(ttl=0)
    cache.set("7", _user())
    assert cache.get("7") is None


def test_cache_purge_expired():
    cache = PrincipalCache(ttl=0.01)
    cache.set("7", _user())
    cache.set("8", _user())
    time.sleep(0.03)
    assert cache.purge_expired() == 2


class _RefreshedAfterRead(dict):
    """Entries whose first read is followed by a concurrent set() of `fresh`."""

    fresh = None

    def get(self, key, default=None):
        entry = super().get(key, default)
        if self.fresh is not None:
            self[key], self.fresh = self.fresh, None
        return entry


def test_cache_expiry_keeps_entry_refreshed_concurrently():
    cache = PrincipalCache(ttl=5)
    entries = _RefreshedAfterRead({"7": (_user("user"), time.monotonic() - 60)})
    entries.fresh = (_user("admin"), time.monotonic())
    cache._entries = entries

    assert cache.get("7") is None
    assert cache.get("7").role == "admin"
