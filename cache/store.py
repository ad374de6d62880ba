"""
cache/store.py -- In-memory TTL cache for live user snapshots.

The TokenService refreshes every authenticated request with the user's
current role and overrides. Hitting the user table on every request is
wasteful, so snapshots are kept here for a few seconds (default 5). Admin
routes that change a user's role or permissions call invalidate() so the
change is visible on the very next request.

Usage:
    cache = PrincipalCache(ttl=5)
    user = cache.get("42")        # returns User or None
    cache.set("42", user)
    cache.invalidate("42")
    cache.purge_expired()         # call periodically to trim old entries
"""

import time
from typing import Optional

from auth.models import User

_DEFAULT_TTL = 5  # seconds


class PrincipalCache:
    def __init__(self, ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        self._entries: dict[str, tuple[User, float]] = {}

    def get(self, user_id: str) -> Optional[User]:
        """Return the cached user if it exists and hasn't expired."""
        key = str(user_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        user, cached_at = entry
        if time.monotonic() - cached_at > self.ttl:
            self._evict(key, entry)
            return None
        return user

    def set(self, user_id: str, user: User) -> None:
        """Store a snapshot, replacing any existing entry."""
        if self.ttl <= 0:
            return
        self._entries[str(user_id)] = (user, time.monotonic())

    def invalidate(self, user_id: str) -> None:
        self._entries.pop(str(user_id), None)

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number of entries removed."""
        cutoff = time.monotonic() - self.ttl
        stale = [(k, entry) for k, entry in list(self._entries.items()) if entry[1] < cutoff]
        return sum(1 for key, entry in stale if self._evict(key, entry))

    def _evict(self, key: str, entry: tuple[User, float]) -> bool:
        # Only drop the entry that was found stale. A set() from another
        # threadpool worker since then has replaced it.
        if self._entries.get(key) is not entry:
            return False
        self._entries.pop(key, None)
        return True

    def clear(self) -> None:
        self._entries.clear()
