"""
auth/sessions.py -- Session Registry: token identifier -> user id, with TTL.

The registry exists for proactive revocation independent of a token's own
signed expiry. A row's existence means "this token has not been revoked";
logout and admin-forced logout delete rows.

Keys:
  auth:{jti}   one row per issued token. Two logins from two devices produce
               two rows, so neither evicts the other.

TTL:
  expires_at is stamped on insert from the registry TTL (default 30 days,
  independent of token expiry). get() treats an expired row as absent and
  deletes it; purge_expired() is called periodically from the API lifespan.

Failure model:
  SQLAlchemyError propagates unchanged. The TokenService converts it into
  ServerError so a registry outage is a 500, never a silent allow or deny.

Layer rule: no imports from api/, guard/, or workflow/.
"""

from __future__ import annotations

import time

from sqlalchemy import Column, Float, MetaData, String, Table
from sqlalchemy.engine import Engine

from auth.models import SessionEntry
from auth.store import make_engine

_DEFAULT_TTL = 30 * 24 * 60 * 60  # 30 days in seconds

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("key", String(128), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
)


def session_key(token_id: str) -> str:
    return f"auth:{token_id}"


class SessionRegistry:
    """Key/value store of live sessions with store-enforced expiry.

    Usage:
        registry = SessionRegistry(db_url)
        registry.set(session_key(jti), "42")
        registry.get(session_key(jti))        # "42" or None
        registry.delete_for_user("42")        # force logout everywhere
    """

    def __init__(self, db_url: str, ttl: int = _DEFAULT_TTL) -> None:
        self.ttl = ttl
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def set(self, key: str, user_id: str) -> None:
        """Store key -> user_id, replacing any existing row for the same key."""
        now = time.time()
        with self.engine.connect() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.key == key))
            conn.execute(
                _sessions.insert().values(key=key, user_id=str(user_id), created_at=now, expires_at=now + self.ttl)
            )
            conn.commit()

    def get(self, key: str) -> str | None:
        """Return the user id for key if the row exists and has not expired."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.key == key)).fetchone()
        if row is None:
            return None
        if row.expires_at <= time.time():
            self.delete(key)
            return None
        return row.user_id

    def delete(self, key: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.key == key))
            conn.commit()
        return result.rowcount > 0

    def delete_for_user(self, user_id: str) -> int:
        """Delete every session belonging to user_id. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == str(user_id)))
            conn.commit()
        return result.rowcount

    def list_for_user(self, user_id: str) -> list[SessionEntry]:
        """Return the user's unexpired sessions, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == str(user_id)) & (_sessions.c.expires_at > time.time()))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [SessionEntry(key=r.key, user_id=r.user_id, created_at=r.created_at) for r in rows]

    def purge_expired(self) -> int:
        """Delete all expired rows. Returns number of rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= time.time()))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()
