"""
auth/store.py -- SQLAlchemy Core persistence layer for users and roles.

Pattern: Repository + Data Mapper.
UserStore and RoleStore are the repositories; _row_to_user / _row_to_role are
the mappers. Route, service and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Storage of sets:
  Role.permissions and User.extra_permissions are JSON arrays in a TEXT
  column. Writers de-duplicate before serializing, so a stored set never
  carries duplicate keys.

DB path: routeguard.db at the project root unless DATABASE_URL is set.

Layer rule: no imports from api/, guard/, or workflow/.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import Role, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL = cannot log in locally
    Column("role", String(50), nullable=False, server_default="user"),
    Column("extra_permissions", Text, nullable=False, server_default="[]"),  # JSON array
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("permissions", Text, nullable=False, server_default="[]"),  # JSON array
    Column("description", Text, nullable=False, server_default=""),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every store in this project uses.

    Shared by UserStore, RoleStore, SessionRegistry and PermissionRequestStore
    so test fixtures can point them all at one named in-memory database.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and "mode=memory" not in db_url and ":memory:" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dedupe(keys: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(keys))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///routeguard.db")
        uid = store.create_user(User(username="alice", hashed_password=hash_password("secret")))
        store.add_extra_permission(uid, "FITNESS:READ_ALL")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine, tables=[_users])

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    display_name=user.display_name or user.username,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    extra_permissions=json.dumps(_dedupe(user.extra_permissions)),
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int | str) -> User | None:
        """Look up a user by primary key. Non-numeric ids simply do not match."""
        try:
            pk = int(user_id)
        except (TypeError, ValueError):
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == pk)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_by_role(self, role: str) -> int:
        """Count active users holding role. Used to block deleting a role in use."""
        with self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM users WHERE role = :role AND is_active = 1"),
                {"role": role},
            ).scalar()
        return result or 0

    def set_role(self, user_id: int, role: str) -> bool:
        """Replace the user's role. Returns False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(role=role))
            conn.commit()
        return result.rowcount > 0

    def set_extra_permissions(self, user_id: int, keys: Iterable[str]) -> bool:
        """Replace the user's personal overrides. Returns False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(extra_permissions=json.dumps(_dedupe(keys)))
            )
            conn.commit()
        return result.rowcount > 0

    def add_extra_permission(self, user_id: int, key: str) -> bool:
        """Add one override if not already present. Returns False if not found."""
        user = self.get_by_id(user_id)
        if user is None:
            return False
        if key in user.extra_permissions:
            return True
        return self.set_extra_permissions(user_id, [*user.extra_permissions, key])

    def set_active(self, user_id: int, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleStore:
    """Repository for Role entities.

    The PermissionResolver reads list_roles() on load/reload. Writers here do
    not touch the cache -- callers reload the resolver after a mutation.
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine, tables=[_roles])

    def list_roles(self) -> list[Role]:
        """Return all roles ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def get_role(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def create_role(self, role: Role) -> None:
        """Insert a role. Raises sqlalchemy.exc.IntegrityError on a duplicate name."""
        with self.engine.connect() as conn:
            conn.execute(
                _roles.insert().values(
                    name=role.name,
                    permissions=json.dumps(_dedupe(role.permissions)),
                    description=role.description,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()

    def update_role(self, name: str, permissions: list[str] | None = None, description: str | None = None) -> bool:
        """Update permissions and/or description. Returns False if the role does not exist."""
        values: dict = {"updated_at": _now_iso()}
        if permissions is not None:
            values["permissions"] = json.dumps(_dedupe(permissions))
        if description is not None:
            values["description"] = description
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.name == name).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, name: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_roles.delete().where(_roles.c.name == name))
            conn.commit()
        return result.rowcount > 0

    def seed_defaults(self, defaults: dict[str, list[str]]) -> int:
        """Insert the default roles when the table is empty. Returns the number inserted."""
        with self.engine.connect() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM roles")).scalar() or 0
            if count:
                return 0
            now = _now_iso()
            for name, perms in defaults.items():
                conn.execute(
                    _roles.insert().values(
                        name=name, permissions=json.dumps(_dedupe(perms)), description="", updated_at=now
                    )
                )
            conn.commit()
        return len(defaults)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        role=row.role,
        extra_permissions=json.loads(row.extra_permissions or "[]"),
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )


def _row_to_role(row) -> Role:
    return Role(
        name=row.name,
        permissions=json.loads(row.permissions or "[]"),
        description=row.description or "",
        updated_at=row.updated_at,
    )
