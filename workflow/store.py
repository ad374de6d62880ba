"""
workflow/store.py -- SQLAlchemy-backed persistence for permission requests.

Pattern: Repository + Data Mapper, same as auth/store.py.

Single transition:
  transition() issues UPDATE ... WHERE id = :id AND status = 'pending'. Two
  admins reviewing the same request concurrently cannot both succeed: the
  second update matches zero rows and the caller reports InvalidState.

Usage:
    store = PermissionRequestStore(db_url)
    req_id = store.create(PermissionRequest(user_id="7", type="permission", target="FITNESS:READ_ALL"))
    store.transition(req_id, "approved", reviewed_by="1")
    store.close()
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from auth.store import make_engine
from workflow.models import STATUS_PENDING, PermissionRequest

_metadata = MetaData()

_requests = Table(
    "permission_requests",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("type", String(20), nullable=False, server_default="permission"),
    Column("target", String(100), nullable=False),
    Column("reason", Text, nullable=False, server_default=""),
    Column("status", String(20), nullable=False, server_default=STATUS_PENDING),
    Column("reviewed_by", String(64)),
    Column("reviewed_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PermissionRequestStore:
    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def create(self, request: PermissionRequest) -> int:
        """Insert a new pending request and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _requests.insert().values(
                    user_id=str(request.user_id),
                    type=request.type,
                    target=request.target,
                    reason=request.reason,
                    status=STATUS_PENDING,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get(self, request_id: int) -> Optional[PermissionRequest]:
        with self.engine.connect() as conn:
            row = conn.execute(_requests.select().where(_requests.c.id == request_id)).fetchone()
        return _row_to_request(row) if row is not None else None

    def find_pending(self, user_id: str, type_: str, target: str) -> Optional[PermissionRequest]:
        """Return the user's pending request for (type, target), if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _requests.select().where(
                    (_requests.c.user_id == str(user_id))
                    & (_requests.c.type == type_)
                    & (_requests.c.target == target)
                    & (_requests.c.status == STATUS_PENDING)
                )
            ).fetchone()
        return _row_to_request(row) if row is not None else None

    def list_requests(self, status: Optional[str] = None, user_id: Optional[str] = None) -> list[PermissionRequest]:
        """Return requests newest first, optionally filtered by status and/or user."""
        query = _requests.select()
        if status is not None:
            query = query.where(_requests.c.status == status)
        if user_id is not None:
            query = query.where(_requests.c.user_id == str(user_id))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_requests.c.id.desc())).fetchall()
        return [_row_to_request(r) for r in rows]

    def transition(self, request_id: int, status: str, reviewed_by: str) -> Optional[PermissionRequest]:
        """Move a pending request to status. Returns the updated request.

        Returns None when no pending row with request_id exists -- either it
        was never created or it already reached a terminal state.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _requests.update()
                .where((_requests.c.id == request_id) & (_requests.c.status == STATUS_PENDING))
                .values(status=status, reviewed_by=str(reviewed_by), reviewed_at=_now_iso())
            )
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get(request_id)

    def close(self) -> None:
        self.engine.dispose()


def _row_to_request(row) -> PermissionRequest:
    return PermissionRequest(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        target=row.target,
        reason=row.reason or "",
        status=row.status,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        created_at=row.created_at,
    )
