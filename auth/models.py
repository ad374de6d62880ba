"""
auth/models.py -- Domain dataclasses for authentication and RBAC entities.

Pattern: Data class. Stores and services do the work; these own the shape.
Principal is the one exception with behaviour: its constructors are the single
normalization step for identity claims, so no downstream code needs to check
for legacy field names.

Layer rule: no imports from api/, guard/, or workflow/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from auth.permissions import PermissionResolver


@dataclass
class User:
    """A stored account.

    extra_permissions are personal overrides merged on top of the role's
    permission set by the PermissionResolver. hashed_password is None for
    accounts that cannot log in locally (e.g. bots provisioned by the CLI).
    """

    username: str
    role: str = "user"
    display_name: str = ""
    id: int | None = None
    hashed_password: str | None = None
    extra_permissions: list[str] = field(default_factory=list)
    created_at: str | None = None
    is_active: bool = True


@dataclass
class Role:
    """A named permission set. permissions never contains duplicates."""

    name: str
    permissions: list[str] = field(default_factory=list)
    description: str = ""
    updated_at: str | None = None


@dataclass
class SessionEntry:
    """One Session Registry row. Existence means "not revoked"."""

    key: str
    user_id: str
    created_at: float


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a request. Guest is None.

    id is always a string: numeric database ids and opaque ids from older
    tokens compare the same way. token_id is the jti of the token the
    request presented, used by logout to revoke exactly that session.
    """

    id: str
    role: str
    extra_permissions: frozenset[str] = frozenset()
    display_name: str = ""
    token_id: str | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any], token_id: str | None = None) -> Principal:
        """Build a Principal from token claims, resolving legacy aliases.

        Tokens have carried the identifier as "id", "_id" or "sub", and the
        name as "displayName" or "name". All of them collapse here.
        """
        user = claims.get("user") if isinstance(claims.get("user"), dict) else claims
        raw_id = user.get("id") or user.get("_id") or claims.get("sub")
        if raw_id is None:
            raise ValueError("claims carry no user identifier")
        return cls(
            id=str(raw_id),
            role=user.get("role") or "user",
            extra_permissions=frozenset(user.get("extraPermissions") or ()),
            display_name=user.get("displayName") or user.get("name") or "",
            token_id=token_id or claims.get("jti"),
        )

    @classmethod
    def from_user(cls, user: User, token_id: str | None = None) -> Principal:
        return cls(
            id=str(user.id),
            role=user.role,
            extra_permissions=frozenset(user.extra_permissions),
            display_name=user.display_name or user.username,
            token_id=token_id,
        )

    def effective_permissions(self, resolver: PermissionResolver) -> frozenset[str]:
        return resolver.effective_permissions(self)
