"""
api/routes/v1/users.py -- Registration and user privilege administration.

Routes:
  POST   /api/v1/users                    -- self-registration (public, role "user")
  GET    /api/v1/users                    -- list users (super admin)
  PUT    /api/v1/users/{id}/role          -- replace role (super admin)
  PUT    /api/v1/users/{id}/permissions   -- replace extra permissions (super admin)
  DELETE /api/v1/users/{id}/sessions      -- forced logout on every device (super admin)

Every privilege change drops the user's live snapshot so the next request
sees it, and is written to the audit log.

[M4] A super admin cannot change their own role, and the last active
super admin cannot be demoted.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    SessionRevokeResponse,
    UserCreate,
    UserPermissionsUpdate,
    UserResponse,
    UserRoleUpdate,
)
from auth.dependencies import require_principal
from auth.models import Principal, User
from auth.permissions import SUPER_ADMIN_ROLE, normalize_permissions
from auth.store import UserStore
from auth.tokens import hash_password
from core.errors import Conflict, NotFound, ServerError, ValidationFailed

router = APIRouter()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _get_user_or_404(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user


def _reload_user(store: UserStore, user_id: int) -> UserResponse:
    user = store.get_by_id(user_id)
    if user is None:
        raise ServerError("User not found after write.")
    return UserResponse.from_user(user)


@router.post("/users", response_model=UserResponse, status_code=201)
def register(request: Request, body: UserCreate) -> UserResponse:
    """Create an account with the default "user" role."""
    if not request.app.state.settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    store: UserStore = request.app.state.user_store
    new_user = User(
        username=body.username,
        display_name=body.display_name or body.username,
        hashed_password=hash_password(body.password),
        role="user",
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError as exc:
        raise Conflict("A user with that username already exists.") from exc
    request.app.state.audit.log_operation(str(user_id), "REGISTER", target=body.username, ip=_client_ip(request))
    return _reload_user(store, user_id)


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in request.app.state.user_store.list_users()]


@router.put("/users/{user_id}/role", response_model=UserResponse)
def update_role(
    request: Request,
    user_id: int,
    body: UserRoleUpdate,
    admin: Principal = Depends(require_principal),
) -> UserResponse:
    state = request.app.state
    store: UserStore = state.user_store
    target = _get_user_or_404(store, user_id)

    if body.role not in state.resolver.snapshot():
        raise ValidationFailed(f"Role {body.role!r} does not exist.")
    if str(target.id) == admin.id and body.role != target.role:
        raise ValidationFailed("You cannot change your own role.")
    if target.role == SUPER_ADMIN_ROLE and body.role != SUPER_ADMIN_ROLE:
        if store.count_by_role(SUPER_ADMIN_ROLE) <= 1:
            raise ValidationFailed("Cannot demote the last active super admin.")

    store.set_role(user_id, body.role)
    state.principal_cache.invalidate(str(user_id))
    state.audit.log_operation(
        admin.id,
        "USER_ROLE_CHANGED",
        target=str(user_id),
        details={"from": target.role, "to": body.role},
        ip=_client_ip(request),
    )
    return _reload_user(store, user_id)


@router.put("/users/{user_id}/permissions", response_model=UserResponse)
def update_permissions(
    request: Request,
    user_id: int,
    body: UserPermissionsUpdate,
    admin: Principal = Depends(require_principal),
) -> UserResponse:
    state = request.app.state
    store: UserStore = state.user_store
    target = _get_user_or_404(store, user_id)
    keys = normalize_permissions(body.permissions)

    store.set_extra_permissions(user_id, keys)
    state.principal_cache.invalidate(str(user_id))
    state.audit.log_operation(
        admin.id,
        "USER_PERMISSIONS_CHANGED",
        target=str(user_id),
        details={"from": list(target.extra_permissions), "to": keys},
        ip=_client_ip(request),
    )
    return _reload_user(store, user_id)


@router.delete("/users/{user_id}/sessions", response_model=SessionRevokeResponse)
def revoke_sessions(
    request: Request,
    user_id: int,
    admin: Principal = Depends(require_principal),
) -> SessionRevokeResponse:
    state = request.app.state
    _get_user_or_404(state.user_store, user_id)
    removed = state.token_service.revoke_all(str(user_id))
    state.audit.log_operation(
        admin.id,
        "USER_SESSIONS_REVOKED",
        target=str(user_id),
        details={"revoked": removed},
        ip=_client_ip(request),
    )
    return SessionRevokeResponse(user_id=user_id, revoked=removed)
