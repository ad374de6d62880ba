"""
api/routes/v1/roles.py -- Role administration (super admin only, via the guard).

Routes:
  GET    /api/v1/roles           -- list roles with their permission sets
  POST   /api/v1/roles           -- create a role
  PUT    /api/v1/roles/{name}    -- replace permissions and/or description
  DELETE /api/v1/roles/{name}    -- delete an unused role
  POST   /api/v1/roles/reload    -- re-read the role table into the resolver

Permission lists are normalized by normalize_permissions() (upper-case,
de-duplicated, validated against the catalog). The super_admin role must keep
the wildcard and cannot be deleted. Every mutation reloads the resolver so
the new sets apply to the next request.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import ReloadResponse, RoleCreate, RoleResponse, RoleUpdate
from auth.dependencies import require_principal
from auth.models import Principal, Role
from auth.permissions import SUPER_ADMIN_ROLE, WILDCARD, PermissionResolver, normalize_permissions
from auth.store import RoleStore
from core.errors import Conflict, NotFound, ServerError, ValidationFailed

router = APIRouter()


def _audit(request: Request, admin: Principal, action: str, name: str, details: dict | None = None) -> None:
    request.app.state.audit.log_operation(
        admin.id,
        action,
        target=name,
        details=details,
        ip=request.client.host if request.client else None,
    )


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in request.app.state.role_store.list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    admin: Principal = Depends(require_principal),
) -> RoleResponse:
    store: RoleStore = request.app.state.role_store
    permissions = normalize_permissions(body.permissions)
    try:
        store.create_role(Role(name=body.name, permissions=permissions, description=body.description))
    except IntegrityError as exc:
        raise Conflict(f"Role {body.name!r} already exists.") from exc
    request.app.state.resolver.reload()
    _audit(request, admin, "ROLE_CREATED", body.name, {"permissions": permissions})
    return _fetch(store, body.name)


@router.put("/roles/{name}", response_model=RoleResponse)
def update_role(
    request: Request,
    name: str,
    body: RoleUpdate,
    admin: Principal = Depends(require_principal),
) -> RoleResponse:
    store: RoleStore = request.app.state.role_store
    existing = store.get_role(name)
    if existing is None:
        raise NotFound("Role not found.")

    permissions = normalize_permissions(body.permissions) if body.permissions is not None else None
    if name == SUPER_ADMIN_ROLE and permissions is not None and WILDCARD not in permissions:
        raise ValidationFailed("The super_admin role must keep the wildcard permission.")

    store.update_role(name, permissions=permissions, description=body.description)
    request.app.state.resolver.reload()
    _audit(
        request,
        admin,
        "ROLE_UPDATED",
        name,
        {"from": list(existing.permissions), "to": permissions if permissions is not None else list(existing.permissions)},
    )
    return _fetch(store, name)


@router.delete("/roles/{name}", status_code=204)
def delete_role(
    request: Request,
    name: str,
    admin: Principal = Depends(require_principal),
) -> Response:
    if name == SUPER_ADMIN_ROLE:
        raise ValidationFailed("The super_admin role cannot be deleted.")
    state = request.app.state
    if state.role_store.get_role(name) is None:
        raise NotFound("Role not found.")
    in_use = state.user_store.count_by_role(name)
    if in_use:
        raise Conflict(f"Role {name!r} is assigned to {in_use} user(s).")
    state.role_store.delete_role(name)
    state.resolver.reload()
    _audit(request, admin, "ROLE_DELETED", name)
    return Response(status_code=204)


@router.post("/roles/reload", response_model=ReloadResponse)
def reload_roles(request: Request) -> ReloadResponse:
    resolver: PermissionResolver = request.app.state.resolver
    resolver.reload()
    return ReloadResponse(roles=len(resolver.snapshot()))


def _fetch(store: RoleStore, name: str) -> RoleResponse:
    role = store.get_role(name)
    if role is None:
        raise ServerError("Role not found after write.")
    return RoleResponse.from_role(role)
