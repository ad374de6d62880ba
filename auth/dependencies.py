"""
auth/dependencies.py -- FastAPI Depends() helpers exposing the request Principal.

The guard middleware has already authenticated and authorized the request by
the time a handler runs; these helpers only read what it stored and reach the
shared services on app.state.

get_principal()             -- Principal or None (guest). Never raises.
require_principal()         -- Principal, or Unauthenticated (401).
get_effective_permissions() -- the principal's merged permission set.
require_permission(key)     -- dependency factory for handlers that need a
                               finer check than the route table expresses.

Layer rule: no imports from api/, guard/, or workflow/.
  auth/dependencies.py may import from fastapi because it is part of the
  FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.models import Principal
from auth.permissions import PermissionResolver
from core.errors import Forbidden, Unauthenticated


def get_principal(request: Request) -> Principal | None:
    return getattr(request.state, "principal", None)


def require_principal(request: Request) -> Principal:
    """Require authentication. Raises Unauthenticated if the request is a guest.

    Use as a FastAPI dependency:
        @router.get("/me")
        async def route(principal: Principal = Depends(require_principal)): ...
    """
    principal = get_principal(request)
    if principal is None:
        raise Unauthenticated()
    return principal


def get_resolver(request: Request) -> PermissionResolver:
    return request.app.state.resolver


def get_effective_permissions(request: Request) -> frozenset[str]:
    return get_resolver(request).effective_permissions(get_principal(request))


def require_permission(key: str) -> Callable[[Request], Principal]:
    """Build a dependency that requires key (or the wildcard).

        @router.get("/stats", dependencies=[Depends(require_permission("FITNESS:READ_ALL"))])
    """

    def dependency(request: Request) -> Principal:
        principal = require_principal(request)
        if not get_resolver(request).has(principal, key):
            raise Forbidden(key)
        return principal

    return dependency
