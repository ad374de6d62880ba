"""
workflow/service.py -- The permission request state machine.

    submit(principal, type, target, reason)   -> pending PermissionRequest
    review(admin, request_id, decision)       -> approved / rejected request

Submission rules:
  - type "permission": target must be a catalog key (the wildcard is never
    requestable) that the principal does not already hold.
  - type "role": target must be one of REQUESTABLE_ROLES and differ from the
    principal's role; super admins cannot request roles.
  - At most one pending request per (user, type, target). A duplicate is a
    Conflict. Different targets may be pending at the same time.

Review rules:
  - Only a principal holding the wildcard may review (Forbidden otherwise).
  - Unknown id -> NotFound. Non-pending -> InvalidState. The store's
    conditional update turns a lost race into InvalidState as well.
  - The workflow records status / reviewed_by / reviewed_at. The effect of an
    approval (grant the permission, change the role) belongs to the
    on_approved collaborator -- GrantApplier by default.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Optional

from auth.permissions import CATALOG_KEYS, SUPER_ADMIN_ROLE, WILDCARD
from core.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from workflow.models import (
    REQUEST_TYPES,
    STATUS_APPROVED,
    STATUS_REJECTED,
    TYPE_PERMISSION,
    TYPE_ROLE,
    PermissionRequest,
)

if TYPE_CHECKING:
    from auth.audit import AuditLogger
    from auth.models import Principal
    from auth.permissions import PermissionResolver
    from auth.store import UserStore
    from cache.store import PrincipalCache
    from workflow.store import PermissionRequestStore

logger = logging.getLogger("routeguard.workflow")

REQUESTABLE_ROLES = ("admin", "bot")

DECISIONS = (STATUS_APPROVED, STATUS_REJECTED)


class GrantApplier:
    """Applies an approved request to the requesting user's account."""

    def __init__(self, users: UserStore, principal_cache: Optional[PrincipalCache] = None) -> None:
        self._users = users
        self._cache = principal_cache

    def __call__(self, request: PermissionRequest) -> None:
        user_id = int(request.user_id)
        if request.type == TYPE_ROLE:
            applied = self._users.set_role(user_id, request.target)
        else:
            applied = self._users.add_extra_permission(user_id, request.target)
        if not applied:
            raise NotFound("Requesting user no longer exists.")
        if self._cache is not None:
            self._cache.invalidate(request.user_id)
        logger.info("Applied %s grant %r to user %s", request.type, request.target, request.user_id)


class PermissionRequestWorkflow:
    def __init__(
        self,
        store: PermissionRequestStore,
        resolver: PermissionResolver,
        users: UserStore,
        on_approved: Callable[[PermissionRequest], None],
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._users = users
        self._on_approved = on_approved
        self._audit = audit

    def submit(
        self,
        principal: Principal,
        type_: str,
        target: str,
        reason: str = "",
        ip: Optional[str] = None,
    ) -> PermissionRequest:
        if type_ not in REQUEST_TYPES:
            raise ValidationFailed(f"Unknown request type: {type_!r}.")

        if type_ == TYPE_PERMISSION:
            target = target.strip().upper()
            if target not in CATALOG_KEYS:
                raise ValidationFailed("Unknown permission key.", invalid=[target])
            if self._resolver.has(principal, target):
                raise ValidationFailed("You already hold this permission.")
        else:
            target = target.strip()
            if target not in REQUESTABLE_ROLES:
                raise ValidationFailed(f"Role {target!r} cannot be requested.")
            if principal.role == SUPER_ADMIN_ROLE:
                raise ValidationFailed("Super admins do not need to request roles.")
            if principal.role == target:
                raise ValidationFailed(f"You already have the {target} role.")

        if self._store.find_pending(principal.id, type_, target) is not None:
            raise Conflict("A request for this target is already pending.")

        request_id = self._store.create(
            PermissionRequest(user_id=principal.id, type=type_, target=target, reason=reason)
        )
        created = self._store.get(request_id)
        logger.info("User %s requested %s %r (request %s)", principal.id, type_, target, request_id)
        if self._audit is not None:
            self._audit.log_operation(
                principal.id,
                "PERMISSION_REQUEST_SUBMITTED",
                target=f"{type_}:{target}",
                details={"request_id": request_id, "reason": reason},
                ip=ip,
            )
        return created

    def review(
        self,
        admin: Principal,
        request_id: int,
        decision: str,
        ip: Optional[str] = None,
    ) -> PermissionRequest:
        if WILDCARD not in self._resolver.effective_permissions(admin):
            raise Forbidden(WILDCARD)
        if decision not in DECISIONS:
            raise ValidationFailed(f"Unknown decision: {decision!r}.")

        request = self._store.get(request_id)
        if request is None:
            raise NotFound("Permission request not found.")
        if request.is_terminal:
            raise InvalidState(f"Request already {request.status}.")
        if decision == STATUS_APPROVED and self._users.get_by_id(request.user_id) is None:
            raise NotFound("Requesting user no longer exists.")

        updated = self._store.transition(request_id, decision, reviewed_by=admin.id)
        if updated is None:
            raise InvalidState("Request was reviewed concurrently.")

        if decision == STATUS_APPROVED:
            self._on_approved(updated)

        logger.info("Request %s %s by %s", request_id, decision, admin.id)
        if self._audit is not None:
            self._audit.log_operation(
                admin.id,
                "PERMISSION_REQUEST_APPROVED" if decision == STATUS_APPROVED else "PERMISSION_REQUEST_REJECTED",
                target=f"{updated.type}:{updated.target}",
                details={"request_id": request_id, "user_id": updated.user_id},
                ip=ip,
            )
        return updated

    def list_requests(self, status: Optional[str] = None, user_id: Optional[str] = None) -> list[PermissionRequest]:
        return self._store.list_requests(status=status, user_id=user_id)
