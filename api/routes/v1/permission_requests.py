"""
api/routes/v1/permission_requests.py -- HTTP surface of the request workflow.

Routes:
  POST /api/v1/permission-requests               -- request a permission key
  POST /api/v1/permission-requests/role          -- request the admin or bot role
  GET  /api/v1/permission-requests/mine          -- the caller's own requests
  GET  /api/v1/permission-requests?status=       -- all requests (super admin)
  PUT  /api/v1/permission-requests/{id}/approve  -- approve and apply (super admin)
  PUT  /api/v1/permission-requests/{id}/reject   -- reject (super admin)

The guard gates each route; PermissionRequestWorkflow repeats the reviewer
check so the state machine is safe to call from anywhere else.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import (
    PermissionRequestCreate,
    PermissionRequestResponse,
    RequestStatusEnum,
    RoleRequestCreate,
)
from auth.dependencies import require_principal
from auth.models import Principal
from workflow.models import STATUS_APPROVED, STATUS_REJECTED, TYPE_PERMISSION, TYPE_ROLE
from workflow.service import PermissionRequestWorkflow

router = APIRouter()


def _workflow(request: Request) -> PermissionRequestWorkflow:
    return request.app.state.workflow


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/permission-requests", response_model=PermissionRequestResponse, status_code=201)
def request_permission(
    request: Request,
    body: PermissionRequestCreate,
    principal: Principal = Depends(require_principal),
) -> PermissionRequestResponse:
    created = _workflow(request).submit(
        principal, TYPE_PERMISSION, body.permission, body.reason, ip=_client_ip(request)
    )
    return PermissionRequestResponse.from_request(created)


@router.post("/permission-requests/role", response_model=PermissionRequestResponse, status_code=201)
def request_role(
    request: Request,
    body: RoleRequestCreate,
    principal: Principal = Depends(require_principal),
) -> PermissionRequestResponse:
    created = _workflow(request).submit(principal, TYPE_ROLE, body.role.value, body.reason, ip=_client_ip(request))
    return PermissionRequestResponse.from_request(created)


@router.get("/permission-requests/mine", response_model=list[PermissionRequestResponse])
def my_requests(
    request: Request,
    principal: Principal = Depends(require_principal),
) -> list[PermissionRequestResponse]:
    return [PermissionRequestResponse.from_request(r) for r in _workflow(request).list_requests(user_id=principal.id)]


@router.get("/permission-requests", response_model=list[PermissionRequestResponse])
def list_requests(
    request: Request,
    status: Optional[RequestStatusEnum] = None,
) -> list[PermissionRequestResponse]:
    rows = _workflow(request).list_requests(status=status.value if status else None)
    return [PermissionRequestResponse.from_request(r) for r in rows]


@router.put("/permission-requests/{request_id}/approve", response_model=PermissionRequestResponse)
def approve(
    request: Request,
    request_id: int,
    admin: Principal = Depends(require_principal),
) -> PermissionRequestResponse:
    updated = _workflow(request).review(admin, request_id, STATUS_APPROVED, ip=_client_ip(request))
    return PermissionRequestResponse.from_request(updated)


@router.put("/permission-requests/{request_id}/reject", response_model=PermissionRequestResponse)
def reject(
    request: Request,
    request_id: int,
    admin: Principal = Depends(require_principal),
) -> PermissionRequestResponse:
    updated = _workflow(request).review(admin, request_id, STATUS_REJECTED, ip=_client_ip(request))
    return PermissionRequestResponse.from_request(updated)
