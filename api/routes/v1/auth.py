"""
api/routes/v1/auth.py -- Login, logout and identity endpoints.

Routes:
  POST /api/v1/auth/login   -- password login; returns a signed token
  POST /api/v1/auth/logout  -- revokes the session of the presented token
  GET  /api/v1/auth/me      -- current principal and effective permissions

Access is decided by the guard (guard/route_map.py): login is public, the
other two require a principal.

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import LoginRequest, LoginResponse, LogoutResponse, MeResponse
from auth.dependencies import get_effective_permissions, require_principal
from auth.models import Principal
from auth.store import UserStore
from auth.tokens import TokenService, authenticate_user

router = APIRouter()


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password and issue a token.

    The same generic error is returned for a wrong username and a wrong
    password so username existence does not leak.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    token_service: TokenService = request.app.state.token_service
    issued = token_service.issue(user)
    request.app.state.audit.log_operation(
        str(user.id), "LOGIN", target=user.username, ip=request.client.host if request.client else None
    )
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=issued.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=issued.expires_in,
            user_id=user.id,
            username=user.username,
            role=user.role,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=LogoutResponse)
async def logout(request: Request, principal: Principal = Depends(require_principal)) -> LogoutResponse:
    """Revoke exactly the session of the token on this request.

    Other devices of the same user keep their own sessions.
    """
    revoked = False
    if principal.token_id:
        revoked = await run_in_threadpool(request.app.state.token_service.revoke, principal.token_id)
    return LogoutResponse(revoked=revoked)


@router.get("/auth/me", response_model=MeResponse)
async def me(
    principal: Principal = Depends(require_principal),
    permissions: frozenset[str] = Depends(get_effective_permissions),
) -> MeResponse:
    return MeResponse(
        id=principal.id,
        display_name=principal.display_name,
        role=principal.role,
        extra_permissions=sorted(principal.extra_permissions),
        permissions=sorted(permissions),
    )
