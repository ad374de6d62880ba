"""
guard/middleware.py -- HTTP middleware that authenticates and authorizes every request.

Per request:
  1. TokenService.authenticate() runs in the threadpool (session registry and
     user store are blocking I/O) so other requests keep flowing on the loop.
  2. GlobalGuard.authorize() decides from the rule table and resolver cache.
  3. On ALLOW the Principal (or None for guests) is stored on
     request.state.principal and the route handler runs. On any other verdict
     the handler is never invoked.

Error bodies are fixed by the public contract:
  401 {"msg": "Unauthorized: Login required"}
  403 {"msg": "Permission Denied", "required": "<key>"}
  401 {"message": "Token Expired"} / {"message": "Token Invalid"} / {"message": "Session Revoked"}
error_response() is also used by api/main.py's exception handlers so the
same errors raised inside route handlers serialize the same way.

Dependencies on app.state (wired by the API lifespan):
  token_service, guard
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from auth.tokens import CUSTOM_TOKEN_HEADER
from core.errors import (
    Forbidden,
    RouteGuardError,
    SessionRevoked,
    TokenExpired,
    TokenInvalid,
    Unauthenticated,
    ValidationFailed,
)
from guard.guard import Decision, Verdict

LOGIN_REQUIRED_BODY = {"msg": "Unauthorized: Login required"}


def error_response(exc: RouteGuardError) -> JSONResponse:
    """Serialize a domain error into its public JSON shape."""
    if isinstance(exc, Unauthenticated):
        return JSONResponse(status_code=401, content=LOGIN_REQUIRED_BODY)
    if isinstance(exc, Forbidden):
        return JSONResponse(status_code=403, content={"msg": "Permission Denied", "required": exc.required})
    if isinstance(exc, TokenExpired):
        return JSONResponse(status_code=401, content={"message": "Token Expired"})
    if isinstance(exc, TokenInvalid):
        return JSONResponse(status_code=401, content={"message": "Token Invalid"})
    if isinstance(exc, SessionRevoked):
        return JSONResponse(status_code=401, content={"message": "Session Revoked"})
    error: dict = {"code": exc.code, "message": exc.message}
    if isinstance(exc, ValidationFailed) and exc.invalid:
        error["detail"] = ", ".join(exc.invalid)
    return JSONResponse(status_code=exc.status_code, content={"error": error})


def decision_response(decision: Decision) -> JSONResponse:
    if decision.verdict is Verdict.UNAUTHENTICATED:
        return error_response(Unauthenticated())
    return error_response(Forbidden(decision.required))


async def guard_requests(request: Request, call_next):
    """Authenticate, authorize, then either short-circuit or run the handler."""
    state = request.app.state
    try:
        principal = await run_in_threadpool(
            state.token_service.authenticate,
            request.headers.get(CUSTOM_TOKEN_HEADER),
            request.headers.get("Authorization"),
        )
    except RouteGuardError as exc:
        return error_response(exc)

    # url.path is the full path (mount path + sub-path) without the query string.
    decision = state.guard.authorize(principal, request.url.path, request.method)
    if not decision.allowed:
        return decision_response(decision)

    request.state.principal = principal
    request.state.decision = decision
    return await call_next(request)
