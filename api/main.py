"""
api/main.py -- FastAPI application entry point for RouteGuard.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- method, path, status, latency, client
  5. guard_requests        -- authenticate + authorize; denied requests never
                              reach a route handler (guard/middleware.py)

Starlette makes the LAST registered middleware the outermost, so the
registrations below run innermost-first.

Lifespan wires every service onto app.state (configure_state) and starts the
session purge task; shutdown cancels the task and disposes every engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.permission_requests import router as permission_requests_router
from api.routes.v1.permissions import router as permissions_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.audit import AuditLogger
from auth.permissions import DEFAULT_ROLES, PermissionResolver
from auth.sessions import SessionRegistry
from auth.store import RoleStore, UserStore
from auth.tokens import TokenService
from cache.store import PrincipalCache
from core.config import Settings, get_settings
from core.errors import RouteGuardError
from guard.guard import GlobalGuard
from guard.middleware import error_response, guard_requests
from guard.route_map import DEFAULT_ROUTE_MAP
from guard.rules import RuleTable, build_rule_table, load_rule_table
from workflow.service import GrantApplier, PermissionRequestWorkflow
from workflow.store import PermissionRequestStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("routeguard.api")

_PURGE_INTERVAL = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def load_route_table(settings: Settings) -> RuleTable:
    """Built-in table unless ROUTE_MAP_FILE points at a JSON replacement."""
    if settings.route_map_file:
        table = load_rule_table(settings.route_map_file)
        logger.info("Route table loaded from %s (%d rules)", settings.route_map_file, len(table))
        return table
    return build_rule_table(DEFAULT_ROUTE_MAP)


def configure_state(app: FastAPI, settings: Settings, db_url: Optional[str] = None) -> None:
    """Build every service and attach it to app.state.

    Order matters: the resolver needs seeded roles, the guard needs the
    resolver, the token service needs the registry and user store, the
    workflow needs all of the above.
    """
    url = db_url or settings.database_url
    state = app.state
    state.settings = settings
    state.user_store = UserStore(url)
    state.role_store = RoleStore(url)
    state.registry = SessionRegistry(url, ttl=settings.session_ttl_seconds)
    state.request_store = PermissionRequestStore(url)
    state.principal_cache = PrincipalCache(ttl=settings.live_user_ttl_seconds)

    seeded = state.role_store.seed_defaults(DEFAULT_ROLES)
    if seeded:
        logger.info("Seeded %d default roles", seeded)
    state.resolver = PermissionResolver(state.role_store)
    state.resolver.load()

    state.guard = GlobalGuard(load_route_table(settings), state.resolver, fail_open=settings.guard_fail_open)
    state.token_service = TokenService(
        settings.secret_key,
        state.registry,
        state.user_store,
        principal_cache=state.principal_cache,
        expire_seconds=settings.token_expire_seconds,
        session_policy=settings.session_policy,
    )
    state.audit = AuditLogger()
    state.workflow = PermissionRequestWorkflow(
        state.request_store,
        state.resolver,
        state.user_store,
        on_approved=GrantApplier(state.user_store, state.principal_cache),
        audit=state.audit,
    )
    logger.info(
        "Services ready (rules=%d, session_policy=%s, fail_open=%s)",
        len(state.guard.table),
        settings.session_policy,
        settings.guard_fail_open,
    )


def close_state(app: FastAPI) -> None:
    for name in ("user_store", "role_store", "registry", "request_store"):
        store = getattr(app.state, name, None)
        if store is not None:
            store.close()


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired session rows and live user snapshots every 6 hours.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL)
        try:
            removed = await run_in_threadpool(app.state.registry.purge_expired)
        except SQLAlchemyError:
            logger.exception("Session purge failed")
        else:
            logger.info("Purged %d expired session(s)", removed)
        app.state.principal_cache.purge_expired()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime."""
    logger.info("RouteGuard API starting up")
    configure_state(app, get_settings())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    close_state(app)
    logger.info("RouteGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="RouteGuard API",
    description="Route authorization, role-based permissions and session revocation.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack (registered innermost first)
# ---------------------------------------------------------------------------

app.middleware("http")(guard_requests)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Auth-Token"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(permissions_router, prefix="/api/v1", tags=["Permissions"])
app.include_router(permission_requests_router, prefix="/api/v1", tags=["Permission Requests"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Authorization failures keep their fixed public bodies (guard/middleware.py).
# Everything else returns the ErrorResponse envelope.
# ---------------------------------------------------------------------------


@app.exception_handler(RouteGuardError)
async def routeguard_error_handler(request: Request, exc: RouteGuardError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return error_response(exc)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Store failures are server errors. The driver message is never returned."""
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="server_error", message="Storage unavailable.")
        ).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for FastAPI/Starlette HTTP exceptions.

    When detail is already a dict, use it as the error field directly --
    str(dict) produces a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined here, not in a router, so it is reachable regardless of router
# registration state. Public in the route table and never rate limited.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and whether the role cache is loaded."""
    return HealthResponse(version=VERSION, roles_loaded=request.app.state.resolver.is_loaded)
