"""
core/errors.py -- Error taxonomy shared by auth/, guard/, workflow/ and api/.

Domain code raises these; api/main.py maps each class to its HTTP response in
one place. Route handlers never build authorization error bodies by hand.

  Unauthenticated  -- no credential on a private route            (401)
  TokenExpired     -- signature valid but exp in the past          (401)
  TokenInvalid     -- bad signature, malformed token, bad claims   (401)
  SessionRevoked   -- strict session policy, no registry entry     (401)
  Forbidden        -- authenticated but missing a permission       (403)
  NotFound         -- referenced record does not exist             (404)
  Conflict         -- duplicate record or pending request          (409)
  InvalidState     -- workflow transition from a terminal state    (409)
  ValidationFailed -- semantically invalid input                   (400)
  ServerError      -- registry or store unreachable                (500)

Layer rule: core/ is the kernel and imports nothing from the other packages.
"""

from __future__ import annotations


class RouteGuardError(Exception):
    """Base class. status_code and code drive the HTTP mapping."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class Unauthenticated(RouteGuardError):
    status_code = 401
    code = "unauthenticated"


class TokenExpired(RouteGuardError):
    status_code = 401
    code = "token_expired"


class TokenInvalid(RouteGuardError):
    status_code = 401
    code = "token_invalid"


class SessionRevoked(RouteGuardError):
    status_code = 401
    code = "session_revoked"


class Forbidden(RouteGuardError):
    """Carries the permission key the principal was missing."""

    status_code = 403
    code = "forbidden"

    def __init__(self, required: str | None, message: str = "") -> None:
        super().__init__(message or f"Missing permission: {required}")
        self.required = required


class NotFound(RouteGuardError):
    status_code = 404
    code = "not_found"


class Conflict(RouteGuardError):
    status_code = 409
    code = "conflict"


class InvalidState(RouteGuardError):
    status_code = 409
    code = "invalid_state"


class ValidationFailed(RouteGuardError):
    status_code = 400
    code = "validation_failed"

    def __init__(self, message: str = "", invalid: list[str] | None = None) -> None:
        super().__init__(message)
        self.invalid = invalid or []


class ServerError(RouteGuardError):
    status_code = 500
    code = "server_error"
