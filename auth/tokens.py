"""
auth/tokens.py -- Password hashing and the TokenService (issue / authenticate).

Security design decisions:
  JWT: python-jose with HS256. Tokens carry a minimal principal snapshot
       (sub, id, role, displayName, extraPermissions), a unique jti and an
       expiry (default 30 days). Verification failures are raised as
       TokenExpired / TokenInvalid -- the API layer turns them into 401.

  Sessions: every issued token writes its own Session Registry row keyed by
       its jti, with a TTL independent of the token's exp. Logout and forced
       logout delete rows.

  Session policy: what a verified token with no registry row means is the
       named setting SESSION_POLICY:
         relaxed -- the signature is sufficient to identify the user.
         strict  -- a missing row is a revoked session: SessionRevoked (401).

  Live refresh: under either policy, role and overrides are re-read from the
       user store (through a short TTL cache) so admin changes apply without
       re-login and survive a forced logout. The token claims only name the
       user. A deleted or deactivated user authenticates as guest.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether a username exists [C1].

Layer rule: no imports from api/, guard/, or workflow/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Principal
from auth.sessions import session_key
from core.config import SESSION_POLICY_RELAXED, SESSION_POLICY_STRICT
from core.errors import ServerError, SessionRevoked, TokenExpired, TokenInvalid

if TYPE_CHECKING:
    from auth.models import User
    from auth.sessions import SessionRegistry
    from auth.store import UserStore
    from cache.store import PrincipalCache

logger = logging.getLogger("routeguard.auth")

_ALGORITHM = "HS256"

CUSTOM_TOKEN_HEADER = "x-auth-token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps the field at 72 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load.
_DUMMY_HASH: str = hash_password("routeguard_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists [C1]. Returns the User
    on success, None on any failure.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Credential extraction
# ---------------------------------------------------------------------------


def extract_token(custom_header: str | None, authorization: str | None) -> str | None:
    """Return the raw token from the request headers, or None.

    The custom x-auth-token header takes precedence over Authorization: Bearer.
    """
    if custom_header and custom_header.strip():
        return custom_header.strip()
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:].strip()
        return token or None
    return None


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_in: int


class TokenService:
    """Issues signed tokens and turns request credentials into Principals.

    Usage:
        tokens = TokenService(secret, registry, user_store)
        issued = tokens.issue(user)
        principal = tokens.authenticate(x_auth_token, authorization)  # None = guest
        tokens.revoke(principal.token_id)
    """

    def __init__(
        self,
        secret_key: str,
        registry: SessionRegistry,
        users: UserStore,
        principal_cache: PrincipalCache | None = None,
        expire_seconds: int = 30 * 24 * 60 * 60,
        session_policy: str = SESSION_POLICY_RELAXED,
    ) -> None:
        if session_policy not in (SESSION_POLICY_RELAXED, SESSION_POLICY_STRICT):
            raise ValueError(f"Unknown session policy: {session_policy!r}")
        self._secret_key = secret_key
        self._registry = registry
        self._users = users
        self._cache = principal_cache
        self.expire_seconds = expire_seconds
        self.session_policy = session_policy

    # ------------------------------------------------------------------
    # Issue / decode
    # ------------------------------------------------------------------

    def issue(self, user: User) -> IssuedToken:
        """Sign a token for user and register its session."""
        token_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "id": str(user.id),
            "role": user.role,
            "displayName": user.display_name or user.username,
            "extraPermissions": list(user.extra_permissions),
            "jti": token_id,
            "iat": now,
            "exp": now + timedelta(seconds=self.expire_seconds),
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        try:
            self._registry.set(session_key(token_id), str(user.id))
        except SQLAlchemyError as exc:
            logger.exception("Session registry write failed for user %s", user.id)
            raise ServerError("Session registry unavailable.") from exc
        return IssuedToken(token=token, token_id=token_id, expires_in=self.expire_seconds)

    def decode(self, token: str) -> dict:
        """Verify signature and expiry. Raises TokenExpired or TokenInvalid."""
        try:
            return jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired("Token Expired") from exc
        except JWTError as exc:
            raise TokenInvalid("Token Invalid") from exc

    # ------------------------------------------------------------------
    # Authenticate
    # ------------------------------------------------------------------

    def authenticate(self, custom_header: str | None, authorization: str | None) -> Principal | None:
        """Resolve request credentials to a Principal. None means guest.

        No credential is not an error: the guard decides whether the route
        needs one. A credential that fails verification always raises.
        """
        token = extract_token(custom_header, authorization)
        if token is None:
            return None

        claims = self.decode(token)
        token_id = claims.get("jti")
        try:
            principal = Principal.from_claims(claims, token_id=token_id)
        except ValueError as exc:
            raise TokenInvalid("Token Invalid") from exc

        try:
            session_user = self._registry.get(session_key(token_id)) if token_id else None
        except SQLAlchemyError as exc:
            logger.exception("Session registry lookup failed")
            raise ServerError("Session registry unavailable.") from exc

        if session_user is None:
            if self.session_policy == SESSION_POLICY_STRICT:
                raise SessionRevoked("Session Revoked")
        elif session_user != principal.id:
            logger.warning("Session %s belongs to %s but token names %s", token_id, session_user, principal.id)
            raise TokenInvalid("Token Invalid")

        # Role and overrides always come from the user store, never the claims.
        user = self._live_user(principal.id)
        if user is None or not user.is_active:
            return None
        return Principal.from_user(user, token_id=token_id)

    def _live_user(self, user_id: str) -> User | None:
        if self._cache is not None:
            cached = self._cache.get(user_id)
            if cached is not None:
                return cached
        try:
            user = self._users.get_by_id(user_id)
        except SQLAlchemyError as exc:
            logger.exception("User store lookup failed for %s", user_id)
            raise ServerError("User store unavailable.") from exc
        if user is not None and self._cache is not None:
            self._cache.set(user_id, user)
        return user

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token_id: str) -> bool:
        """Revoke one session. Returns False if it was already gone."""
        try:
            return self._registry.delete(session_key(token_id))
        except SQLAlchemyError as exc:
            raise ServerError("Session registry unavailable.") from exc

    def revoke_all(self, user_id: str) -> int:
        """Revoke every session of user_id (admin-forced logout)."""
        try:
            removed = self._registry.delete_for_user(str(user_id))
        except SQLAlchemyError as exc:
            raise ServerError("Session registry unavailable.") from exc
        if self._cache is not None:
            self._cache.invalidate(str(user_id))
        logger.info("Revoked %d session(s) for user %s", removed, user_id)
        return removed
