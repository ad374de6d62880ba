"""
API request and response models for RouteGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
workflow/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Role, User
from workflow.models import PermissionRequest

# Role names are used in URLs and stored verbatim.
ROLE_NAME_PATTERN = r"^[a-z][a-z0-9_]{1,39}$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RequestStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class RequestableRoleEnum(str, Enum):
    admin = "admin"
    bot = "bot"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=150)
    # bcrypt truncates at 72 bytes; reject longer input instead.
    password: str = Field(min_length=1, max_length=72)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    user_id: int
    username: str
    role: str


class MeResponse(BaseModel):
    """The authenticated principal plus its effective permission set."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    role: str
    extra_permissions: list[str]
    permissions: list[str]


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Logged out."
    revoked: bool


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users (self-registration)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=150)
    password: str = Field(min_length=8, max_length=72)
    display_name: str = Field(default="", max_length=100)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    display_name: str
    role: str
    extra_permissions: list[str]
    is_active: bool
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            role=user.role,
            extra_permissions=list(user.extra_permissions),
            is_active=user.is_active,
            created_at=user.created_at or "",
        )


class UserRoleUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    role: str = Field(pattern=ROLE_NAME_PATTERN)


class UserPermissionsUpdate(BaseModel):
    """Replaces the user's extra permissions. Keys are normalized server-side."""

    permissions: list[str] = Field(default_factory=list, max_length=100)


class SessionRevokeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    revoked: int


# ---------------------------------------------------------------------------
# Roles and catalog
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(pattern=ROLE_NAME_PATTERN)
    permissions: list[str] = Field(default_factory=list, max_length=100)
    description: str = Field(default="", max_length=255)


class RoleUpdate(BaseModel):
    """Partial update. Omitted fields are left unchanged."""

    permissions: Optional[list[str]] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=255)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    permissions: list[str]
    description: str
    updated_at: str

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            name=role.name,
            permissions=list(role.permissions),
            description=role.description,
            updated_at=role.updated_at or "",
        )


class ReloadResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    roles: int


class CatalogEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    category: str


# ---------------------------------------------------------------------------
# Permission requests
# ---------------------------------------------------------------------------


class PermissionRequestCreate(BaseModel):
    """Request body for POST /api/v1/permission-requests."""

    model_config = ConfigDict(str_strip_whitespace=True)

    permission: str = Field(min_length=1, max_length=100)
    reason: str = Field(default="", max_length=500)


class RoleRequestCreate(BaseModel):
    """Request body for POST /api/v1/permission-requests/role."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: RequestableRoleEnum
    reason: str = Field(default="", max_length=500)


class PermissionRequestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    type: str
    target: str
    reason: str
    status: RequestStatusEnum
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    created_at: str

    @classmethod
    def from_request(cls, request: PermissionRequest) -> "PermissionRequestResponse":
        return cls(
            id=request.id,
            user_id=request.user_id,
            type=request.type,
            target=request.target,
            reason=request.reason,
            status=request.status,
            reviewed_by=request.reviewed_by,
            reviewed_at=request.reviewed_at,
            created_at=request.created_at,
        )


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    roles_loaded: bool
