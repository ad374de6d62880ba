"""
auth/permissions.py -- Permission catalog and the PermissionResolver.

Catalog: the static set of permission keys the route table and the request
workflow may reference, plus WILDCARD ("*"), which satisfies every check.

Resolver: effective(principal) = role_permissions[principal.role] | overrides.

Cache model:
  The role -> permissions cache is an immutable mapping held by a single
  attribute. load()/reload() build a complete new mapping and assign it in one
  statement, so a concurrent reader sees either the old snapshot or the new
  one in full, never a mix. Readers take one reference to the mapping and
  work from it. No lock is needed for reads.

Failure model:
  load() is the boot path: a store failure is logged and the cache stays as
  it was (empty on first boot), so every lookup yields no permissions rather
  than crashing the process. reload() is the on-demand path used by admin
  routes: a failure is raised as ServerError so the caller sees a 500.

Layer rule: no imports from api/, guard/, or workflow/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from core.errors import ServerError, ValidationFailed

if TYPE_CHECKING:
    from auth.models import Principal
    from auth.store import RoleStore

logger = logging.getLogger("routeguard.rbac")

WILDCARD = "*"

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

USER_UPDATE_SELF = "USER:UPDATE_SELF"
USER_MANAGE = "USER:MANAGE"
BLOG_INTERACT = "BLOG:INTERACT"
BLOG_MANAGE = "BLOG:MANAGE"
PRIVATE_ACCESS = "PRIVATE_DOMAIN:ACCESS"
PRIVATE_POST_USE = "PRIVATE_POST:USE"
PRIVATE_POST_READ = "PRIVATE_POST:READ"
BRAIN_USE = "BRAIN:USE"
CAPSULE_USE = "CAPSULE:USE"
TODO_USE = "TODO:USE"
LEISURE_USE = "LEISURE:USE"
EXTERNAL_USE = "EXTERNAL:USE"
FOOTPRINT_USE = "FOOTPRINT:USE"
FITNESS_USE = "FITNESS:USE"
FITNESS_READ_ALL = "FITNESS:READ_ALL"
FITNESS_EDIT_ALL = "FITNESS:EDIT_ALL"
PERIOD_USE = "PERIOD:USE"
MENU_USE = "MENU:USE"
SYSTEM_LOGS_USE = "SYSTEM_LOGS:USE"
IMAGE_RESOURCES_USE = "IMAGE_RESOURCES:USE"
SUPER_ADMIN = WILDCARD


@dataclass(frozen=True)
class CatalogEntry:
    key: str
    name: str
    category: str


CATALOG: tuple[CatalogEntry, ...] = (
    CatalogEntry(USER_UPDATE_SELF, "Edit own profile", "USER"),
    CatalogEntry(USER_MANAGE, "Grant and revoke VIP", "USER"),
    CatalogEntry(BLOG_INTERACT, "Like, comment and upload", "BLOG"),
    CatalogEntry(BLOG_MANAGE, "Create, edit and delete posts", "BLOG"),
    CatalogEntry(PRIVATE_ACCESS, "Enter the private domain", "PRIVATE"),
    CatalogEntry(PRIVATE_POST_USE, "Write private posts", "PRIVATE"),
    CatalogEntry(PRIVATE_POST_READ, "Read private posts", "PRIVATE"),
    CatalogEntry(BRAIN_USE, "Use AI and chat", "MODULE"),
    CatalogEntry(CAPSULE_USE, "Use the photo capsule", "MODULE"),
    CatalogEntry(TODO_USE, "Use todos", "MODULE"),
    CatalogEntry(LEISURE_USE, "Use the leisure space", "MODULE"),
    CatalogEntry(EXTERNAL_USE, "Use external resources", "MODULE"),
    CatalogEntry(FOOTPRINT_USE, "Use footprints", "MODULE"),
    CatalogEntry(FITNESS_USE, "Record own fitness data", "FITNESS"),
    CatalogEntry(FITNESS_READ_ALL, "Read everyone's fitness data", "FITNESS"),
    CatalogEntry(FITNESS_EDIT_ALL, "Edit everyone's fitness data", "FITNESS"),
    CatalogEntry(PERIOD_USE, "Record period data", "FITNESS"),
    CatalogEntry(MENU_USE, "Manage menus", "CMS"),
    CatalogEntry(SYSTEM_LOGS_USE, "Read audit logs and backups", "SYSTEM"),
    CatalogEntry(IMAGE_RESOURCES_USE, "Manage image resources", "SYSTEM"),
)

CATALOG_KEYS: frozenset[str] = frozenset(entry.key for entry in CATALOG)

# Seeded into an empty role table on first start.
DEFAULT_ROLES: dict[str, list[str]] = {
    "user": [USER_UPDATE_SELF, BLOG_INTERACT],
    "bot": [BRAIN_USE],
    "admin": [
        PRIVATE_ACCESS,
        USER_UPDATE_SELF,
        BLOG_INTERACT,
        BRAIN_USE,
        CAPSULE_USE,
        LEISURE_USE,
        FITNESS_USE,
        FITNESS_READ_ALL,
        EXTERNAL_USE,
    ],
    "super_admin": [WILDCARD],
}

SUPER_ADMIN_ROLE = "super_admin"


def is_known_permission(key: str) -> bool:
    return key == WILDCARD or key in CATALOG_KEYS


def normalize_permissions(keys: Iterable[str]) -> list[str]:
    """Upper-case, de-duplicate (first occurrence wins) and validate keys.

    Raises ValidationFailed listing every key the catalog does not define.
    The wildcard is always accepted.
    """
    seen: set[str] = set()
    result: list[str] = []
    for raw in keys:
        key = str(raw).strip().upper()
        if key and key not in seen:
            seen.add(key)
            result.append(key)
    invalid = [k for k in result if not is_known_permission(k)]
    if invalid:
        raise ValidationFailed("Unknown permission keys.", invalid=invalid)
    return result


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class PermissionResolver:
    """Owns the role cache and answers permission membership queries.

    Usage:
        resolver = PermissionResolver(role_store)
        resolver.load()                       # at startup, never raises
        resolver.has(principal, "BLOG:MANAGE")
        resolver.reload()                     # after an admin edits roles
    """

    def __init__(self, store: RoleStore) -> None:
        self._store = store
        self._cache: Mapping[str, frozenset[str]] = MappingProxyType({})
        self.is_loaded = False

    def _read_snapshot(self) -> Mapping[str, frozenset[str]]:
        roles = self._store.list_roles()
        return MappingProxyType({role.name: frozenset(role.permissions) for role in roles})

    def load(self) -> None:
        """Load every role from the store. Logs and keeps the old cache on failure."""
        try:
            snapshot = self._read_snapshot()
        except SQLAlchemyError:
            logger.exception("Role cache load failed; permission lookups will resolve to nothing")
            return
        self._cache = snapshot
        self.is_loaded = True
        logger.info("Role cache loaded: [%s]", ", ".join(sorted(snapshot)))

    def reload(self) -> None:
        """Re-read all roles and swap the cache. Raises ServerError on store failure."""
        try:
            snapshot = self._read_snapshot()
        except SQLAlchemyError as exc:
            logger.exception("Role cache reload failed")
            raise ServerError("Role store unavailable.") from exc
        self._cache = snapshot
        self.is_loaded = True
        logger.info("Role cache reloaded: [%s]", ", ".join(sorted(snapshot)))

    def snapshot(self) -> Mapping[str, frozenset[str]]:
        """Return the current cache. The mapping is read-only and never mutated."""
        return self._cache

    def role_permissions(self, role: str) -> frozenset[str]:
        if not self.is_loaded:
            logger.warning("Role cache not loaded; role %r resolves to no permissions", role)
        return self._cache.get(role, frozenset())

    def effective_permissions(self, principal: Principal | None) -> frozenset[str]:
        """Union of the role's permissions and the principal's overrides.

        An unknown role grants nothing; it is not an error.
        """
        if principal is None:
            return frozenset()
        return self.role_permissions(principal.role) | principal.extra_permissions

    def has(self, principal: Principal | None, key: str) -> bool:
        perms = self.effective_permissions(principal)
        return WILDCARD in perms or key in perms
