"""
guard/route_map.py -- Built-in route authorization table.

Every entry is (method, path prefix | regex, public, permission):
  public=True        -> open to everyone, token not required
  permission=None    -> login required, no specific permission
  permission="KEY"   -> login + KEY (or the wildcard) required

Listing order here is for the reader only. build_rule_table() re-sorts on
load: regex rules first, then longer prefixes before shorter, then exact
methods before ALL. Path parameters must be written as regexes -- a prefix
rule containing ":id" would never match a real path.

Business modules (posts, fitness, todo, ...) are served by other
applications mounted on the same prefix. Their policies live here because
the guard is the single place access is decided.
"""

from __future__ import annotations

from auth import permissions as K
from guard.rules import RouteRuleConfig

API = "/api/v1"

_ID = r"[^/]+"

DEFAULT_ROUTE_MAP: list[RouteRuleConfig] = [
    # ------------------------------------------------------------------
    # Public infrastructure
    # ------------------------------------------------------------------
    RouteRuleConfig(method="GET", path="/health", public=True),
    # ------------------------------------------------------------------
    # Auth entry
    # ------------------------------------------------------------------
    RouteRuleConfig(method="POST", path=f"{API}/auth/login", public=True),
    RouteRuleConfig(method="GET", path=f"{API}/auth/me", permission=None),
    RouteRuleConfig(method="POST", path=f"{API}/auth/logout", permission=None),
    RouteRuleConfig(method="POST", regex=rf"^{API}/users/?$", public=True),  # self-registration
    # ------------------------------------------------------------------
    # CMS content: read public, write super admin
    # ------------------------------------------------------------------
    RouteRuleConfig(method="GET", path=f"{API}/resumes", public=True),
    RouteRuleConfig(method="ALL", path=f"{API}/resumes", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="GET", path=f"{API}/projects", public=True),
    RouteRuleConfig(method="ALL", path=f"{API}/projects", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="GET", path=f"{API}/homepage", public=True),
    RouteRuleConfig(method="ALL", path=f"{API}/homepage", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="GET", path=f"{API}/menu", public=True),
    RouteRuleConfig(method="ALL", path=f"{API}/menu", permission=K.MENU_USE),
    # ------------------------------------------------------------------
    # Blog
    # ------------------------------------------------------------------
    RouteRuleConfig(method="GET", path=f"{API}/posts/private/posts", permission=K.PRIVATE_POST_READ),
    RouteRuleConfig(method="GET", regex=rf"^{API}/posts/likes/{_ID}$", public=True),
    RouteRuleConfig(method="POST", regex=rf"^{API}/posts/likes/{_ID}/(add|remove)$", permission=None),
    RouteRuleConfig(method="GET", path=f"{API}/posts", public=True),
    RouteRuleConfig(method="POST", path=f"{API}/posts", permission=K.BLOG_MANAGE),
    RouteRuleConfig(method="PUT", regex=rf"^{API}/posts/{_ID}$", permission=K.BLOG_MANAGE),
    RouteRuleConfig(method="DELETE", regex=rf"^{API}/posts/{_ID}$", permission=K.BLOG_MANAGE),
    RouteRuleConfig(method="GET", path=f"{API}/comments", public=True),
    RouteRuleConfig(method="ALL", path=f"{API}/comments", permission=K.BLOG_INTERACT),
    RouteRuleConfig(method="GET", path=f"{API}/photos", public=True),
    RouteRuleConfig(method="ALL", path=f"{API}/photos", permission=K.CAPSULE_USE),
    # ------------------------------------------------------------------
    # Image service: usage dashboard is super admin, the rest needs upload rights
    # ------------------------------------------------------------------
    RouteRuleConfig(method="GET", path=f"{API}/cloudinary/usage", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="ALL", path=f"{API}/cloudinary", permission=K.BLOG_INTERACT),
    # ------------------------------------------------------------------
    # User administration
    # ------------------------------------------------------------------
    RouteRuleConfig(method="PUT", regex=rf"^{API}/users/{_ID}/permissions$", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="PUT", regex=rf"^{API}/users/{_ID}/role$", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="DELETE", regex=rf"^{API}/users/{_ID}/sessions$", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="GET", regex=rf"^{API}/users/?$", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="PUT", path=f"{API}/users/grant-vip", permission=K.USER_MANAGE),
    RouteRuleConfig(method="PUT", path=f"{API}/users/revoke-vip", permission=K.USER_MANAGE),
    RouteRuleConfig(method="ALL", path=f"{API}/users", permission=None),
    # ------------------------------------------------------------------
    # Private modules
    # ------------------------------------------------------------------
    RouteRuleConfig(method="ALL", path=f"{API}/todo", permission=K.TODO_USE),
    RouteRuleConfig(method="ALL", path=f"{API}/fitness", permission=K.FITNESS_USE),
    RouteRuleConfig(method="ALL", path=f"{API}/period", permission=K.PERIOD_USE),
    RouteRuleConfig(method="ALL", path=f"{API}/footprints", permission=K.FOOTPRINT_USE),
    RouteRuleConfig(method="ALL", path=f"{API}/ai", permission=K.BRAIN_USE),
    RouteRuleConfig(method="ALL", path=f"{API}/chat", permission=K.BRAIN_USE),
    RouteRuleConfig(method="ALL", path=f"{API}/external", permission=K.EXTERNAL_USE),
    # ------------------------------------------------------------------
    # Permission requests: admins list and review, any user submits
    # ------------------------------------------------------------------
    RouteRuleConfig(method="GET", regex=rf"^{API}/permission-requests/mine$", permission=None),
    RouteRuleConfig(method="GET", path=f"{API}/permission-requests", permission=K.SUPER_ADMIN),
    RouteRuleConfig(
        method="PUT", regex=rf"^{API}/permission-requests/{_ID}/(approve|reject)$", permission=K.SUPER_ADMIN
    ),
    RouteRuleConfig(method="POST", path=f"{API}/permission-requests", permission=None),
    # ------------------------------------------------------------------
    # RBAC core data and operations
    # ------------------------------------------------------------------
    RouteRuleConfig(method="ALL", path=f"{API}/permissions", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="ALL", path=f"{API}/roles", permission=K.SUPER_ADMIN),
    RouteRuleConfig(method="ALL", path=f"{API}/audit", permission=K.SYSTEM_LOGS_USE),
    RouteRuleConfig(method="ALL", path=f"{API}/backup", permission=K.SYSTEM_LOGS_USE),
    RouteRuleConfig(method="ALL", path=f"{API}/cron", permission=K.SYSTEM_LOGS_USE),
]
