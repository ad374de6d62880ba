"""
guard/guard.py -- GlobalGuard: one authorization decision per request.

Algorithm (first match wins, table already priority-sorted):
  1. Strip the query string from the lookup path.
  2. rule = table.match(path, method)
  3. no rule              -> ALLOW if fail_open else DENY
  4. rule.public          -> ALLOW (authenticated or not)
  5. guest                -> UNAUTHENTICATED
  6. rule.permission None -> ALLOW (login-only gate)
  7. resolver.has(...)    -> ALLOW, else FORBIDDEN(rule.permission)

authorize() is pure apart from the resolver's cache read: no I/O, no
locking, safe to call from the event loop.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from guard.rules import RouteRule, RuleTable

if TYPE_CHECKING:
    from auth.models import Principal
    from auth.permissions import PermissionResolver

logger = logging.getLogger("routeguard.guard")


class Verdict(str, enum.Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    DENY = "deny"


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    rule: Optional[RouteRule] = None
    required: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW


class GlobalGuard:
    """Matches requests against a RuleTable and enforces the matched rule.

    fail_open controls unmapped routes. True keeps the historical behaviour
    (allow); deployments that want default-deny set GUARD_FAIL_OPEN=false or
    add an explicit catch-all rule.
    """

    def __init__(self, table: RuleTable, resolver: PermissionResolver, fail_open: bool = True) -> None:
        self.table = table
        self.resolver = resolver
        self.fail_open = fail_open

    def authorize(self, principal: Principal | None, path: str, method: str) -> Decision:
        lookup = path.split("?", 1)[0]
        rule = self.table.match(lookup, method)

        if rule is None:
            if self.fail_open:
                return Decision(Verdict.ALLOW)
            logger.info("No rule for %s %s; denied (fail-closed)", method, lookup)
            return Decision(Verdict.DENY)

        if rule.public:
            return Decision(Verdict.ALLOW, rule)

        if principal is None:
            return Decision(Verdict.UNAUTHENTICATED, rule)

        if rule.permission is None:
            return Decision(Verdict.ALLOW, rule)

        if self.resolver.has(principal, rule.permission):
            return Decision(Verdict.ALLOW, rule, rule.permission)

        logger.warning(
            "Forbidden: user=%s role=%s action=%s %s required=%r",
            principal.id,
            principal.role,
            method.upper(),
            lookup,
            rule.permission,
        )
        return Decision(Verdict.FORBIDDEN, rule, rule.permission)
