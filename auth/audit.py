"""
auth/audit.py -- The log_operation collaborator contract.

Audit persistence and broadcast belong to another subsystem. This package
only emits events with a fixed payload shape:

    {operator_id, action, target, details, ip}

AuditLogger wraps whatever sink the deployment provides (default: the
"routeguard.audit" logger). log_operation() is fire-and-forget: any sink
error is logged and swallowed so an audit outage can never fail or change an
authorization decision.

Layer rule: no imports from api/, guard/, or workflow/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("routeguard.audit")

AuditSink = Callable[[dict[str, Any]], None]


def _log_sink(event: dict[str, Any]) -> None:
    logger.info(
        "operator=%s action=%s target=%s ip=%s details=%s",
        event["operator_id"],
        event["action"],
        event["target"],
        event["ip"],
        event["details"],
    )


class AuditLogger:
    def __init__(self, sink: AuditSink | None = None) -> None:
        self._sink = sink or _log_sink

    def log_operation(
        self,
        operator_id: str | None,
        action: str,
        target: str = "",
        details: dict[str, Any] | None = None,
        ip: str | None = None,
    ) -> None:
        event = {
            "operator_id": operator_id,
            "action": action,
            "target": target,
            "details": details or {},
            "ip": ip,
        }
        try:
            self._sink(event)
        except Exception:
            logger.exception("Audit sink failed for action %s", action)
