"""
workflow/models.py -- Domain dataclass for permission requests.

Lifecycle:
    pending --approve--> approved   (terminal)
    pending --reject---> rejected   (terminal)

No other transition exists. PermissionRequestStore.transition() enforces this
at the database level with a conditional update on status = 'pending'.
"""

from dataclasses import dataclass
from typing import Optional

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)

TYPE_PERMISSION = "permission"
TYPE_ROLE = "role"
REQUEST_TYPES = (TYPE_PERMISSION, TYPE_ROLE)


@dataclass
class PermissionRequest:
    """A user's request for an extra permission or a role change.

    target is the permission key for type "permission" and the role name for
    type "role". reviewed_by / reviewed_at stay None until an admin decides.

    id is None before the record is written to the database.
    """

    user_id: str
    type: str  # "permission" | "role"
    target: str
    reason: str = ""
    status: str = STATUS_PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    id: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != STATUS_PENDING
