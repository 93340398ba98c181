from .user import User, ROLE_ADMIN, ROLE_USER, ROLES
from .instance import (
    Instance, STATUS_STOPPED, STATUS_RUNNING, STATUS_PAUSED, STATUS_ERROR, STATUSES,
)
from .snapshot import Snapshot
from .capacity_ledger import CapacityLedger
from .audit_entry import AuditEntry

__all__ = [
    "User", "ROLE_ADMIN", "ROLE_USER", "ROLES",
    "Instance", "STATUS_STOPPED", "STATUS_RUNNING", "STATUS_PAUSED", "STATUS_ERROR", "STATUSES",
    "Snapshot", "CapacityLedger", "AuditEntry",
]
