"""
Typed records passed between the normalizer, the reconciliation engine,
the record store and the audit log.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

OPERATION_INSERT = "INSERT"
OPERATION_UPDATE = "UPDATE"
OPERATION_DELETE = "DELETE"
VALID_OPERATIONS = [OPERATION_INSERT, OPERATION_UPDATE, OPERATION_DELETE]

# SyncResult statuses
STATUS_INSERTED = "inserted"
STATUS_UPDATED = "updated"
STATUS_DELETED = "deleted"
STATUS_IGNORED = "ignored"
STATUS_NOT_FOUND = "not_found"

REASON_STALE_VERSION = "stale_version"
REASON_LOOPBACK = "loopback"

# Webhook audit statuses
AUDIT_RECEIVED = "RECEIVED"
AUDIT_PROCESSED = "PROCESSED"
AUDIT_ERROR = "ERROR"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware UTC datetime. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class EntityRecord:
    id: int
    fields: Dict[str, Any]
    version: int
    source: str
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id}
        data.update(self.fields)
        data["version"] = self.version
        data["source"] = self.source
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass
class SyncEvent:
    source: str
    row_id: int
    table_id: str
    operation: str
    changes: Dict[str, Any]
    timestamp: datetime
    version: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FieldConflict:
    field: str
    current_value: Any
    incoming_value: Any


@dataclass
class ConflictRecord:
    id: int
    table_name: str
    row_id: int
    field_name: str
    incoming_value: Any
    current_value: Any
    resolved_value: Any
    strategy: str
    resolved_at: Optional[datetime]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["resolved_at"] = self.resolved_at.isoformat() if self.resolved_at else None
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class WebhookAuditEntry:
    id: int
    payload: Any
    status: str
    error_message: Optional[str]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class SyncResult:
    """Outcome of reconciling one sync event."""
    status: str
    row_id: Optional[int] = None
    reason: Optional[str] = None
    operation: Optional[str] = None
    new_version: Optional[int] = None
    conflicts: int = 0
    resolved: Dict[str, Any] = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return self.status in (STATUS_INSERTED, STATUS_UPDATED, STATUS_DELETED)

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.status, "rowId": self.row_id}
        if self.reason:
            data["reason"] = self.reason
        if self.operation:
            data["operation"] = self.operation
        if self.new_version is not None:
            data["newVersion"] = self.new_version
        if self.conflicts:
            data["conflicts"] = self.conflicts
            data["resolved"] = self.resolved
        return data


def results_to_dicts(results: List[SyncResult]) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in results]
