"""
Reconciliation engine: decides whether a normalized sync event is applied,
ignored or conflict-resolved, and writes the outcome to the record store.

Decision order for an existing record:
  1. stale version   -> ignored (idempotency by version, not by event identity)
  2. loopback        -> ignored (the record's last writer echoing its own change)
  3. field conflicts -> resolved per field (last-write-wins, strict greater-than)
  4. apply           -> version + 1, source = event source

Expected outcomes are returned as SyncResult values. Only store failures
raise (StoreUnavailable on read, ApplyFailed on write); nothing is retried here.
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

from .config import SOURCE_MANUAL, STRATEGY_LAST_WRITE_WINS, STRATEGY_MANUAL, get_conflict_strategy
from .dao import StoreUnavailable, get_record, insert_record, apply_fields, delete_record
from .audit import record_conflict
from .schema import (
    EntityRecord,
    FieldConflict,
    SyncEvent,
    SyncResult,
    OPERATION_INSERT,
    OPERATION_UPDATE,
    OPERATION_DELETE,
    STATUS_INSERTED,
    STATUS_UPDATED,
    STATUS_DELETED,
    STATUS_IGNORED,
    STATUS_NOT_FOUND,
    REASON_STALE_VERSION,
    REASON_LOOPBACK,
)
from ..util.logging import logger


class ApplyFailed(Exception):
    """The store rejected or could not complete the decided mutation."""


class ConcurrentModification(ApplyFailed):
    """The row changed between read and write (version no longer matches)."""


class RowLockRegistry:
    """Per-(table, row) mutual exclusion for read-decide-write."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, Any], List] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, table_id: str, row_id: Any):
        key = (table_id, row_id)
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def active_keys(self) -> List[Tuple[str, Any]]:
        with self._guard:
            return list(self._locks.keys())


row_locks = RowLockRegistry()


def is_stale(record: EntityRecord, event: SyncEvent) -> bool:
    """Idempotency check - an event carrying a version at or below the stored one is a no-op."""
    if event.version is None:
        return False
    return event.version <= record.version


def is_loopback(record: EntityRecord, event: SyncEvent) -> bool:
    """Loop prevention - the last writer's own echo is ignored unless it is a manual override."""
    return record.source == event.source and event.source != SOURCE_MANUAL


def detect_conflicts(record: EntityRecord, event: SyncEvent) -> List[FieldConflict]:
    """Every incoming field whose value differs from the stored one is a conflict."""
    conflicts = []
    for field, incoming in event.changes.items():
        current = record.fields.get(field)
        if current != incoming:
            conflicts.append(FieldConflict(field=field, current_value=current, incoming_value=incoming))
    return conflicts


def resolve_conflicts(record: EntityRecord, event: SyncEvent, conflicts: List[FieldConflict],
                      strategy: str = STRATEGY_LAST_WRITE_WINS) -> Dict[str, Any]:
    """
    Pick a winning value per conflicting field.

    last_write_wins: the incoming value wins only when the event timestamp is
    strictly later than the record's updated_at; ties keep the current value.
    manual: the current value is kept and the conflict is left for an operator.
    """
    incoming_is_newer = event.timestamp is not None and event.timestamp > record.updated_at
    resolved = {}
    for conflict in conflicts:
        if strategy == STRATEGY_LAST_WRITE_WINS and incoming_is_newer:
            resolved[conflict.field] = conflict.incoming_value
        else:
            resolved[conflict.field] = conflict.current_value
    return resolved


def _insert(event: SyncEvent) -> SyncResult:
    try:
        record = insert_record(event.table_id, event.changes, event.source, row_id=event.row_id)
    except StoreUnavailable as e:
        raise ApplyFailed(f"Insert of row {event.row_id} failed: {e}") from e

    logger.log_sync_decision(event.table_id, record.id, STATUS_INSERTED, details={"source": event.source})
    return SyncResult(status=STATUS_INSERTED, row_id=record.id, operation=OPERATION_INSERT, new_version=1)


def _apply_update(record: EntityRecord, event: SyncEvent, changes: Dict[str, Any]) -> SyncResult:
    new_version = record.version + 1
    try:
        written = apply_fields(event.table_id, record.id, changes, event.source,
                               new_version, expected_version=record.version)
    except StoreUnavailable as e:
        raise ApplyFailed(f"Update of row {record.id} failed: {e}") from e

    if not written:
        raise ConcurrentModification(f"Row {record.id} changed since version {record.version} was read")

    logger.log_sync_decision(event.table_id, record.id, STATUS_UPDATED,
                             details={"source": event.source, "version": new_version})
    return SyncResult(status=STATUS_UPDATED, row_id=record.id, operation=OPERATION_UPDATE, new_version=new_version)


def _apply_delete(record: EntityRecord, event: SyncEvent) -> SyncResult:
    try:
        deleted = delete_record(event.table_id, record.id)
    except StoreUnavailable as e:
        raise ApplyFailed(f"Delete of row {record.id} failed: {e}") from e

    if not deleted:
        raise ConcurrentModification(f"Row {record.id} disappeared before delete")

    logger.log_sync_decision(event.table_id, record.id, STATUS_DELETED, details={"source": event.source})
    return SyncResult(status=STATUS_DELETED, row_id=record.id, operation=OPERATION_DELETE)


def _reconcile(event: SyncEvent, strategy: str) -> SyncResult:
    record = get_record(event.table_id, event.row_id)

    if record is None:
        if event.operation == OPERATION_INSERT:
            return _insert(event)
        logger.log_sync_decision(event.table_id, event.row_id, STATUS_NOT_FOUND)
        return SyncResult(status=STATUS_NOT_FOUND, row_id=event.row_id, reason="record_not_found")

    if is_stale(record, event):
        logger.log_sync_decision(event.table_id, record.id, STATUS_IGNORED, REASON_STALE_VERSION,
                                 {"event_version": event.version, "record_version": record.version})
        return SyncResult(status=STATUS_IGNORED, row_id=record.id, reason=REASON_STALE_VERSION)

    if is_loopback(record, event):
        logger.log_sync_decision(event.table_id, record.id, STATUS_IGNORED, REASON_LOOPBACK,
                                 {"source": event.source})
        return SyncResult(status=STATUS_IGNORED, row_id=record.id, reason=REASON_LOOPBACK)

    if event.operation == OPERATION_DELETE:
        return _apply_delete(record, event)

    # UPDATE, or INSERT for a row that already exists
    changes = dict(event.changes)
    conflicts = detect_conflicts(record, event)
    resolved = {}
    if conflicts:
        resolved = resolve_conflicts(record, event, conflicts, strategy)
        try:
            record_conflict(event.table_id, record.id, conflicts, resolved, strategy)
        except StoreUnavailable as e:
            raise ApplyFailed(f"Conflict log for row {record.id} failed: {e}") from e
        changes.update(resolved)

    result = _apply_update(record, event, changes)
    result.conflicts = len(conflicts)
    result.resolved = resolved
    return result


def process_sync_event(event: SyncEvent, strategy: Optional[str] = None) -> SyncResult:
    """Reconcile one sync event against the record store, serialized per row."""
    strategy = strategy or get_conflict_strategy()
    if strategy not in (STRATEGY_LAST_WRITE_WINS, STRATEGY_MANUAL):
        raise ValueError(f"Unknown conflict strategy: {strategy}")

    logger.info(f"[SYNC] Processing {event.source} {event.operation} for {event.table_id} row {event.row_id}")

    with row_locks.hold(event.table_id, event.row_id):
        return _reconcile(event, strategy)
