"""
Snapshot reconciliation against a full listing of the sheet.

The sheet's edit hook never reports row deletions, so drift is found by
diffing a complete snapshot with the record store. Differences are replayed
as MANUAL sync events through the reconciliation engine, so the usual
conflict logging and version bumps apply.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .config import ENTITY_FIELDS, SOURCE_MANUAL
from .dao import list_records
from .normalizer import filter_changes, positive_int
from .reconcile import process_sync_event
from .schema import (
    SyncEvent,
    SyncResult,
    OPERATION_INSERT,
    OPERATION_UPDATE,
    OPERATION_DELETE,
    utcnow,
)
from ..util.logging import logger


@dataclass
class SnapshotDiff:
    """Rows to insert, delete and update to make the store match the snapshot."""
    missing_in_store: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    missing_in_snapshot: List[int] = field(default_factory=list)
    changed: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    skipped: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.missing_in_store or self.missing_in_snapshot or self.changed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "missing_in_store": sorted(self.missing_in_store),
            "missing_in_snapshot": sorted(self.missing_in_snapshot),
            "changed": {str(row_id): changes for row_id, changes in sorted(self.changed.items())},
            "skipped": self.skipped
        }


def diff_snapshot(table_id: str, rows: List[Dict[str, Any]]) -> SnapshotDiff:
    """Compare a full snapshot ([{id, <fields>}]) with the record store."""
    diff = SnapshotDiff()
    snapshot = {}
    for row in rows:
        row_id = positive_int(row.get("id")) if isinstance(row, dict) else None
        if row_id is None:
            diff.skipped += 1
            continue
        snapshot[row_id] = filter_changes({k: v for k, v in row.items() if k != "id"})

    stored = {record.id: record for record in list_records(table_id)}

    for row_id, values in snapshot.items():
        record = stored.get(row_id)
        if record is None:
            diff.missing_in_store[row_id] = values
            continue
        changes = {name: value for name, value in values.items()
                   if name in ENTITY_FIELDS and record.fields.get(name) != value}
        if changes:
            diff.changed[row_id] = changes

    if diff.skipped:
        # A skipped row may be a stored one, so absence proves nothing
        logger.warning(f"[RESYNC] {diff.skipped} snapshot rows without a usable id; not computing deletions")
    else:
        diff.missing_in_snapshot = [row_id for row_id in stored if row_id not in snapshot]

    logger.log_operation("resync.diff", "success", {
        "table": table_id,
        "inserts": len(diff.missing_in_store),
        "deletes": len(diff.missing_in_snapshot),
        "updates": len(diff.changed),
        "skipped": diff.skipped
    })
    return diff


def snapshot_events(table_id: str, diff: SnapshotDiff) -> List[SyncEvent]:
    """Turn a diff into MANUAL sync events (no version, so the stale check never applies)."""
    now = utcnow()
    events = []
    for row_id, values in sorted(diff.missing_in_store.items()):
        events.append(SyncEvent(source=SOURCE_MANUAL, row_id=row_id, table_id=table_id,
                                operation=OPERATION_INSERT, changes=values, timestamp=now,
                                metadata={"origin": "snapshot"}))
    for row_id, changes in sorted(diff.changed.items()):
        events.append(SyncEvent(source=SOURCE_MANUAL, row_id=row_id, table_id=table_id,
                                operation=OPERATION_UPDATE, changes=changes, timestamp=now,
                                metadata={"origin": "snapshot"}))
    for row_id in sorted(diff.missing_in_snapshot):
        events.append(SyncEvent(source=SOURCE_MANUAL, row_id=row_id, table_id=table_id,
                                operation=OPERATION_DELETE, changes={}, timestamp=now,
                                metadata={"origin": "snapshot"}))
    return events


def apply_snapshot(table_id: str, rows: List[Dict[str, Any]]) -> Tuple[SnapshotDiff, List[SyncResult]]:
    """Diff the snapshot against the store and replay the differences."""
    diff = diff_snapshot(table_id, rows)
    results = [process_sync_event(event) for event in snapshot_events(table_id, diff)]
    logger.log_operation("resync.apply", "success", {
        "table": table_id,
        "applied": sum(1 for result in results if result.applied),
        "ignored": sum(1 for result in results if not result.applied)
    })
    return diff, results
