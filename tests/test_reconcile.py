"""
Reconciliation engine tests - idempotency, loop prevention, last-write-wins
conflict resolution and version monotonicity.
"""

import os
import tempfile
import shutil
import threading
import pytest
from datetime import timedelta
from unittest.mock import patch

from sheetsync.core.audit import list_conflicts, count_unresolved_conflicts
from sheetsync.core.config import ENTITY_TABLE
from sheetsync.core.dao import StoreUnavailable, get_record, insert_record
from sheetsync.core.db import init_db
from sheetsync.core.reconcile import (
    ApplyFailed,
    ConcurrentModification,
    detect_conflicts,
    process_sync_event,
    resolve_conflicts,
    row_locks,
)
from sheetsync.core.schema import EntityRecord, SyncEvent, utcnow


@pytest.fixture
def test_db():
    """Create a temporary database for testing."""
    test_dir = tempfile.mkdtemp()
    original_db_path = os.environ.get('DB_PATH')
    os.environ['DB_PATH'] = os.path.join(test_dir, "test_sync.db")
    init_db()

    yield

    if original_db_path:
        os.environ['DB_PATH'] = original_db_path
    else:
        del os.environ['DB_PATH']
    shutil.rmtree(test_dir)


def make_event(source="DB", row_id=1, operation="UPDATE", changes=None, version=None, timestamp=None):
    return SyncEvent(
        source=source,
        row_id=row_id,
        table_id=ENTITY_TABLE,
        operation=operation,
        changes=changes if changes is not None else {},
        timestamp=timestamp or utcnow() + timedelta(minutes=1),
        version=version
    )


class TestMissingRecord:

    def test_insert_creates_record(self, test_db):
        result = process_sync_event(make_event("SHEET", operation="INSERT", changes={"name": "John"}))

        assert result.status == "inserted"
        assert result.new_version == 1
        record = get_record(ENTITY_TABLE, 1)
        assert record.fields["name"] == "John"
        assert record.version == 1
        assert record.source == "SHEET"

    def test_update_of_missing_row_is_not_found(self, test_db):
        result = process_sync_event(make_event(changes={"name": "Ghost"}))

        assert result.status == "not_found"
        assert get_record(ENTITY_TABLE, 1) is None

    def test_delete_of_missing_row_is_not_found(self, test_db):
        assert process_sync_event(make_event(operation="DELETE")).status == "not_found"


class TestIdempotency:

    def test_replay_is_stale(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)
        event = make_event("DB", changes={"name": "Jane"}, version=2)

        first = process_sync_event(event)
        second = process_sync_event(event)

        assert first.status == "updated"
        assert second.status == "ignored"
        assert second.reason == "stale_version"
        record = get_record(ENTITY_TABLE, 1)
        assert record.fields["name"] == "Jane"
        assert record.version == 2

    def test_older_version_is_stale(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)
        process_sync_event(make_event("DB", changes={"name": "Jane"}, version=2))

        result = process_sync_event(make_event("MANUAL", changes={"name": "Old"}, version=1))

        assert result.reason == "stale_version"
        assert get_record(ENTITY_TABLE, 1).fields["name"] == "Jane"

    def test_stale_check_runs_before_loopback(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "DB", row_id=1)
        result = process_sync_event(make_event("DB", changes={"name": "Jane"}, version=1))
        assert result.reason == "stale_version"


class TestLoopPrevention:

    def test_same_source_is_loopback(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("SHEET", changes={"name": "Echo"}, version=5))

        assert result.status == "ignored"
        assert result.reason == "loopback"
        record = get_record(ENTITY_TABLE, 1)
        assert record.fields["name"] == "John"
        assert record.version == 1

    def test_other_source_is_applied(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", changes={"name": "Jane"}, version=5))

        assert result.status == "updated"
        assert get_record(ENTITY_TABLE, 1).source == "DB"

    def test_manual_overrides_are_never_loopback(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "MANUAL", row_id=1)

        result = process_sync_event(make_event("MANUAL", changes={"name": "Fixed"}))

        assert result.status == "updated"
        assert get_record(ENTITY_TABLE, 1).fields["name"] == "Fixed"


class TestConflictResolution:

    def test_later_event_wins(self, test_db):
        record = insert_record(ENTITY_TABLE, {"name": "Bob"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", changes={"name": "Alice"},
                                               timestamp=record.updated_at + timedelta(seconds=1)))

        assert result.conflicts == 1
        assert result.resolved == {"name": "Alice"}
        assert get_record(ENTITY_TABLE, 1).fields["name"] == "Alice"
        conflicts = list_conflicts()
        assert len(conflicts) == 1
        assert conflicts[0].field_name == "name"
        assert conflicts[0].incoming_value == "Alice"
        assert conflicts[0].current_value == "Bob"
        assert conflicts[0].resolved_value == "Alice"
        assert conflicts[0].strategy == "last_write_wins"

    def test_earlier_event_loses(self, test_db):
        record = insert_record(ENTITY_TABLE, {"name": "Bob"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", changes={"name": "Alice"},
                                               timestamp=record.updated_at - timedelta(minutes=5)))

        assert result.resolved == {"name": "Bob"}
        assert get_record(ENTITY_TABLE, 1).fields["name"] == "Bob"
        assert len(list_conflicts()) == 1

    def test_equal_timestamp_keeps_current(self, test_db):
        record = insert_record(ENTITY_TABLE, {"name": "Bob"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", changes={"name": "Alice"}, timestamp=record.updated_at))

        assert result.resolved == {"name": "Bob"}
        assert list_conflicts()[0].resolved_value == "Bob"

    def test_conflict_recorded_per_field(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "Bob", "email": "bob@example.com", "salary": 100.0}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", changes={
            "name": "Alice", "email": "alice@example.com", "salary": 100.0
        }))

        # salary is unchanged, so only two fields conflict
        assert result.conflicts == 2
        assert sorted(c.field_name for c in list_conflicts()) == ["email", "name"]

    def test_unset_value_still_counts_as_conflict(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "Bob"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", changes={"email": "bob@example.com"}))

        assert result.conflicts == 1
        assert get_record(ENTITY_TABLE, 1).fields["email"] == "bob@example.com"

    def test_manual_strategy_keeps_current_and_leaves_unresolved(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "Bob"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", changes={"name": "Alice"}), strategy="manual")

        assert result.resolved == {"name": "Bob"}
        assert get_record(ENTITY_TABLE, 1).fields["name"] == "Bob"
        assert count_unresolved_conflicts() == 1

    def test_unknown_strategy_rejected(self, test_db):
        with pytest.raises(ValueError):
            process_sync_event(make_event(), strategy="coin_flip")

    def test_detect_and_resolve_without_store(self):
        now = utcnow()
        record = EntityRecord(id=1, fields={"name": "Bob", "email": None, "salary": 10.0},
                              version=3, source="SHEET", updated_at=now)
        event = make_event(changes={"name": "Bob", "salary": 12.0}, timestamp=now + timedelta(seconds=1))

        conflicts = detect_conflicts(record, event)

        assert [c.field for c in conflicts] == ["salary"]
        assert resolve_conflicts(record, event, conflicts) == {"salary": 12.0}


class TestApply:

    def test_version_increments_once_per_applied_update(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "v1"}, "SHEET", row_id=1)

        sources = ["DB", "SHEET"]
        for n in range(6):
            result = process_sync_event(make_event(sources[n % 2], changes={"name": f"v{n + 2}"}))
            assert result.status == "updated"

        record = get_record(ENTITY_TABLE, 1)
        assert record.version == 1 + 6
        assert record.fields["name"] == "v7"

    def test_delete_removes_record(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", operation="DELETE", version=2))

        assert result.status == "deleted"
        assert get_record(ENTITY_TABLE, 1) is None

    def test_stale_delete_ignored(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", operation="DELETE", version=1))

        assert result.reason == "stale_version"
        assert get_record(ENTITY_TABLE, 1) is not None

    def test_insert_for_existing_row_updates(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)

        result = process_sync_event(make_event("DB", operation="INSERT", changes={"name": "Johnny"}, version=2))

        assert result.status == "updated"
        assert get_record(ENTITY_TABLE, 1).version == 2

    def test_store_failure_during_apply(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)

        with patch('sheetsync.core.reconcile.apply_fields', side_effect=StoreUnavailable("disk I/O error")):
            with pytest.raises(ApplyFailed):
                process_sync_event(make_event("DB", changes={"name": "Jane"}))

        assert get_record(ENTITY_TABLE, 1).fields["name"] == "John"

    def test_store_failure_during_insert(self, test_db):
        with patch('sheetsync.core.reconcile.insert_record', side_effect=StoreUnavailable("locked")):
            with pytest.raises(ApplyFailed):
                process_sync_event(make_event("SHEET", operation="INSERT", changes={"name": "John"}))

    def test_store_failure_during_read(self, test_db):
        with patch('sheetsync.core.reconcile.get_record', side_effect=StoreUnavailable("unreachable")):
            with pytest.raises(StoreUnavailable):
                process_sync_event(make_event())

    def test_version_mismatch_on_write(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "John"}, "SHEET", row_id=1)

        with patch('sheetsync.core.reconcile.apply_fields', return_value=False):
            with pytest.raises(ConcurrentModification):
                process_sync_event(make_event("DB", changes={"name": "Jane"}))


class TestConcurrency:

    def test_concurrent_updates_serialize_per_row(self, test_db):
        insert_record(ENTITY_TABLE, {"name": "start"}, "MANUAL", row_id=1)
        errors = []

        def worker(n):
            try:
                process_sync_event(make_event("MANUAL", changes={"name": f"writer-{n}"}))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert get_record(ENTITY_TABLE, 1).version == 1 + 8
        assert row_locks.active_keys() == []


def test_end_to_end_insert_update_replay(test_db):
    inserted = process_sync_event(make_event("SHEET", operation="INSERT", changes={"name": "John"}))
    assert inserted.status == "inserted"
    record = get_record(ENTITY_TABLE, 1)
    assert (record.version, record.source, record.fields["name"]) == (1, "SHEET", "John")

    update = make_event("DB", changes={"name": "Jane"}, version=2,
                        timestamp=record.updated_at + timedelta(seconds=30))
    applied = process_sync_event(update)
    assert applied.status == "updated"
    record = get_record(ENTITY_TABLE, 1)
    assert (record.version, record.source, record.fields["name"]) == (2, "DB", "Jane")

    replay = process_sync_event(update)
    assert (replay.status, replay.reason) == ("ignored", "stale_version")
    assert get_record(ENTITY_TABLE, 1) == record
