"""
Snapshot reconciliation tests - drift between a full sheet listing and the store.
"""

import os
import tempfile
import shutil
import pytest

from sheetsync.core.audit import list_conflicts
from sheetsync.core.config import ENTITY_TABLE
from sheetsync.core.dao import get_record, insert_record, list_records
from sheetsync.core.db import init_db
from sheetsync.core.resync import SnapshotDiff, apply_snapshot, diff_snapshot, snapshot_events


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


@pytest.fixture
def seeded(test_db):
    insert_record(ENTITY_TABLE, {"name": "John", "email": "john@example.com", "salary": 5000.0}, "SHEET", row_id=2)
    insert_record(ENTITY_TABLE, {"name": "Jane", "email": "jane@example.com", "salary": 6000.0}, "DB", row_id=3)
    insert_record(ENTITY_TABLE, {"name": "Gone", "email": None, "salary": None}, "SHEET", row_id=4)


def test_matching_snapshot_has_no_drift(test_db):
    insert_record(ENTITY_TABLE, {"name": "John", "salary": 5000.0}, "SHEET", row_id=2)

    diff = diff_snapshot(ENTITY_TABLE, [{"id": 2, "name": "John", "salary": "5,000"}])

    assert diff.is_empty


def test_diff_finds_every_kind_of_drift(seeded):
    rows = [
        {"id": 2, "name": "John", "email": "john@example.com", "salary": 5000},
        {"id": 3, "name": "Janet", "email": "jane@example.com", "salary": 6000},
        {"id": 5, "name": "New", "email": "new@example.com"},
    ]

    diff = diff_snapshot(ENTITY_TABLE, rows)

    assert diff.missing_in_store == {5: {"name": "New", "email": "new@example.com"}}
    assert diff.missing_in_snapshot == [4]
    assert diff.changed == {3: {"name": "Janet"}}
    assert diff.to_dict()["changed"] == {"3": {"name": "Janet"}}


def test_rows_without_usable_id_are_skipped(test_db):
    diff = diff_snapshot(ENTITY_TABLE, [{"id": "two", "name": "x"}, {"id": 0}, {"id": True}, "junk"])
    assert diff.skipped == 4
    assert diff.is_empty


def test_snapshot_events_are_manual(seeded):
    diff = SnapshotDiff(missing_in_store={5: {"name": "New"}}, missing_in_snapshot=[4], changed={3: {"name": "Janet"}})

    events = snapshot_events(ENTITY_TABLE, diff)

    assert [(e.operation, e.row_id) for e in events] == [("INSERT", 5), ("UPDATE", 3), ("DELETE", 4)]
    assert all(e.source == "MANUAL" and e.version is None for e in events)


def test_apply_snapshot_converges_store(seeded):
    rows = [
        {"id": 2, "name": "John", "email": "john@example.com", "salary": 5000},
        {"id": 3, "name": "Janet", "email": "jane@example.com", "salary": 6000},
        {"id": 5, "name": "New"},
    ]

    diff, results = apply_snapshot(ENTITY_TABLE, rows)

    assert sorted(r.status for r in results) == ["deleted", "inserted", "updated"]
    assert [r.id for r in list_records(ENTITY_TABLE)] == [2, 3, 5]
    janet = get_record(ENTITY_TABLE, 3)
    assert janet.fields["name"] == "Janet"
    assert janet.version == 2
    assert janet.source == "MANUAL"
    assert [c.field_name for c in list_conflicts()] == ["name"]

    # Second pass finds nothing left to do
    diff, results = apply_snapshot(ENTITY_TABLE, rows)
    assert diff.is_empty
    assert results == []


def test_string_ids_match_stored_rows(test_db):
    insert_record(ENTITY_TABLE, {"name": "John"}, "DB", row_id=3)

    diff, results = apply_snapshot(ENTITY_TABLE, [{"id": "3", "name": "John"}])

    assert diff.is_empty
    assert diff.skipped == 0
    assert results == []
    assert get_record(ENTITY_TABLE, 3).fields["name"] == "John"


def test_skipped_rows_block_deletions(seeded):
    rows = [
        {"id": 2, "name": "John", "email": "john@example.com", "salary": 5000},
        {"id": "three", "name": "Jane"},
    ]

    diff, results = apply_snapshot(ENTITY_TABLE, rows)

    assert diff.skipped == 1
    assert diff.missing_in_snapshot == []
    assert [r.id for r in list_records(ENTITY_TABLE)] == [2, 3, 4]
    assert all(r.status != "deleted" for r in results)
