"""
Record store for the tracked entity table.

Every mutation is a single-row, single-statement write. The reconciliation
engine is the only caller that mutates rows; read helpers serve the API.
"""

import sqlite3
from typing import Any, Dict, List, Optional

from .config import ENTITY_TABLE, ENTITY_FIELDS
from .db import get_db
from .schema import EntityRecord, utcnow, parse_timestamp
from ..util.logging import logger


class StoreUnavailable(Exception):
    """The durable store could not be reached or rejected the statement."""


def _check_table(table_id: str):
    if table_id != ENTITY_TABLE:
        raise ValueError(f"Untracked table: {table_id}")


def _check_fields(fields: Dict[str, Any]):
    unknown = [name for name in fields if name not in ENTITY_FIELDS]
    if unknown:
        raise ValueError(f"Unknown fields for {ENTITY_TABLE}: {unknown}")


def _row_to_record(row: sqlite3.Row) -> EntityRecord:
    return EntityRecord(
        id=row["id"],
        fields={name: row[name] for name in ENTITY_FIELDS},
        version=row["version"],
        source=row["source"],
        updated_at=parse_timestamp(row["updated_at"])
    )


def get_record(table_id: str, row_id: int) -> Optional[EntityRecord]:
    """Get a record by identity, or None when absent."""
    _check_table(table_id)
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT * FROM {table_id} WHERE id = ? LIMIT 1", (row_id,))
            row = cursor.fetchone()
            return _row_to_record(row) if row else None
    except sqlite3.Error as e:
        logger.error(f"Failed to get record {row_id} from '{table_id}': {e}")
        raise StoreUnavailable(str(e)) from e


def insert_record(table_id: str, fields: Dict[str, Any], source: str, row_id: Optional[int] = None) -> EntityRecord:
    """Insert a new record at version 1. When row_id is given it becomes the identity."""
    _check_table(table_id)
    _check_fields(fields)

    updated_at = utcnow()
    columns = list(fields.keys()) + ["source", "version", "updated_at"]
    values = list(fields.values()) + [source, 1, updated_at.isoformat()]
    if row_id is not None:
        columns.insert(0, "id")
        values.insert(0, row_id)

    placeholders = ", ".join("?" for _ in columns)
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"INSERT INTO {table_id} ({', '.join(columns)}) VALUES ({placeholders})",
                values
            )
            conn.commit()
            new_id = row_id if row_id is not None else cursor.lastrowid
    except sqlite3.Error as e:
        logger.error(f"Database error during insert into '{table_id}': {e}")
        raise StoreUnavailable(str(e)) from e

    record_fields = {name: None for name in ENTITY_FIELDS}
    record_fields.update(fields)
    return EntityRecord(id=new_id, fields=record_fields, version=1, source=source, updated_at=updated_at)


def apply_fields(table_id: str, row_id: int, fields: Dict[str, Any], source: str,
                 new_version: int, expected_version: Optional[int] = None) -> bool:
    """
    Write fields, source and version for one row.

    With expected_version the write only succeeds if the stored version still
    equals it; returns False when no row matched.
    """
    _check_table(table_id)
    _check_fields(fields)

    assignments = [f"{name} = ?" for name in fields] + ["source = ?", "version = ?", "updated_at = ?"]
    values = list(fields.values()) + [source, new_version, utcnow().isoformat(), row_id]
    sql = f"UPDATE {table_id} SET {', '.join(assignments)} WHERE id = ?"
    if expected_version is not None:
        sql += " AND version = ?"
        values.append(expected_version)

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(sql, values)
            conn.commit()
            return cursor.rowcount == 1
    except sqlite3.Error as e:
        logger.error(f"Database error during update of row {row_id} in '{table_id}': {e}")
        raise StoreUnavailable(str(e)) from e


def delete_record(table_id: str, row_id: int) -> bool:
    """Remove a record. Returns False when no row existed."""
    _check_table(table_id)
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(f"DELETE FROM {table_id} WHERE id = ?", (row_id,))
            conn.commit()
            return cursor.rowcount == 1
    except sqlite3.Error as e:
        logger.error(f"Database error during delete of row {row_id} in '{table_id}': {e}")
        raise StoreUnavailable(str(e)) from e


def list_records(table_id: str) -> List[EntityRecord]:
    """All records ordered by identity ascending."""
    _check_table(table_id)
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT * FROM {table_id} ORDER BY id ASC")
            return [_row_to_record(row) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        logger.error(f"Failed to list records of '{table_id}': {e}")
        raise StoreUnavailable(str(e)) from e


def count_records(table_id: str) -> int:
    _check_table(table_id)
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(f"SELECT COUNT(*) FROM {table_id}")
            result = cursor.fetchone()
            return result[0] if result else 0
    except sqlite3.Error as e:
        logger.error(f"Failed to count records of '{table_id}': {e}")
        raise StoreUnavailable(str(e)) from e


def reset_versions(table_id: str) -> int:
    """Administrative resync: put every record back to version 1. Returns rows touched."""
    _check_table(table_id)
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(f"UPDATE {table_id} SET version = 1, updated_at = ?", (utcnow().isoformat(),))
            conn.commit()
            touched = cursor.rowcount
    except sqlite3.Error as e:
        logger.error(f"Failed to reset versions of '{table_id}': {e}")
        raise StoreUnavailable(str(e)) from e

    logger.log_operation("store.reset_versions", "success", {"table": table_id, "rows": touched})
    return touched


def save_header_snapshot(headers: List[str]):
    """Replace the stored sheet header row (index 0 is column A)."""
    captured_at = utcnow().isoformat()
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM sheet_headers")
            cursor.executemany(
                "INSERT INTO sheet_headers (column_index, header, captured_at) VALUES (?, ?, ?)",
                [(index + 1, str(header), captured_at) for index, header in enumerate(headers)]
            )
            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Failed to save sheet header snapshot: {e}")
        raise StoreUnavailable(str(e)) from e


def load_header_snapshot() -> Dict[int, str]:
    """Stored sheet headers keyed by 1-based column number."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT column_index, header FROM sheet_headers ORDER BY column_index")
            return {row["column_index"]: row["header"] for row in cursor.fetchall()}
    except sqlite3.Error as e:
        logger.error(f"Failed to load sheet header snapshot: {e}")
        raise StoreUnavailable(str(e)) from e
