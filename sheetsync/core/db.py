"""
SQLite storage foundation: connection handling and schema bootstrap.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import ENTITY_TABLE, get_db_path, ensure_db_directory

REQUIRED_TABLES = [ENTITY_TABLE, "sync_conflicts", "webhook_audit", "sheet_headers"]


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    ensure_db_directory()
    conn = sqlite3.connect(get_db_path(), timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize the database with required tables."""
    with get_db() as conn:
        cursor = conn.cursor()

        # Tracked entity with sync metadata
        cursor.execute(f'''
            CREATE TABLE IF NOT EXISTS {ENTITY_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT,
                email TEXT,
                salary REAL,
                updated_at TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT 'DB',
                version INTEGER NOT NULL DEFAULT 1
            )
        ''')

        # Conflict tracking, one row per conflicting field (append-only)
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sync_conflicts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                table_name TEXT NOT NULL,
                row_id INTEGER NOT NULL,
                field_name TEXT NOT NULL,
                incoming_value TEXT,
                current_value TEXT,
                resolved_value TEXT,
                strategy TEXT NOT NULL,
                resolved_at TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        # Webhook audit log (append-only)
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS webhook_audit (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                error_message TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        # Last captured sheet header row, used for name-based column resolution
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sheet_headers (
                column_index INTEGER PRIMARY KEY,
                header TEXT NOT NULL,
                captured_at TEXT NOT NULL
            )
        ''')

        cursor.execute(f'CREATE INDEX IF NOT EXISTS idx_{ENTITY_TABLE}_updated_at ON {ENTITY_TABLE}(updated_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_conflicts_created ON sync_conflicts(created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_created ON webhook_audit(created_at DESC)')

        conn.commit()


def health_check() -> bool:
    """Check database health."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
