"""
Runtime configuration for the sheet <-> database sync service.
Values come from the environment (optionally a .env file).
"""

import os
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/sheetsync.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Tracked entity (single table only)
ENTITY_TABLE = os.getenv("ENTITY_TABLE", "users")

# Business fields of the tracked entity and the python type their values are coerced to
ENTITY_FIELDS: Dict[str, type] = {
    "name": str,
    "email": str,
    "salary": float,
}

# Spreadsheet side
SHEET_NAME = os.getenv("SHEET_NAME", "Data")
SHEET_COLUMNS = os.getenv("SHEET_COLUMNS", "id,name,email,salary")
HEADER_ROW = 1

# Sync sources
SOURCE_SHEET = "SHEET"
SOURCE_DB = "DB"
SOURCE_MANUAL = "MANUAL"

# Conflict resolution
STRATEGY_LAST_WRITE_WINS = "last_write_wins"
STRATEGY_MANUAL = "manual"
CONFLICT_STRATEGY = os.getenv("CONFLICT_STRATEGY", STRATEGY_LAST_WRITE_WINS)  # last_write_wins|manual

# Webhook batching (default disabled)
WEBHOOK_BATCHING_ENABLED = os.getenv("WEBHOOK_BATCHING_ENABLED", "false").lower() == "true"
WEBHOOK_QUEUE_MAX_SIZE = int(os.getenv("WEBHOOK_QUEUE_MAX_SIZE", "500"))
WEBHOOK_FLUSH_THRESHOLD = int(os.getenv("WEBHOOK_FLUSH_THRESHOLD", "50"))
WEBHOOK_FLUSH_INTERVAL_SEC = int(os.getenv("WEBHOOK_FLUSH_INTERVAL_SEC", "5"))

# Read endpoints
RECENT_LOG_LIMIT = int(os.getenv("RECENT_LOG_LIMIT", "50"))

# HTTP server
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "3001"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")

VERSION = "1.0.0"


def get_db_path() -> str:
    """Database path, re-read so tests can point it at a temporary file."""
    return os.getenv("DB_PATH", DB_PATH)


def debug_enabled() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def get_sheet_columns() -> List[str]:
    """Field names by sheet column position (index 0 is column A)."""
    raw = os.getenv("SHEET_COLUMNS", SHEET_COLUMNS)
    return [c.strip() for c in raw.split(",") if c.strip()]


def get_conflict_strategy() -> str:
    """Get conflict strategy (last_write_wins|manual)."""
    return os.getenv("CONFLICT_STRATEGY", CONFLICT_STRATEGY)


def is_batching_enabled() -> bool:
    """Check if inbound webhooks are queued instead of processed inline."""
    return os.getenv("WEBHOOK_BATCHING_ENABLED", "false").lower() == "true"


def validate_config() -> List[str]:
    """Validate sync configuration and return any issues."""
    issues = []

    if get_conflict_strategy() not in [STRATEGY_LAST_WRITE_WINS, STRATEGY_MANUAL]:
        issues.append(f"Invalid CONFLICT_STRATEGY: {get_conflict_strategy()}")

    columns = get_sheet_columns()
    if "id" not in columns:
        issues.append("SHEET_COLUMNS must contain the identity column 'id'")
    unknown = [c for c in columns if c != "id" and c not in ENTITY_FIELDS]
    if unknown:
        issues.append(f"SHEET_COLUMNS references unknown fields: {unknown}")

    if WEBHOOK_FLUSH_THRESHOLD > WEBHOOK_QUEUE_MAX_SIZE:
        issues.append("WEBHOOK_FLUSH_THRESHOLD must be <= WEBHOOK_QUEUE_MAX_SIZE")

    if WEBHOOK_FLUSH_INTERVAL_SEC < 1:
        issues.append("WEBHOOK_FLUSH_INTERVAL_SEC must be >= 1")

    return issues
