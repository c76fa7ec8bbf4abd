"""
Event normalizer: turns source-specific webhook payloads into SyncEvents.

Rejected payloads come back as None (with the reason logged); only
normalize_webhook() turns a rejection into InvalidPayload.
"""

import math
from typing import Any, Dict, List, Optional

from .config import (
    ENTITY_TABLE,
    ENTITY_FIELDS,
    HEADER_ROW,
    SHEET_NAME,
    SOURCE_SHEET,
    SOURCE_DB,
    SOURCE_MANUAL,
    get_sheet_columns,
)
from .dao import save_header_snapshot, load_header_snapshot
from .schema import SyncEvent, OPERATION_UPDATE, VALID_OPERATIONS, utcnow, parse_timestamp
from ..util.logging import logger

IDENTITY_FIELD = "id"

KIND_SHEET = "sheet"
KIND_DB = "db"


class InvalidPayload(Exception):
    """Webhook payload could not be turned into a sync event."""


def _header_to_field(header: str) -> Optional[str]:
    name = str(header).strip().lower().replace(" ", "_")
    if name == IDENTITY_FIELD or name in ENTITY_FIELDS:
        return name
    return None


class ColumnMapping:
    """
    Resolves sheet column numbers (1-based) to entity field names.

    A captured header row takes precedence over the fixed position map so that
    reordering columns in the sheet does not silently write into the wrong field.
    """

    def __init__(self, columns: List[str] = None, headers: Dict[int, str] = None):
        columns = columns if columns is not None else get_sheet_columns()
        self.positions = {index + 1: name for index, name in enumerate(columns)}
        self.headers = dict(headers or {})

    @classmethod
    def from_store(cls) -> "ColumnMapping":
        return cls(headers=load_header_snapshot())

    def capture_headers(self, headers: List[str], persist: bool = True):
        """Record the sheet's current header row."""
        self.headers = {index + 1: str(header) for index, header in enumerate(headers)}
        if persist:
            save_header_snapshot(list(headers))

    def resolve(self, column: int) -> Optional[str]:
        if self.headers:
            header = self.headers.get(column)
            return _header_to_field(header) if header is not None else None
        return self.positions.get(column)


def _coerce(field: str, value: Any) -> Any:
    if value is None or value == "":
        return None
    target = ENTITY_FIELDS[field]
    if target is float:
        if isinstance(value, bool):
            raise ValueError(f"boolean is not a number: {value}")
        if isinstance(value, (int, float)):
            number = float(value)
        else:
            number = float(str(value).strip().replace(",", ""))
        if not math.isfinite(number):
            raise ValueError(f"not a finite number: {value}")
        return number
    return str(value)


def filter_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Keep recognized fields only, coerced to their declared type. Everything else is dropped with a warning."""
    accepted = {}
    for name, value in changes.items():
        if name not in ENTITY_FIELDS:
            logger.warning(f"Dropping unrecognized field '{name}' for {ENTITY_TABLE}")
            continue
        try:
            accepted[name] = _coerce(name, value)
        except (ValueError, OverflowError):
            logger.warning(f"Dropping field '{name}': cannot coerce {value!r} to {ENTITY_FIELDS[name].__name__}")
    return accepted


def positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if number > 0 else None
    return None


def _event_timestamp(payload: Dict[str, Any]):
    try:
        return parse_timestamp(payload.get("timestamp")) or utcnow()
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unparseable timestamp {payload.get('timestamp')!r}")
        return utcnow()


def parse_sheet_event(payload: Any, mapping: ColumnMapping = None) -> Optional[SyncEvent]:
    """
    Parse a spreadsheet edit notification.

    Expected payload: {row, column, oldValue, newValue, sheetName} with an
    optional header snapshot under "headers".
    """
    if not isinstance(payload, dict):
        return None

    row = positive_int(payload.get("row"))
    sheet_name = payload.get("sheetName")
    if row is None or not sheet_name:
        logger.warning("[SHEET-EVENT] Missing row or sheetName")
        return None

    if sheet_name != SHEET_NAME:
        logger.info(f"[SHEET-EVENT] Ignoring edit on untracked sheet '{sheet_name}'")
        return None

    if row == HEADER_ROW:
        logger.info("[SHEET-EVENT] Ignoring header row edit")
        return None

    column = positive_int(payload.get("column"))
    if column is None:
        logger.warning("[SHEET-EVENT] Missing column")
        return None

    if mapping is None:
        mapping = ColumnMapping.from_store()
    headers = payload.get("headers")
    if isinstance(headers, list) and headers:
        mapping.capture_headers(headers)

    field = mapping.resolve(column)
    if field is None:
        logger.info(f"[SHEET-EVENT] Ignoring non-tracked column {column}")
        return None
    if field == IDENTITY_FIELD:
        logger.info("[SHEET-EVENT] Ignoring ID column edit")
        return None

    changes = filter_changes({field: payload.get("newValue")})
    if not changes:
        return None

    metadata = {"oldValue": payload.get("oldValue"), "sheetName": sheet_name, "column": column}
    if payload.get("user"):
        metadata["user"] = payload["user"]

    return SyncEvent(
        source=SOURCE_SHEET,
        row_id=row,
        table_id=ENTITY_TABLE,
        operation=OPERATION_UPDATE,
        changes=changes,
        timestamp=_event_timestamp(payload),
        version=None,
        metadata=metadata
    )


def parse_db_event(payload: Any) -> Optional[SyncEvent]:
    """
    Parse a database change notification.

    Expected payload: {tableId, rowId, operation, changes?, version?, metadata?}
    """
    if not isinstance(payload, dict):
        return None

    table_id = payload.get("tableId")
    row_id = positive_int(payload.get("rowId"))
    operation = payload.get("operation")
    if not table_id or row_id is None or not operation:
        logger.warning("[DB-EVENT] Missing tableId, rowId or operation")
        return None

    if table_id != ENTITY_TABLE:
        logger.warning(f"[DB-EVENT] Untracked table '{table_id}'")
        return None

    operation = str(operation).upper()
    if operation not in VALID_OPERATIONS:
        logger.warning(f"[DB-EVENT] Unknown operation '{operation}'")
        return None

    changes = payload.get("changes") or {}
    metadata = payload.get("metadata") or {}
    if not isinstance(changes, dict) or not isinstance(metadata, dict):
        logger.warning("[DB-EVENT] changes and metadata must be objects")
        return None

    version = payload.get("version")
    if version is None:
        version = 1
    else:
        version = positive_int(version)
        if version is None:
            logger.warning(f"[DB-EVENT] Invalid version {payload.get('version')!r}")
            return None

    source = SOURCE_MANUAL if payload.get("source") == SOURCE_MANUAL else SOURCE_DB

    return SyncEvent(
        source=source,
        row_id=row_id,
        table_id=table_id,
        operation=operation,
        changes=filter_changes(changes),
        timestamp=_event_timestamp(payload),
        version=version,
        metadata=metadata
    )


def normalize_webhook(kind: str, payload: Any) -> SyncEvent:
    """Normalize a webhook body by origin kind, raising InvalidPayload on rejection."""
    if kind == KIND_SHEET:
        event = parse_sheet_event(payload)
    elif kind == KIND_DB:
        event = parse_db_event(payload)
    else:
        raise ValueError(f"Unknown webhook kind: {kind}")

    if event is None:
        raise InvalidPayload("Invalid payload")
    return event
