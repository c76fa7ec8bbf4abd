"""
HTTP surface: inbound webhooks from the sheet and the database, read-only
endpoints for the dashboard, and a few operator actions.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .schemas import (
    WebhookResponse,
    ErrorResponse,
    QueuedResponse,
    ListResponse,
    SyncStatusData,
    SyncStatusResponse,
    HealthResponse,
    SnapshotRequest,
    SnapshotResponse,
    QueueFlushResponse,
)
from ..core import heartbeat
from ..core.audit import record_webhook, list_conflicts, list_webhooks, get_sync_status
from ..core.config import (
    VERSION,
    ENTITY_TABLE,
    CORS_ORIGINS,
    RECENT_LOG_LIMIT,
    WEBHOOK_QUEUE_MAX_SIZE,
    WEBHOOK_FLUSH_THRESHOLD,
    WEBHOOK_FLUSH_INTERVAL_SEC,
    debug_enabled,
    is_batching_enabled,
    validate_config,
)
from ..core.dao import StoreUnavailable, list_records, count_records, reset_versions
from ..core.db import init_db, health_check
from ..core.intake import handle_webhook
from ..core.normalizer import InvalidPayload, KIND_SHEET, KIND_DB
from ..core.reconcile import ApplyFailed
from ..core.resync import apply_snapshot, diff_snapshot
from ..core.schema import AUDIT_RECEIVED, AUDIT_ERROR, results_to_dicts
from ..core.webhook_queue import WebhookQueue, QueueFull
from ..util.logging import logger

QUEUE_FLUSH_TASK = "webhook_queue_flush"

_webhook_queue: Optional[WebhookQueue] = None


def get_webhook_queue() -> WebhookQueue:
    """Lazy initialization of the webhook queue."""
    global _webhook_queue
    if _webhook_queue is None:
        _webhook_queue = WebhookQueue(
            handler=_handle_queued,
            max_size=WEBHOOK_QUEUE_MAX_SIZE,
            flush_threshold=WEBHOOK_FLUSH_THRESHOLD,
            flush_interval_sec=WEBHOOK_FLUSH_INTERVAL_SEC,
        )
    return _webhook_queue


def _handle_queued(kind: str, payload: Any):
    # RECEIVED was written when the body was enqueued
    return handle_webhook(kind, payload, audit_received=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    issues = validate_config()
    for issue in issues:
        logger.warning(f"[BOOT] Config issue: {issue}")

    init_db()

    if is_batching_enabled():
        queue = get_webhook_queue()
        heartbeat.register_task(QUEUE_FLUSH_TASK, 1, queue.flush_if_due)
        heartbeat.start()
        logger.info("[BOOT] Webhook batching enabled")

    yield

    if is_batching_enabled():
        heartbeat.stop()
        # Flush whatever is still queued before shutting down
        get_webhook_queue().drain()
        heartbeat.unregister_task(QUEUE_FLUSH_TASK)


app = FastAPI(
    title="Sheet Sync API",
    version=VERSION,
    description="Bidirectional spreadsheet <-> database sync over webhooks",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan,
)

# Dashboard polls the read endpoints from another origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _server_error(error: str, exc: Exception) -> JSONResponse:
    message = str(exc) if debug_enabled() else "Internal server error"
    return JSONResponse(status_code=500, content=ErrorResponse(error=error, message=message).model_dump())


def _invalid_payload() -> JSONResponse:
    return JSONResponse(status_code=400, content=ErrorResponse(error="Invalid payload").model_dump(exclude_none=True))


async def _receive_webhook(kind: str, request: Request):
    try:
        payload = await request.json()
    except ValueError:
        raw = {"raw_data": (await request.body()).decode("utf-8", errors="replace")[:1000]}
        await run_in_threadpool(record_webhook, raw, AUDIT_RECEIVED)
        await run_in_threadpool(record_webhook, raw, AUDIT_ERROR, "Unparseable JSON body")
        return _invalid_payload()

    if is_batching_enabled():
        return await _enqueue_webhook(kind, payload)

    try:
        result = await run_in_threadpool(handle_webhook, kind, payload)
    except InvalidPayload:
        return _invalid_payload()
    except (ApplyFailed, StoreUnavailable) as e:
        logging.error(f"[WEBHOOK-{kind.upper()}] Processing failed: {e}")
        return _server_error("Failed to process webhook", e)
    except Exception as e:
        logging.exception(f"[WEBHOOK-{kind.upper()}] Unexpected error: {e}")
        return _server_error("Failed to process webhook", e)

    return WebhookResponse(result=result.to_dict(), timestamp=_now())


async def _enqueue_webhook(kind: str, payload: Any):
    try:
        await run_in_threadpool(record_webhook, payload, AUDIT_RECEIVED)
        queued = get_webhook_queue().enqueue(kind, payload)
    except QueueFull as e:
        await run_in_threadpool(record_webhook, payload, AUDIT_ERROR, str(e))
        return JSONResponse(status_code=503, content={"error": "Webhook queue full", "message": "Retry later"})
    except StoreUnavailable as e:
        return _server_error("Failed to queue webhook", e)

    return JSONResponse(status_code=202, content=QueuedResponse(queued=queued, timestamp=_now()).model_dump(mode="json"))


@app.post("/sheet/webhook", response_model=WebhookResponse)
async def sheet_webhook_endpoint(request: Request):
    """Receive a cell edit from the spreadsheet's edit hook."""
    return await _receive_webhook(KIND_SHEET, request)


@app.post("/db/webhook", response_model=WebhookResponse)
async def db_webhook_endpoint(request: Request):
    """Receive a row change made in the database outside the sync flow."""
    return await _receive_webhook(KIND_DB, request)


@app.get("/sync/users", response_model=ListResponse)
def list_users_endpoint():
    """All tracked records, ordered by id."""
    try:
        records = list_records(ENTITY_TABLE)
    except StoreUnavailable as e:
        return _server_error("Failed to fetch users", e)
    return ListResponse(data=[r.to_dict() for r in records], count=len(records))


@app.get("/sync/conflicts", response_model=ListResponse)
def list_conflicts_endpoint(limit: int = Query(RECENT_LOG_LIMIT, ge=1, le=500)):
    """Recent conflicts, newest first."""
    try:
        conflicts = list_conflicts(limit)
    except StoreUnavailable as e:
        return _server_error("Failed to fetch conflicts", e)
    return ListResponse(data=[c.to_dict() for c in conflicts], count=len(conflicts))


@app.get("/sync/changelog", response_model=ListResponse)
def list_changelog_endpoint(limit: int = Query(RECENT_LOG_LIMIT, ge=1, le=500),
                            status: Optional[str] = Query(None, description="RECEIVED, PROCESSED or ERROR")):
    """Recent webhook audit entries, newest first."""
    try:
        entries = list_webhooks(limit, status=status.upper() if status else None)
    except StoreUnavailable as e:
        return _server_error("Failed to fetch changelog", e)
    return ListResponse(data=[e.to_dict() for e in entries], count=len(entries))


@app.get("/sync/status", response_model=SyncStatusResponse)
def sync_status_endpoint():
    """Aggregate counters for the dashboard."""
    try:
        status = get_sync_status(ENTITY_TABLE)
    except StoreUnavailable as e:
        return _server_error("Failed to fetch status", e)
    return SyncStatusResponse(data=SyncStatusData(**status))


@app.post("/sync/reconcile", response_model=SnapshotResponse)
def reconcile_snapshot_endpoint(request: SnapshotRequest):
    """Diff a full sheet snapshot against the store; replay the differences when apply=true."""
    try:
        if request.apply:
            diff, results = apply_snapshot(ENTITY_TABLE, request.rows)
        else:
            diff, results = diff_snapshot(ENTITY_TABLE, request.rows), []
    except (ApplyFailed, StoreUnavailable) as e:
        logging.error(f"[RESYNC] Snapshot reconciliation failed: {e}")
        return _server_error("Failed to reconcile snapshot", e)

    return SnapshotResponse(applied=request.apply, diff=diff.to_dict(), results=results_to_dicts(results))


@app.post("/sync/admin/reset-versions")
def reset_versions_endpoint():
    """Administrative resync: every record goes back to version 1."""
    try:
        touched = reset_versions(ENTITY_TABLE)
    except StoreUnavailable as e:
        return _server_error("Failed to reset versions", e)
    return {"status": "success", "reset": touched}


@app.post("/sync/queue/flush", response_model=QueueFlushResponse)
def flush_queue_endpoint():
    """Drain the webhook queue synchronously."""
    if not is_batching_enabled():
        return JSONResponse(status_code=404, content={"error": "Webhook batching disabled"})

    queue = get_webhook_queue()
    outcomes = queue.drain()
    failed = sum(1 for outcome in outcomes if not outcome.ok)
    return QueueFlushResponse(processed=len(outcomes) - failed, failed=failed, remaining=len(queue))


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    db_health = health_check()
    record_count = count_records(ENTITY_TABLE) if db_health else 0

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        record_count=record_count,
        batching=is_batching_enabled()
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logging.error(f"Unhandled exception: {exc}")
    content = {"detail": "Internal server error"}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(
        status_code=500,
        content=content,
    )
