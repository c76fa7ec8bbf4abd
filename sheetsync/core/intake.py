"""
Webhook intake: audit, normalize and reconcile one inbound webhook body.
Shared by the HTTP routes and the webhook queue drain.
"""

from typing import Any

from .audit import record_webhook
from .normalizer import InvalidPayload, normalize_webhook
from .reconcile import process_sync_event
from .schema import SyncResult, AUDIT_RECEIVED, AUDIT_PROCESSED, AUDIT_ERROR
from ..util.logging import logger


def handle_webhook(kind: str, payload: Any, audit_received: bool = True) -> SyncResult:
    """
    Process a webhook body end to end.

    Writes RECEIVED on entry (unless already written at enqueue time) and
    PROCESSED or ERROR on exit. InvalidPayload and store failures propagate
    to the caller after the ERROR entry is written.
    """
    if audit_received:
        record_webhook(payload, AUDIT_RECEIVED)
    logger.log_webhook(kind, "received", payload if isinstance(payload, dict) else {"payload": payload})

    try:
        event = normalize_webhook(kind, payload)
        result = process_sync_event(event)
    except InvalidPayload as e:
        record_webhook(payload, AUDIT_ERROR, str(e))
        logger.log_webhook(kind, "rejected")
        raise
    except Exception as e:
        logger.error(f"[WEBHOOK-{kind.upper()}] Error: {e}")
        record_webhook(payload, AUDIT_ERROR, str(e))
        raise

    record_webhook(payload, AUDIT_PROCESSED)
    logger.log_webhook(kind, "processed", result.to_dict())
    return result
