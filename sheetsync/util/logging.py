"""
Structured logging for webhook intake, sync decisions and conflict resolution.
"""

import logging
from typing import Any, Dict


class StructuredLogger:
    """Structured logger for sync operations."""

    def __init__(self, name: str = "sheetsync"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.info(message)

    def log_webhook(self, source: str, status: str, details: Dict[str, Any] = None):
        """Log an inbound webhook at intake or completion."""
        log_details = {"source": source}
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation(f"webhook.{source.lower()}", status, log_details)

    def log_sync_decision(self, table: str, row_id: Any, status: str, reason: str = None, details: Dict[str, Any] = None):
        """Log the reconciliation outcome for one sync event."""
        log_details = {"table": table, "row_id": row_id}
        if reason:
            log_details["reason"] = reason
        if details:
            log_details.update(details)

        self.log_operation("sync.decision", status, log_details)

    def log_conflict(self, table: str, row_id: Any, field: str, resolved_value: Any, strategy: str):
        """Log a detected field conflict and its resolution."""
        log_details = {
            "table": table,
            "row_id": row_id,
            "field": field,
            "resolved_value": sanitize_payload(resolved_value),
            "strategy": strategy
        }
        self.log_operation("sync.conflict", "resolved" if strategy != "manual" else "unresolved", log_details)

    def log_queue_flush(self, processed: int, failed: int, remaining: int):
        """Log a webhook queue drain."""
        self.log_operation("queue.flush", "success" if failed == 0 else "partial", {
            "processed": processed,
            "failed": failed,
            "remaining": remaining
        })

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation(f"heartbeat.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, max_length: int = 100) -> Any:
    """Truncate long strings (recursively) before they reach the log."""
    if isinstance(payload, dict):
        return {k: sanitize_payload(v, max_length) for k, v in payload.items()}
    elif isinstance(payload, str):
        return payload[:max_length] + "..." if len(payload) > max_length else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, max_length) for item in payload]
    else:
        return payload
