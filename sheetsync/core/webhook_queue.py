"""
Bounded webhook queue for batched processing.

The queue owns its flush policy (size threshold or age of the oldest item)
and exposes a synchronous drain() so a scheduler task or a test can flush it
deterministically.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional

from ..util.logging import logger


class QueueFull(Exception):
    """The webhook queue reached its maximum size."""


@dataclass
class QueuedWebhook:
    kind: str
    payload: Any
    enqueued_at: float


@dataclass
class DrainOutcome:
    kind: str
    payload: Any
    result: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class WebhookQueue:
    """FIFO of pending webhook bodies with a size bound and a flush policy."""

    def __init__(self, handler: Callable[[str, Any], Any], max_size: int = 500,
                 flush_threshold: int = 50, flush_interval_sec: float = 5):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1: {max_size}")
        if not 1 <= flush_threshold <= max_size:
            raise ValueError(f"flush_threshold must be between 1 and max_size: {flush_threshold}")

        self.handler = handler
        self.max_size = max_size
        self.flush_threshold = flush_threshold
        self.flush_interval_sec = flush_interval_sec
        self._items: Deque[QueuedWebhook] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def enqueue(self, kind: str, payload: Any) -> int:
        """Add a webhook body; returns the new queue length."""
        with self._lock:
            if len(self._items) >= self.max_size:
                raise QueueFull(f"Webhook queue full ({self.max_size})")
            self._items.append(QueuedWebhook(kind=kind, payload=payload, enqueued_at=time.monotonic()))
            return len(self._items)

    def should_flush(self, now: Optional[float] = None) -> bool:
        with self._lock:
            if not self._items:
                return False
            if len(self._items) >= self.flush_threshold:
                return True
            now = time.monotonic() if now is None else now
            return now - self._items[0].enqueued_at >= self.flush_interval_sec

    def drain(self) -> List[DrainOutcome]:
        """Process every queued item in arrival order. Failures are reported, not re-queued."""
        with self._lock:
            batch = list(self._items)
            self._items.clear()

        outcomes = []
        for item in batch:
            try:
                outcomes.append(DrainOutcome(item.kind, item.payload, result=self.handler(item.kind, item.payload)))
            except Exception as e:
                logger.warning(f"Queued {item.kind} webhook failed: {e}")
                outcomes.append(DrainOutcome(item.kind, item.payload, error=e))

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        if outcomes:
            logger.log_queue_flush(len(outcomes) - failed, failed, len(self))
        return outcomes

    def flush_if_due(self) -> List[DrainOutcome]:
        """Heartbeat task body: drain only when the flush policy says so."""
        if self.should_flush():
            return self.drain()
        return []
