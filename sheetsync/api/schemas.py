"""
Request and response models for the sync HTTP API.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime


class WebhookResponse(BaseModel):
    status: str = "success"
    result: Dict[str, Any]
    timestamp: datetime


class QueuedResponse(BaseModel):
    status: str = "queued"
    queued: int
    timestamp: datetime


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None


class ListResponse(BaseModel):
    status: str = "success"
    data: List[Dict[str, Any]]
    count: int


class SyncStatusData(BaseModel):
    totalUsers: int
    unresolved_conflicts: int
    processed_webhooks: int
    failed_webhooks: int
    timestamp: datetime


class SyncStatusResponse(BaseModel):
    status: str = "success"
    data: SyncStatusData


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    record_count: int
    batching: bool


class SnapshotRequest(BaseModel):
    rows: List[Dict[str, Any]]
    apply: bool = False

    @field_validator('rows')
    @classmethod
    def rows_must_have_ids(cls, v):
        for row in v:
            if 'id' not in row:
                raise ValueError('every snapshot row needs an id')
        return v


class SnapshotResponse(BaseModel):
    status: str = "success"
    applied: bool
    diff: Dict[str, Any]
    results: List[Dict[str, Any]] = []


class QueueFlushResponse(BaseModel):
    processed: int
    failed: int
    remaining: int
