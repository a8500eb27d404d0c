from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from fieldsync.domain.ids import LOCAL_ID_PATTERN
from fieldsync.domain.models import QueueItem


class ErrorResponse(BaseModel):
    detail: str


class SchedulerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    new_data_total: int
    idle_ticks_total: int
    skipped_total: int
    errors_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    scheduler_loop_enabled: bool
    scheduler_loop_ready: bool
    scheduler_metrics: SchedulerMetrics


class EnqueueResponse(BaseModel):
    local_id: str = Field(pattern=LOCAL_ID_PATTERN)


class QueueListResponse(BaseModel):
    items: list[QueueItem]
    count: int


class RetryDecisionView(BaseModel):
    eligible: bool
    phase: Literal["fast", "slow"]
    reason: str


class QueueItemResponse(BaseModel):
    partition: Literal["active", "completed"]
    contact_support: bool
    decisions: dict[str, RetryDecisionView]
    item: QueueItem


class RetryRequest(BaseModel):
    service: Literal["ledger", "proof", "linking"] | None = None


class RetryResponse(BaseModel):
    local_id: str
    reset_steps: list[str]
    dispatched: bool
    outcome: str
    reason: str


class RescueResponse(BaseModel):
    local_id: str
    created_at: datetime
    acknowledged_at: datetime
    total_retry_count: int
    errors: dict[str, str | None]
    payload: dict[str, Any]


class RunPassResponse(BaseModel):
    trigger: str
    outcome: Literal["new_data", "no_data", "failed", "skipped"]
    reason: str
    batch_size: int
    selected: list[str]
    completed: list[str]
    failed: list[str]


class QueueMetricsResponse(BaseModel):
    total_active: int
    processing: int
    stuck: int
    pending: int
    queued: int
    offline: int
    failed: int
    exhausted: int
    with_retries: int
    total_retries: int
    completed: int
