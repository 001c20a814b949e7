"""Pydantic schemas exchanged by the order execution worker."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal

from pydantic import AliasChoices, BaseModel, Field


class ExecutionOutcome(str, Enum):
    """Terminal result of a single execution attempt."""

    SKIPPED = "skipped"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


class BatchError(BaseModel):
    order_id: str
    message: str


class BatchResult(BaseModel):
    """Aggregated counts for one pending-order scan."""

    scanned: int = 0
    executed: int = 0
    cancelled: int = 0
    errors: List[BatchError] = Field(default_factory=list)


class WorkerHeartbeat(BaseModel):
    """Operational trace written after each batch."""

    last_run_at: datetime = Field(validation_alias=AliasChoices("last_run_at", "lastRunAtIso"))
    host: str | None = None
    pid: int | None = None
    elapsed_ms: float | None = None
    last_batch: BatchResult | None = None


WorkerHealth = Literal["disabled", "unknown", "healthy", "stale"]


class WorkerSnapshot(BaseModel):
    """Worker status as exposed to operators."""

    id: str
    label: str
    description: str
    enabled: bool
    enabled_source: Literal["setting", "default_enabled"]
    health: WorkerHealth
    health_ttl_ms: int
    last_run_at: datetime | None = None
    heartbeat: WorkerHeartbeat | None = None
    config: Dict[str, Any] = Field(default_factory=dict)


class WorkerToggleRequest(BaseModel):
    enabled: bool


class CronRunResponse(BaseModel):
    success: bool
    timestamp: datetime
    result: BatchResult


class OrderExecutionResponse(BaseModel):
    order_id: str
    outcome: ExecutionOutcome


class QuoteTick(BaseModel):
    """Last traded price pushed by the market data feed."""

    instrument_token: int
    last_trade_price: Decimal
    previous_close: Decimal | None = None


class QuoteIngestRequest(BaseModel):
    quotes: List[QuoteTick] = Field(default_factory=list)


class QuoteIngestResponse(BaseModel):
    accepted: int
    ignored: int


class NotificationMessage(BaseModel):
    title: str
    message: str
    severity: str = "info"
    metadata: Dict[str, str] = Field(default_factory=dict)


class DeliveryTarget(BaseModel):
    """Channel selection understood by the notification service."""

    channel: str = "webhook"
    webhook_url: str | None = None
    email_to: str | None = None
    chat_id: str | None = None


class NotificationRequest(BaseModel):
    """Body of ``POST /notifications`` on the notification service."""

    notification: NotificationMessage
    target: DeliveryTarget


__all__ = [
    "BatchError",
    "BatchResult",
    "CronRunResponse",
    "DeliveryTarget",
    "ExecutionOutcome",
    "NotificationMessage",
    "NotificationRequest",
    "OrderExecutionResponse",
    "QuoteIngestRequest",
    "QuoteIngestResponse",
    "QuoteTick",
    "WorkerHealth",
    "WorkerHeartbeat",
    "WorkerSnapshot",
    "WorkerToggleRequest",
]
