from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class CODStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class TaskRecord(BaseModel):
    job_id: str

    # Lifecycle status code as sent by the dispatch platform.
    status: Optional[Any] = None
    event_type: Optional[str] = None
    job_type: Optional[Any] = None

    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    vendor_id: Optional[str] = None

    fleet_id: Optional[str] = None
    fleet_name: Optional[str] = None

    pickup_address: Optional[str] = None
    delivery_address: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    delivery_latitude: Optional[float] = None
    delivery_longitude: Optional[float] = None
    distance: Optional[float] = None

    cod_amount: Optional[float] = Field(default=None, ge=0)
    cod_collected: bool = False
    order_fees: Optional[float] = None
    tags: Optional[Any] = None
    notes: Optional[str] = None

    # Opaque key-value payload from the source event.
    template_fields: Dict[str, Any] = Field(default_factory=dict)

    creation_datetime: Optional[str] = None
    webhook_received_at: Optional[float] = None
    created_at: float
    updated_at: float

    # Reserved for this system's own annotations; never overwritten by external data.
    internal_metadata: Dict[str, Any] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    id: str
    job_id: str
    field: str
    old_value: Any = None
    new_value: Any = None
    changed_at: float
    source: str = "webhook"


class CODEntry(BaseModel):
    cod_id: str
    driver_id: str
    task_id: str

    amount: float = Field(ge=0)
    status: CODStatus = CODStatus.PENDING

    created_at: float
    settled_at: Optional[float] = None
    notes: str = ""

    merchant_vendor_id: Optional[str] = None


class WebhookEvent(BaseModel):
    id: str
    event_type: str = "unknown"
    task_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    status: WebhookEventStatus = WebhookEventStatus.PENDING
    retry_count: int = 0
    last_retry_at: Optional[float] = None
    error_message: Optional[str] = None

    created_at: float
    updated_at: float
    processed_at: Optional[float] = None


class DrainSummary(BaseModel):
    scanned: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    exhausted: List[str] = Field(default_factory=list)


class CODEntryCreateRequest(BaseModel):
    task_id: str
    amount: Any
    notes: Optional[str] = None
    merchant_vendor_id: Optional[str] = None


class CODSettleRequest(BaseModel):
    note: Optional[str] = None
    # When given, must match the entry amount to the cent.
    paid_amount: Optional[Any] = None


class CODSettleOldestRequest(BaseModel):
    paid_amount: Any
    note: Optional[str] = None


class CODQueueResponse(BaseModel):
    driver_id: str
    entries: List[CODEntry]
    total: int


class WebhookEventListResponse(BaseModel):
    events: List[WebhookEvent]
    total: int


class HistoryListResponse(BaseModel):
    history: List[HistoryEntry]
    total: int
