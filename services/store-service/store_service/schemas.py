from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"


class PaymentConfigResponse(BaseModel):
    payment_timeout_minutes: int


class RecordOutcomeSummary(BaseModel):
    kind: str
    record_id: int
    reference: str
    result: str
    status: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class SyncReportSummary(BaseModel):
    started_at: str
    finished_at: Optional[str] = None
    checked: int
    updated: int
    failed: int
    gateway_errors: int = 0
    error: Optional[str] = None
    outcomes: List[RecordOutcomeSummary]


class PaymentSummary(BaseModel):
    id: int
    reference: str
    amount: float
    status: str
    created_at: str


class PaymentStatusResponse(BaseModel):
    type: Literal["deposit", "transaction"]
    payment: PaymentSummary


class TransactionSummary(BaseModel):
    id: int
    order_id: str
    user_id: Optional[int] = None
    amount: float
    status: str
    assigned_stocks: Optional[list] = None
    created_at: str
    updated_at: str
