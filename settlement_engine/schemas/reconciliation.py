from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from settlement_engine.config import ReconciliationMode
from settlement_engine.models.domain import (
    CashPaymentStatus,
    MatchStatus,
    PaymentDirection,
    PaymentSource,
    ReviewStatus,
)


class ReconciliationRunRequest(BaseModel):
    records: list[dict[str, Any]] = Field(default_factory=list)
    # Falls back to RECONCILIATION_MODE when omitted.
    mode: Optional[ReconciliationMode] = None
    source: str = Field("api", min_length=1, max_length=32)


class RecordResultRead(BaseModel):
    index: int
    outcome: str
    payment_id: Optional[int] = None
    deal_id: Optional[int] = None
    message: Optional[str] = None


class ReconciliationReportRead(BaseModel):
    run_id: Optional[int] = None
    inputs_hash: str
    mode: ReconciliationMode
    status: str
    processed: int
    linked: int
    skipped: int
    flagged: int
    failed: int
    warnings: list[dict[str, Any]] = Field(default_factory=list)
    records: list[RecordResultRead] = Field(default_factory=list)


class ReconciliationRunStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    inputs_hash: str
    source: str
    mode: str
    record_count: int
    status: str
    processed: int
    linked: int
    skipped: int
    flagged: int
    failed: int
    warnings: Optional[list[dict[str, Any]]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source: PaymentSource
    external_ref: Optional[str] = None
    operation_date: date
    amount: Decimal
    currency: str
    amount_base: Optional[Decimal] = None
    direction: PaymentDirection
    counterparty_name: Optional[str] = None
    description: Optional[str] = None
    match_status: MatchStatus
    linked_proforma_id: Optional[int] = None
    manual_proforma_id: Optional[int] = None
    linked_deal_id: Optional[int] = None
    match_confidence: Optional[float] = None
    match_reason: Optional[str] = None
    review_status: ReviewStatus
    duplicate_of_id: Optional[int] = None
    last_error: Optional[str] = None
    deleted_at: Optional[datetime] = None


class PaymentActionRequest(BaseModel):
    actor: Optional[str] = Field(None, max_length=128)
    reason: Optional[str] = Field(None, max_length=255)


class PaymentAssignRequest(BaseModel):
    proforma_id: Optional[int] = None
    proforma_fullnumber: Optional[str] = Field(None, max_length=64)
    actor: Optional[str] = Field(None, max_length=128)

    @model_validator(mode="after")
    def _exactly_one_target(self):
        if (self.proforma_id is None) == (not self.proforma_fullnumber):
            raise ValueError("Provide exactly one of proforma_id or proforma_fullnumber")
        return self


class DuplicateResolutionRequest(BaseModel):
    action: Literal["keep", "discard"]
    actor: Optional[str] = Field(None, max_length=128)


class CashPaymentCreate(BaseModel):
    deal_id: Optional[int] = None
    proforma_id: Optional[int] = None
    expected_amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    note: Optional[str] = None
    actor: Optional[str] = Field(None, max_length=128)


class CashConfirmRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    confirmed_by: Optional[str] = Field(None, max_length=128)
    confirmed_at: Optional[datetime] = None
    confirmation_id: Optional[str] = Field(None, max_length=128)


class CashRefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=255)
    processed_by: Optional[str] = Field(None, max_length=128)


class CashRefundRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    cash_payment_id: int
    amount: Decimal
    currency: str
    amount_base: Optional[Decimal] = None
    reason: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: datetime


class CashPaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: Optional[int] = None
    proforma_id: Optional[int] = None
    payment_id: Optional[int] = None
    expected_amount: Optional[Decimal] = None
    received_amount: Optional[Decimal] = None
    currency: str
    amount_base: Optional[Decimal] = None
    status: CashPaymentStatus
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    refunds: list[CashRefundRead] = Field(default_factory=list)


class ProformaAggregatesRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    fullnumber: str
    deal_id: Optional[int] = None
    currency: str
    total: Decimal
    payments_total: Decimal
    payments_total_base: Decimal
    payments_count: int
    cash_total: Decimal
    cash_total_base: Decimal
    aggregates_updated_at: Optional[datetime] = None


class ProformaVerifyResponse(BaseModel):
    proforma_id: int
    consistent: bool
    warning: Optional[dict[str, Any]] = None


class ProformaRecomputeRequest(BaseModel):
    actor: Optional[str] = Field(None, max_length=128)


class DealSettlementRead(BaseModel):
    deal_id: int
    stage: str
    expected_base: Optional[Decimal] = None
    paid_base: Decimal
    paid_ratio: Optional[Decimal] = None
    schedule: Optional[dict[str, Any]] = None
    transitions: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[dict[str, Any]] = Field(default_factory=list)
