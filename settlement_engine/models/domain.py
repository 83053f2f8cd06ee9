# ruff: noqa: E501
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship, validates

from settlement_engine.database import Base


def _enum(enum_cls: type[PyEnum]) -> Enum:
    # Stored as VARCHAR holding the enum *value* (e.g. "in"), not the member name.
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


Money = Numeric(14, 2, asdecimal=True)
Rate = Numeric(18, 6, asdecimal=True)


class PaymentSource(PyEnum):
    bank = "bank"
    gateway = "gateway"
    cash = "cash"


class PaymentDirection(PyEnum):
    incoming = "in"
    outgoing = "out"


class MatchStatus(PyEnum):
    unmatched = "unmatched"
    matched = "matched"
    approved = "approved"
    rejected = "rejected"


class ReviewStatus(PyEnum):
    none = "none"
    duplicate_review = "duplicate_review"
    partial_failure = "partial_failure"


class ProformaStatus(PyEnum):
    active = "active"
    deleted = "deleted"


class CashPaymentStatus(PyEnum):
    pending = "pending"
    pending_confirmation = "pending_confirmation"
    received = "received"
    refunded = "refunded"


class ScheduleType(PyEnum):
    single = "single"
    split = "split"


class DealStage(PyEnum):
    awaiting_first_payment = "awaiting_first_payment"
    awaiting_second_payment = "awaiting_second_payment"
    fully_paid = "fully_paid"


# Forward-only order used to refuse automatic downgrades.
DEAL_STAGE_ORDER = {
    DealStage.awaiting_first_payment: 0,
    DealStage.awaiting_second_payment: 1,
    DealStage.fully_paid: 2,
}


class TransitionStatus(PyEnum):
    pending = "pending"
    applied = "applied"
    failed = "failed"


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # Fingerprint is unique among live rows; soft-deleted rows keep theirs for audit.
        Index(
            "uq_payments_fingerprint_live",
            "fingerprint",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index(
            "uq_payments_source_external_ref_live",
            "source",
            "external_ref",
            unique=True,
            sqlite_where=text("deleted_at IS NULL AND external_ref IS NOT NULL"),
            postgresql_where=text("deleted_at IS NULL AND external_ref IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[PaymentSource] = mapped_column(_enum(PaymentSource), nullable=False, index=True)
    external_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    operation_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    counterparty_name: Mapped[str | None] = mapped_column(String(255))
    normalized_counterparty: Mapped[str | None] = mapped_column(String(255), index=True)
    description: Mapped[str | None] = mapped_column(Text)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    direction: Mapped[PaymentDirection] = mapped_column(
        _enum(PaymentDirection), nullable=False, default=PaymentDirection.incoming
    )

    match_status: Mapped[MatchStatus] = mapped_column(
        _enum(MatchStatus), nullable=False, default=MatchStatus.unmatched, index=True
    )
    # Direct link written by the matching engine (or by an operator assignment).
    linked_proforma_id: Mapped[int | None] = mapped_column(
        ForeignKey("proformas.id"), nullable=True, index=True
    )
    linked_deal_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    # Manual override key; an alternative to the direct link, never additive.
    manual_proforma_id: Mapped[int | None] = mapped_column(
        ForeignKey("proformas.id"), nullable=True, index=True
    )
    manual_proforma_fullnumber: Mapped[str | None] = mapped_column(String(64), nullable=True)
    proforma_number_hint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    match_confidence: Mapped[float | None] = mapped_column(nullable=True)
    match_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    match_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    amount_base: Mapped[Decimal | None] = mapped_column(Money, nullable=True)

    review_status: Mapped[ReviewStatus] = mapped_column(
        _enum(ReviewStatus), nullable=False, default=ReviewStatus.none, index=True
    )
    duplicate_of_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def effective_proforma_id(self) -> int | None:
        """The single proforma this payment counts towards (direct link, else manual)."""
        return self.linked_proforma_id or self.manual_proforma_id

    @property
    def is_signed_out(self) -> bool:
        return self.direction == PaymentDirection.outgoing


class Proforma(Base):
    __tablename__ = "proformas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fullnumber: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    deal_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    buyer_name: Mapped[str | None] = mapped_column(String(255))
    buyer_normalized_name: Mapped[str | None] = mapped_column(String(255), index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    issued_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    # Proforma currency -> base currency rate fixed at issue time.
    exchange_rate: Mapped[Decimal | None] = mapped_column(Rate, nullable=True)
    status: Mapped[ProformaStatus] = mapped_column(
        _enum(ProformaStatus), nullable=False, default=ProformaStatus.active, index=True
    )

    # Derived aggregates: SettlementAggregator is the only writer (see guard below).
    payments_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    payments_total_base: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0.00")
    )
    payments_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cash_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    cash_total_base: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    aggregates_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @validates("currency")
    def _validate_currency(self, _key, value: str):
        if not value or len(str(value).strip()) != 3:
            raise ValueError(f"Invalid proforma currency: {value!r}")
        return str(value).strip().upper()


PROFORMA_AGGREGATE_FIELDS = (
    "payments_total",
    "payments_total_base",
    "payments_count",
    "cash_total",
    "cash_total_base",
)

AGGREGATOR_SESSION_FLAG = "settlement_aggregator_writing"


@event.listens_for(Session, "before_flush")
def _guard_proforma_aggregates(session: Session, _flush_context, _instances) -> None:
    if session.info.get(AGGREGATOR_SESSION_FLAG):
        return
    from sqlalchemy import inspect as sa_inspect

    for obj in session.dirty:
        if not isinstance(obj, Proforma):
            continue
        state = sa_inspect(obj)
        for field in PROFORMA_AGGREGATE_FIELDS:
            if state.attrs[field].history.has_changes():
                raise RuntimeError(
                    f"Proforma {obj.id} aggregate '{field}' may only be written by the settlement aggregator"
                )


class Deal(Base):
    """Local mirror of the CRM deal (read mostly)."""

    __tablename__ = "deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str | None] = mapped_column(String(255))
    value: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    stage_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pipeline_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Persisted notification dedup; survives restarts and multiple instances.
    last_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CashPayment(Base):
    __tablename__ = "cash_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    proforma_id: Mapped[int | None] = mapped_column(
        ForeignKey("proformas.id"), nullable=True, index=True
    )
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True)
    expected_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    received_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount_base: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    status: Mapped[CashPaymentStatus] = mapped_column(
        _enum(CashPaymentStatus), nullable=False, default=CashPaymentStatus.pending, index=True
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    events = relationship(
        "CashPaymentEvent", back_populates="cash_payment", order_by="CashPaymentEvent.id"
    )
    refunds = relationship("CashRefund", back_populates="cash_payment", order_by="CashRefund.id")


class CashPaymentEvent(Base):
    """Append-only audit trail for a cash payment."""

    __tablename__ = "cash_payment_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cash_payment_id: Mapped[int] = mapped_column(
        ForeignKey("cash_payments.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    cash_payment = relationship("CashPayment", back_populates="events")


class CashRefund(Base):
    """Append-only refund records for a cash payment."""

    __tablename__ = "cash_refunds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cash_payment_id: Mapped[int] = mapped_column(
        ForeignKey("cash_payments.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount_base: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    cash_payment = relationship("CashPayment", back_populates="refunds")


class PaymentScheduleState(Base):
    """Schedule snapshot taken when the deal's first payment is recorded as paid."""

    __tablename__ = "payment_schedule_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    schedule_type: Mapped[ScheduleType] = mapped_column(_enum(ScheduleType), nullable=False)
    second_payment_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expected_close_date_snapshot: Mapped[date | None] = mapped_column(Date, nullable=True)
    days_to_close: Mapped[int | None] = mapped_column(Integer, nullable=True)
    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


@event.listens_for(PaymentScheduleState, "before_update")
def _schedule_state_is_immutable(_mapper, _connection, target: PaymentScheduleState):
    raise RuntimeError(f"PaymentScheduleState for deal {target.deal_id} is immutable once written")


class DealStageTransition(Base):
    __tablename__ = "deal_stage_transitions"
    __table_args__ = (
        UniqueConstraint("deal_id", "target_stage", name="uq_deal_stage_transitions_deal_target"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    target_stage: Mapped[DealStage] = mapped_column(_enum(DealStage), nullable=False)
    from_stage: Mapped[DealStage | None] = mapped_column(_enum(DealStage), nullable=True)
    crm_stage_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Forward-only: pending -> applied | failed (failed is retried on the next run).
    status: Mapped[TransitionStatus] = mapped_column(
        _enum(TransitionStatus), nullable=False, default=TransitionStatus.pending, index=True
    )
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_ratio: Mapped[Decimal | None] = mapped_column(Numeric(8, 4), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class ReminderLog(Base):
    __tablename__ = "reminder_logs"
    __table_args__ = (
        UniqueConstraint("deal_id", "kind", "due_date", name="uq_reminder_logs_deal_kind_due"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    inputs_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False, server_default="apply")
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Forward-only status machine: queued -> running -> done|failed|cancelled
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, server_default="queued", index=True
    )

    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    linked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    flagged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warnings: Mapped[list[dict] | None] = mapped_column(JSON, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actor: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payload_json: Mapped[str | None] = mapped_column(Text)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class EntityLock(Base):
    """Lease row used for per-entity serialization where advisory locks are unavailable."""

    __tablename__ = "entity_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
