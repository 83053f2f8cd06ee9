from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.services.audit import audit_event
from settlement_engine.services.collaborators import FXRateCollaborator
from settlement_engine.services.dedup_index import fingerprint_payment
from settlement_engine.services.errors import InvalidTransitionError, NotFoundError, ValidationError
from settlement_engine.services.ingest_normalizer import fill_amount_base
from settlement_engine.services.money import ZERO, convert_to_base, round_money, utc_now
from settlement_engine.services.settlement_aggregator import recompute_proforma_aggregates

logger = logging.getLogger("settlement.cash")

_CONFIRMABLE = {models.CashPaymentStatus.pending, models.CashPaymentStatus.pending_confirmation}
_REFUNDABLE = {models.CashPaymentStatus.received, models.CashPaymentStatus.refunded}


def _append_event(
    db: Session,
    cash: models.CashPayment,
    event_type: str,
    *,
    source: str,
    actor: str | None,
    payload: dict[str, Any] | None = None,
) -> models.CashPaymentEvent:
    event = models.CashPaymentEvent(
        cash_payment_id=cash.id,
        event_type=event_type,
        source=source,
        payload={k: (str(v) if isinstance(v, (Decimal, datetime)) else v) for k, v in (payload or {}).items()},
        created_by=actor,
    )
    db.add(event)
    db.flush()
    return event


def _get_cash(db: Session, cash_payment_id: int) -> models.CashPayment:
    cash = db.get(models.CashPayment, int(cash_payment_id))
    if cash is None:
        raise NotFoundError(f"Cash payment {cash_payment_id} not found")
    return cash


def _base_rate(db: Session, cash: models.CashPayment) -> Decimal | None:
    if cash.proforma_id is None:
        return None
    proforma = db.get(models.Proforma, cash.proforma_id)
    if proforma is None or proforma.currency != cash.currency:
        return None
    return proforma.exchange_rate


def create_cash_expectation(
    db: Session,
    *,
    deal_id: int | None,
    proforma_id: int | None,
    expected_amount: Decimal,
    currency: str,
    actor: str | None = None,
    note: str | None = None,
    source: str = "api",
) -> models.CashPayment:
    if expected_amount is None or Decimal(expected_amount) <= ZERO:
        raise ValidationError("expected_amount must be positive", field_name="expected_amount")
    if proforma_id is not None and db.get(models.Proforma, int(proforma_id)) is None:
        raise NotFoundError(f"Proforma {proforma_id} not found")

    cash = models.CashPayment(
        deal_id=deal_id,
        proforma_id=proforma_id,
        expected_amount=round_money(expected_amount),
        currency=str(currency).strip().upper(),
        status=models.CashPaymentStatus.pending,
        note=note,
    )
    db.add(cash)
    db.flush()
    _append_event(
        db, cash, "created", source=source, actor=actor, payload={"expected_amount": cash.expected_amount}
    )
    return cash


def request_confirmation(
    db: Session, cash_payment_id: int, *, actor: str | None, source: str = "api"
) -> models.CashPayment:
    """A manager reports the cash was handed over; finance still has to confirm it."""
    cash = _get_cash(db, cash_payment_id)
    if cash.status != models.CashPaymentStatus.pending:
        raise InvalidTransitionError(f"Cash payment {cash.id} is {cash.status.value}, not pending")
    cash.status = models.CashPaymentStatus.pending_confirmation
    db.flush()
    _append_event(db, cash, "confirmation_requested", source=source, actor=actor)
    return cash


def confirm_cash_payment(
    db: Session,
    cash_payment_id: int,
    *,
    amount: Decimal,
    confirmed_by: str | None,
    config: ReconciliationConfig,
    currency: str | None = None,
    confirmed_at: datetime | None = None,
    confirmation_id: str | None = None,
    payment: models.Payment | None = None,
    fx: FXRateCollaborator | None = None,
    source: str = "api",
) -> models.CashPayment:
    """Record cash as received and link the canonical cash Payment to it.

    `payment` is the already stored Payment when the confirmation came through
    ingestion; otherwise one is created here.
    """
    cash = _get_cash(db, cash_payment_id)
    if cash.status not in _CONFIRMABLE:
        raise InvalidTransitionError(f"Cash payment {cash.id} is already {cash.status.value}")
    if amount is None or Decimal(amount) <= ZERO:
        raise ValidationError("amount must be positive", field_name="amount")

    currency = str(currency or cash.currency).strip().upper()
    if currency != cash.currency:
        raise ValidationError(
            f"Cash payment {cash.id} is in {cash.currency}, confirmation in {currency}",
            field_name="currency",
        )

    confirmed_at = confirmed_at or utc_now()
    received = round_money(amount)

    if payment is None:
        payment = models.Payment(
            source=models.PaymentSource.cash,
            external_ref=confirmation_id or f"cash:{cash.id}",
            operation_date=confirmed_at.date(),
            amount=received,
            currency=currency,
            counterparty_name=confirmed_by,
            description=f"cash payment {cash.id}",
            direction=models.PaymentDirection.incoming,
            linked_deal_id=cash.deal_id,
            match_status=models.MatchStatus.unmatched,
            review_status=models.ReviewStatus.none,
        )
        fill_amount_base(payment, config=config, fx=fx)
        fingerprint_payment(payment, config)
        db.add(payment)

    if cash.proforma_id is not None:
        payment.linked_proforma_id = cash.proforma_id
        payment.match_status = models.MatchStatus.matched
        payment.match_reason = "cash_confirmation"
        payment.match_confidence = 1.0
    payment.linked_deal_id = payment.linked_deal_id or cash.deal_id
    db.flush()

    amount_base = payment.amount_base
    if amount_base is None:
        amount_base = convert_to_base(received, currency, config.base_currency, rate=_base_rate(db, cash))

    cash.received_amount = received
    cash.amount_base = amount_base
    cash.status = models.CashPaymentStatus.received
    cash.confirmed_at = confirmed_at
    cash.confirmed_by = confirmed_by
    cash.payment_id = payment.id
    db.flush()

    _append_event(
        db,
        cash,
        "confirm",
        source=source,
        actor=confirmed_by,
        payload={"amount": received, "amount_base": amount_base, "payment_id": payment.id},
    )
    audit_event(
        db,
        "cash_payment.confirmed",
        "cash_payment",
        cash.id,
        {"amount": received, "currency": currency, "payment_id": payment.id},
        actor=confirmed_by,
    )
    logger.info("cash_payment_confirmed", extra={"cash_payment_id": cash.id, "payment_id": payment.id})

    if cash.proforma_id is not None:
        recompute_proforma_aggregates(
            db, cash.proforma_id, base_currency=config.base_currency, reason="cash.confirmed"
        )
    return cash


def refund_cash_payment(
    db: Session,
    cash_payment_id: int,
    *,
    amount: Decimal,
    processed_by: str | None,
    config: ReconciliationConfig,
    reason: str | None = None,
    processed_at: datetime | None = None,
    source: str = "api",
) -> models.CashRefund:
    cash = _get_cash(db, cash_payment_id)
    if cash.status not in _REFUNDABLE:
        raise InvalidTransitionError(f"Cash payment {cash.id} is {cash.status.value}; nothing to refund")

    value = round_money(amount)
    already = sum((Decimal(r.amount) for r in cash.refunds), ZERO)
    if value <= ZERO or value > Decimal(cash.received_amount or 0) - already:
        raise ValidationError(
            f"Refund of {value} exceeds the refundable amount of cash payment {cash.id}",
            field_name="amount",
        )

    amount_base = convert_to_base(value, cash.currency, config.base_currency, rate=_base_rate(db, cash))
    if amount_base is None and cash.amount_base is not None and cash.received_amount:
        # Refund at the rate the cash was booked at.
        amount_base = round_money(Decimal(cash.amount_base) * value / Decimal(cash.received_amount))

    refund = models.CashRefund(
        cash_payment_id=cash.id,
        amount=value,
        currency=cash.currency,
        amount_base=amount_base,
        reason=reason,
        processed_by=processed_by,
        processed_at=processed_at or utc_now(),
    )
    db.add(refund)
    cash.status = models.CashPaymentStatus.refunded
    db.flush()
    db.refresh(cash, attribute_names=["refunds"])

    _append_event(
        db,
        cash,
        "refund",
        source=source,
        actor=processed_by,
        payload={"amount": value, "amount_base": amount_base, "reason": reason},
    )
    audit_event(
        db,
        "cash_payment.refunded",
        "cash_payment",
        cash.id,
        {"amount": value, "reason": reason, "refund_id": refund.id},
        actor=processed_by,
    )

    if cash.proforma_id is not None:
        recompute_proforma_aggregates(
            db, cash.proforma_id, base_currency=config.base_currency, reason="cash.refunded"
        )
    return refund
