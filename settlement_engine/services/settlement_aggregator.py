from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Iterator

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, selectinload

from settlement_engine import models
from settlement_engine.services.audit import audit_event
from settlement_engine.services.entity_locks import entity_lock
from settlement_engine.services.errors import ConsistencyWarning, NotFoundError
from settlement_engine.services.money import ZERO, convert_to_base, round_money, utc_now

logger = logging.getLogger("settlement.aggregator")

_COUNTED_CASH_STATUSES = {models.CashPaymentStatus.received, models.CashPaymentStatus.refunded}


@dataclass(frozen=True)
class ProformaAggregates:
    payments_total: Decimal
    payments_total_base: Decimal
    payments_count: int
    cash_total: Decimal
    cash_total_base: Decimal
    warnings: list[ConsistencyWarning] = field(default_factory=list, compare=False)

    def as_dict(self) -> dict[str, object]:
        return {
            "payments_total": self.payments_total,
            "payments_total_base": self.payments_total_base,
            "payments_count": self.payments_count,
            "cash_total": self.cash_total,
            "cash_total_base": self.cash_total_base,
        }


def counts_towards(payment: models.Payment, proforma_id: int) -> bool:
    if payment.deleted_at is not None:
        return False
    if payment.match_status == models.MatchStatus.rejected:
        return False
    if payment.review_status == models.ReviewStatus.duplicate_review:
        return False
    if payment.source == models.PaymentSource.cash:
        # Cash is counted through CashPayment rows.
        return False
    return payment.effective_proforma_id == proforma_id


def _missing_rate(proforma: models.Proforma, entity: str, entity_id, currency: str, base: str):
    return ConsistencyWarning(
        kind="missing_fx_rate",
        entity_type=entity,
        entity_id=entity_id,
        message=f"No {currency}->{base} rate for {entity} {entity_id}; excluded from base totals",
        details={"proforma_id": proforma.id, "currency": currency, "base_currency": base},
    )


def _rate_for(proforma: models.Proforma, currency: str) -> Decimal | None:
    # The proforma's fixed rate only applies to amounts in the proforma currency.
    if proforma.exchange_rate is None or currency != proforma.currency:
        return None
    return Decimal(proforma.exchange_rate)


def _native(
    proforma: models.Proforma, amount: Decimal, currency: str, base_amount: Decimal | None, base: str
) -> Decimal | None:
    if currency == proforma.currency:
        return Decimal(amount)
    if base_amount is None:
        return None
    if proforma.currency == base:
        return base_amount
    if proforma.exchange_rate:
        return base_amount / Decimal(proforma.exchange_rate)
    return None


def compute_proforma_aggregates(
    proforma: models.Proforma,
    payments: Iterable[models.Payment],
    cash_payments: Iterable[models.CashPayment],
    base_currency: str,
) -> ProformaAggregates:
    """Pure computation of a proforma's settlement aggregates.

    Incoming payments add and refunds subtract; each payment id counts once
    whether it reaches the proforma by direct link or manual override. Amounts
    with no known base conversion are left out of the base totals and reported.
    """
    base = str(base_currency).upper()
    total = ZERO
    total_base = ZERO
    count = 0
    cash_total = ZERO
    cash_total_base = ZERO
    warnings: list[ConsistencyWarning] = []

    seen: set[int] = set()
    for p in payments:
        if p.id in seen or not counts_towards(p, proforma.id):
            continue
        seen.add(p.id)

        sign = Decimal(-1) if p.direction == models.PaymentDirection.outgoing else Decimal(1)
        amount_base = convert_to_base(
            p.amount,
            p.currency,
            base,
            rate=_rate_for(proforma, p.currency),
            amount_base=p.amount_base,
        )
        if amount_base is None:
            warnings.append(_missing_rate(proforma, "payment", p.id, p.currency, base))
        else:
            total_base += sign * amount_base

        native = _native(proforma, p.amount, p.currency, amount_base, base)
        if native is not None:
            total += sign * native
        count += 1

    for cash in cash_payments:
        if cash.proforma_id != proforma.id or cash.status not in _COUNTED_CASH_STATUSES:
            continue
        received = Decimal(cash.received_amount or 0)
        rate = _rate_for(proforma, cash.currency)

        received_base = convert_to_base(
            received, cash.currency, base, rate=rate, amount_base=cash.amount_base
        )
        refunded = ZERO
        refunded_base: Decimal | None = ZERO
        for refund in cash.refunds or []:
            refunded += Decimal(refund.amount)
            rb = convert_to_base(
                refund.amount, refund.currency, base, rate=rate, amount_base=refund.amount_base
            )
            refunded_base = None if (rb is None or refunded_base is None) else refunded_base + rb

        net = received - refunded
        if received_base is None or refunded_base is None:
            warnings.append(_missing_rate(proforma, "cash_payment", cash.id, cash.currency, base))
            net_base = None
        else:
            net_base = received_base - refunded_base
            cash_total_base += net_base

        native = _native(proforma, net, cash.currency, net_base, base)
        if native is not None:
            cash_total += native

    total += cash_total
    total_base += cash_total_base

    return ProformaAggregates(
        payments_total=round_money(max(total, ZERO)),
        payments_total_base=round_money(max(total_base, ZERO)),
        payments_count=count,
        cash_total=round_money(max(cash_total, ZERO)),
        cash_total_base=round_money(max(cash_total_base, ZERO)),
        warnings=warnings,
    )


def _load_inputs(db: Session, proforma_id: int):
    payments = (
        db.query(models.Payment)
        .filter(
            or_(
                models.Payment.linked_proforma_id == proforma_id,
                and_(
                    models.Payment.linked_proforma_id.is_(None),
                    models.Payment.manual_proforma_id == proforma_id,
                ),
            )
        )
        .filter(models.Payment.deleted_at.is_(None))
        .order_by(models.Payment.id.asc())
        .all()
    )
    cash = (
        db.query(models.CashPayment)
        .options(selectinload(models.CashPayment.refunds))
        .filter(models.CashPayment.proforma_id == proforma_id)
        .order_by(models.CashPayment.id.asc())
        .all()
    )
    return payments, cash


def stored_aggregates(proforma: models.Proforma) -> ProformaAggregates:
    return ProformaAggregates(
        payments_total=round_money(proforma.payments_total or 0),
        payments_total_base=round_money(proforma.payments_total_base or 0),
        payments_count=int(proforma.payments_count or 0),
        cash_total=round_money(proforma.cash_total or 0),
        cash_total_base=round_money(proforma.cash_total_base or 0),
    )


@contextmanager
def aggregate_writer(db: Session) -> Iterator[None]:
    """Allow writes to proforma aggregate columns for the duration of the block."""
    previous = db.info.get(models.AGGREGATOR_SESSION_FLAG)
    db.info[models.AGGREGATOR_SESSION_FLAG] = True
    try:
        yield
        db.flush()
    finally:
        if previous is None:
            db.info.pop(models.AGGREGATOR_SESSION_FLAG, None)
        else:
            db.info[models.AGGREGATOR_SESSION_FLAG] = previous


def recompute_proforma_aggregates(
    db: Session,
    proforma_id: int,
    *,
    base_currency: str,
    reason: str = "recompute",
    actor: str | None = "system",
) -> ProformaAggregates:
    """Recompute and store a proforma's aggregates. The only writer of those columns.

    Idempotent: running it again on unchanged inputs changes nothing and writes
    no audit entry.
    """
    with entity_lock(db, "proforma", proforma_id):
        proforma = db.get(models.Proforma, int(proforma_id))
        if proforma is None:
            raise NotFoundError(f"Proforma {proforma_id} not found")

        payments, cash = _load_inputs(db, proforma.id)
        result = compute_proforma_aggregates(proforma, payments, cash, base_currency)
        before = stored_aggregates(proforma)

        if before != result:
            with aggregate_writer(db):
                proforma.payments_total = result.payments_total
                proforma.payments_total_base = result.payments_total_base
                proforma.payments_count = result.payments_count
                proforma.cash_total = result.cash_total
                proforma.cash_total_base = result.cash_total_base
                proforma.aggregates_updated_at = utc_now()

            audit_event(
                db,
                "proforma.aggregates_recomputed",
                "proforma",
                proforma.id,
                {"reason": reason, "before": before.as_dict(), "after": result.as_dict()},
                actor=actor,
            )
            logger.info(
                "proforma_aggregates_recomputed",
                extra={
                    "proforma_id": proforma.id,
                    "payments_total_base": str(result.payments_total_base),
                    "reason": reason,
                },
            )

        for w in result.warnings:
            logger.warning("consistency_warning", extra=w.log_extra())

        return result


def verify_proforma_aggregates(
    db: Session, proforma: models.Proforma, *, base_currency: str
) -> ConsistencyWarning | None:
    """Compare stored aggregates with a fresh computation; never corrects."""
    payments, cash = _load_inputs(db, proforma.id)
    expected = compute_proforma_aggregates(proforma, payments, cash, base_currency)
    stored = stored_aggregates(proforma)
    if stored == expected:
        return None
    return ConsistencyWarning(
        kind="aggregate_mismatch",
        entity_type="proforma",
        entity_id=proforma.id,
        message=f"Stored aggregates for proforma {proforma.fullnumber} differ from recomputation",
        details={
            "stored": {k: str(v) for k, v in stored.as_dict().items()},
            "expected": {k: str(v) for k, v in expected.as_dict().items()},
        },
    )


def apply_aggregate_correction(
    db: Session,
    proforma_id: int,
    *,
    base_currency: str,
    actor: str | None,
) -> ProformaAggregates:
    """Explicit operator correction of a reported aggregate mismatch."""
    return recompute_proforma_aggregates(
        db, proforma_id, base_currency=base_currency, reason="operator_correction", actor=actor
    )
