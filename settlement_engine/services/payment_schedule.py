from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.services.audit import audit_event
from settlement_engine.services.errors import ConsistencyWarning
from settlement_engine.services.money import utc_now

logger = logging.getLogger("settlement.schedule")

SPLIT_SCHEDULE_MIN_DAYS = 30


@dataclass(frozen=True)
class ScheduleDecision:
    schedule_type: models.ScheduleType
    second_payment_due_date: date | None
    days_to_close: int | None


def resolve_schedule(
    expected_close_date: date | None,
    reference_date: date,
    *,
    min_days: int = SPLIT_SCHEDULE_MIN_DAYS,
) -> ScheduleDecision:
    """Single vs 50/50 split, decided from how far away the deal closes.

    30 or more days out: split, second payment due one calendar month before
    the close date. Otherwise, or without a close date: single.
    """
    if expected_close_date is None:
        return ScheduleDecision(models.ScheduleType.single, None, None)

    days = (expected_close_date - reference_date).days
    if days >= int(min_days):
        return ScheduleDecision(
            models.ScheduleType.split,
            expected_close_date - relativedelta(months=1),
            days,
        )
    return ScheduleDecision(models.ScheduleType.single, None, days)


def get_schedule_state(db: Session, deal_id: int) -> models.PaymentScheduleState | None:
    return (
        db.query(models.PaymentScheduleState)
        .filter(models.PaymentScheduleState.deal_id == int(deal_id))
        .first()
    )


def ensure_schedule_state(
    db: Session,
    deal: models.Deal,
    first_paid_on: date,
    *,
    min_days: int = SPLIT_SCHEDULE_MIN_DAYS,
) -> models.PaymentScheduleState:
    """Snapshot the deal's schedule once, when its first payment is recorded.

    Later calls return the existing snapshot unchanged, even if the deal's close
    date has moved since.
    """
    existing = get_schedule_state(db, deal.id)
    if existing is not None:
        return existing

    decision = resolve_schedule(deal.expected_close_date, first_paid_on, min_days=min_days)
    state = models.PaymentScheduleState(
        deal_id=int(deal.id),
        schedule_type=decision.schedule_type,
        second_payment_due_date=decision.second_payment_due_date,
        expected_close_date_snapshot=deal.expected_close_date,
        days_to_close=decision.days_to_close,
        snapshot_at=utc_now(),
    )
    try:
        # Savepoint: a concurrent snapshot must not roll back the caller's work.
        with db.begin_nested():
            db.add(state)
    except IntegrityError:
        existing = get_schedule_state(db, deal.id)
        if existing is None:
            raise
        logger.info("schedule_snapshot_raced", extra={"deal_id": deal.id})
        return existing

    audit_event(
        db,
        "deal.schedule_snapshot",
        "deal",
        deal.id,
        {
            "schedule_type": decision.schedule_type.value,
            "second_payment_due_date": decision.second_payment_due_date,
            "expected_close_date": deal.expected_close_date,
            "first_paid_on": first_paid_on,
        },
    )
    logger.info(
        "schedule_snapshot_created",
        extra={"deal_id": deal.id, "schedule_type": decision.schedule_type.value},
    )
    return state


def check_schedule_drift(
    state: models.PaymentScheduleState, deal: models.Deal
) -> ConsistencyWarning | None:
    if state.expected_close_date_snapshot == deal.expected_close_date:
        return None
    return ConsistencyWarning(
        kind="schedule_drift",
        entity_type="deal",
        entity_id=deal.id,
        message=(
            f"Deal {deal.id} close date changed after the schedule snapshot; "
            "second payment due date left unchanged"
        ),
        details={
            "snapshot_close_date": (
                state.expected_close_date_snapshot.isoformat()
                if state.expected_close_date_snapshot
                else None
            ),
            "current_close_date": (
                deal.expected_close_date.isoformat() if deal.expected_close_date else None
            ),
            "second_payment_due_date": (
                state.second_payment_due_date.isoformat() if state.second_payment_due_date else None
            ),
        },
    )
