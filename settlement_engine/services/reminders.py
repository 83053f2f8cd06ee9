from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.services.collaborators import (
    NotificationCollaborator,
    RetryPolicy,
    call_with_retry,
)
from settlement_engine.services.deal_stage_automation import current_stage, notification_due
from settlement_engine.services.errors import ExternalServiceError
from settlement_engine.services.money import utc_now

logger = logging.getLogger("settlement.reminders")

SECOND_PAYMENT_REMINDER = "second_payment_reminder"


@dataclass
class ReminderReport:
    sent: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


def _already_sent(db: Session, deal_id: int, due: date) -> bool:
    return (
        db.query(models.ReminderLog.id)
        .filter(models.ReminderLog.deal_id == deal_id)
        .filter(models.ReminderLog.kind == SECOND_PAYMENT_REMINDER)
        .filter(models.ReminderLog.due_date == due)
        .first()
        is not None
    )


def send_due_second_payment_reminders(
    db: Session,
    notifier: NotificationCollaborator | None,
    today: date,
    *,
    config: ReconciliationConfig,
) -> ReminderReport:
    """Remind split-schedule deals whose second payment is due.

    One reminder per (deal, due date), and never inside the deal's minimum
    notification interval. Commits after each reminder that was sent.
    """
    report = ReminderReport()
    states = (
        db.query(models.PaymentScheduleState)
        .filter(models.PaymentScheduleState.schedule_type == models.ScheduleType.split)
        .filter(models.PaymentScheduleState.second_payment_due_date.isnot(None))
        .filter(models.PaymentScheduleState.second_payment_due_date <= today)
        .order_by(models.PaymentScheduleState.deal_id.asc())
        .all()
    )

    for state in states:
        deal = db.get(models.Deal, state.deal_id)
        due = state.second_payment_due_date
        if deal is None or _already_sent(db, deal.id, due):
            report.skipped.append(state.deal_id)
            continue
        if current_stage(db, deal, config) != models.DealStage.awaiting_second_payment:
            report.skipped.append(deal.id)
            continue
        if not notification_due(deal, config):
            report.skipped.append(deal.id)
            continue

        if config.dry_run or notifier is None:
            report.skipped.append(deal.id)
            continue

        try:
            call_with_retry(
                notifier.send,
                deal.id,
                SECOND_PAYMENT_REMINDER,
                {"deal_id": deal.id, "due_date": due.isoformat()},
                service="notifications",
                policy=RetryPolicy.from_config(config),
            )
        except ExternalServiceError as exc:
            logger.error("second_payment_reminder_failed", extra={"deal_id": deal.id, "error": str(exc)})
            report.failed.append(deal.id)
            continue

        now = utc_now()
        db.add(models.ReminderLog(deal_id=deal.id, kind=SECOND_PAYMENT_REMINDER, due_date=due, sent_at=now))
        deal.last_notified_at = now
        try:
            db.commit()
        except IntegrityError:
            # Another worker logged the same reminder first.
            db.rollback()
            report.skipped.append(deal.id)
            continue
        report.sent.append(deal.id)
        logger.info("second_payment_reminder_sent", extra={"deal_id": deal.id, "due_date": due.isoformat()})

    return report
