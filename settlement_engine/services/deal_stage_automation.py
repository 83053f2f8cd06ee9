from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from dateutil import parser as date_parser
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.services.audit import audit_event
from settlement_engine.services.collaborators import (
    Collaborators,
    RetryPolicy,
    call_with_retry,
)
from settlement_engine.services.entity_locks import entity_lock
from settlement_engine.services.errors import ConsistencyWarning, ExternalServiceError
from settlement_engine.services.money import ZERO, as_utc, convert_to_base, round_money, utc_now
from settlement_engine.services.payment_schedule import (
    ensure_schedule_state,
    get_schedule_state,
    resolve_schedule,
)

logger = logging.getLogger("settlement.stages")

TEMPLATE_PAYMENT_RECEIVED = "payment_received"
TEMPLATE_PAYMENT_COMPLETED = "payment_completed"


@dataclass(frozen=True)
class DealSettlement:
    deal_id: int
    expected_base: Decimal | None
    paid_base: Decimal
    first_paid_on: date | None
    warnings: list[ConsistencyWarning] = field(default_factory=list)

    @property
    def ratio(self) -> Decimal | None:
        if self.expected_base is None or self.expected_base <= ZERO:
            return None
        return (self.paid_base / self.expected_base).quantize(Decimal("0.0001"))


@dataclass
class StageResult:
    deal_id: int
    settlement: DealSettlement
    schedule_type: models.ScheduleType | None = None
    target_stage: models.DealStage | None = None
    transition: models.DealStageTransition | None = None
    action: str = "none"  # none | applied | would_apply | failed | notified
    notified: bool = False
    warnings: list[ConsistencyWarning] = field(default_factory=list)


def _signed_base(payment: models.Payment, base_currency: str) -> Decimal | None:
    value = convert_to_base(
        payment.amount, payment.currency, base_currency, amount_base=payment.amount_base
    )
    if value is None:
        return None
    return -value if payment.direction == models.PaymentDirection.outgoing else value


def _proforma_total_base(proforma: models.Proforma, base_currency: str) -> Decimal | None:
    rate = proforma.exchange_rate if proforma.currency != base_currency else None
    return convert_to_base(proforma.total, proforma.currency, base_currency, rate=rate)


def compute_deal_settlement(
    db: Session, deal: models.Deal, *, config: ReconciliationConfig
) -> DealSettlement:
    """How much of a deal is paid, in base currency.

    Expected is the sum of the deal's active proforma totals (the deal value when
    it has none). Paid is the sum of those proformas' aggregates plus payments
    and cash recorded on the deal without a proforma.
    """
    base = config.base_currency
    warnings: list[ConsistencyWarning] = []

    proformas = (
        db.query(models.Proforma)
        .filter(models.Proforma.deal_id == deal.id)
        .filter(models.Proforma.status == models.ProformaStatus.active)
        .all()
    )

    expected: Decimal | None = None
    if proformas:
        expected = ZERO
        for p in proformas:
            total_base = _proforma_total_base(p, base)
            if total_base is None:
                warnings.append(
                    ConsistencyWarning(
                        kind="missing_fx_rate",
                        entity_type="proforma",
                        entity_id=p.id,
                        message=f"Proforma {p.fullnumber} total has no {p.currency}->{base} rate",
                    )
                )
                continue
            expected += total_base
    elif deal.value is not None:
        expected = convert_to_base(deal.value, deal.currency or base, base)

    paid = sum((Decimal(p.payments_total_base or 0) for p in proformas), ZERO)
    proforma_ids = [p.id for p in proformas]

    first_dates: list[date] = []
    counted = (
        db.query(models.Payment)
        .filter(models.Payment.deleted_at.is_(None))
        .filter(models.Payment.match_status != models.MatchStatus.rejected)
        .filter(models.Payment.review_status != models.ReviewStatus.duplicate_review)
        .filter(models.Payment.source != models.PaymentSource.cash)
        .filter(
            (models.Payment.linked_deal_id == deal.id)
            | (models.Payment.linked_proforma_id.in_(proforma_ids or [-1]))
            | (models.Payment.manual_proforma_id.in_(proforma_ids or [-1]))
        )
        .all()
    )
    for payment in counted:
        if payment.direction == models.PaymentDirection.incoming:
            first_dates.append(payment.operation_date)
        if payment.effective_proforma_id is not None:
            continue
        value = _signed_base(payment, base)
        if value is None:
            warnings.append(
                ConsistencyWarning(
                    kind="missing_fx_rate",
                    entity_type="payment",
                    entity_id=payment.id,
                    message=f"Deal-level payment {payment.id} has no base amount",
                )
            )
            continue
        paid += value

    cash_rows = (
        db.query(models.CashPayment)
        .options(selectinload(models.CashPayment.refunds))
        .filter(models.CashPayment.deal_id == deal.id)
        .filter(
            models.CashPayment.status.in_(
                [models.CashPaymentStatus.received, models.CashPaymentStatus.refunded]
            )
        )
        .all()
    )
    for cash in cash_rows:
        if cash.confirmed_at is not None:
            first_dates.append(as_utc(cash.confirmed_at).date())
        if cash.proforma_id is not None:
            continue
        received = convert_to_base(
            cash.received_amount or ZERO, cash.currency, base, amount_base=cash.amount_base
        )
        if received is None:
            continue
        refunded = sum(
            (convert_to_base(r.amount, r.currency, base, amount_base=r.amount_base) or ZERO for r in cash.refunds),
            ZERO,
        )
        paid += received - refunded

    return DealSettlement(
        deal_id=deal.id,
        expected_base=round_money(expected) if expected is not None else None,
        paid_base=round_money(max(paid, ZERO)),
        first_paid_on=min(first_dates) if first_dates else None,
        warnings=warnings,
    )


def target_stage_for(
    ratio: Decimal | None,
    schedule_type: models.ScheduleType | None,
    *,
    config: ReconciliationConfig,
) -> models.DealStage | None:
    if ratio is None:
        return None
    if ratio >= Decimal(config.full_payment_threshold):
        return models.DealStage.fully_paid
    deposit_floor = Decimal(config.deposit_ratio) - Decimal(config.deposit_tolerance)
    if schedule_type == models.ScheduleType.split and ratio >= deposit_floor:
        return models.DealStage.awaiting_second_payment
    return models.DealStage.awaiting_first_payment


def stage_id_for(deal: models.Deal, stage: models.DealStage, config: ReconciliationConfig) -> int | None:
    stage_map = config.pipeline_stage_ids.get(int(deal.pipeline_id or 0)) or config.pipeline_stage_ids.get(0, {})
    return stage_map.get(stage.value)


def current_stage(db: Session, deal: models.Deal, config: ReconciliationConfig) -> models.DealStage:
    """Furthest stage known for the deal, from applied transitions and the CRM mirror."""
    best = models.DealStage.awaiting_first_payment
    applied = (
        db.query(models.DealStageTransition)
        .filter(models.DealStageTransition.deal_id == deal.id)
        .filter(models.DealStageTransition.status == models.TransitionStatus.applied)
        .all()
    )
    for t in applied:
        if models.DEAL_STAGE_ORDER[t.target_stage] > models.DEAL_STAGE_ORDER[best]:
            best = t.target_stage

    if deal.stage_id is not None:
        for stage in models.DealStage:
            if stage_id_for(deal, stage, config) == deal.stage_id:
                if models.DEAL_STAGE_ORDER[stage] > models.DEAL_STAGE_ORDER[best]:
                    best = stage
    return best


def _parse_date(value) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date_parser.parse(str(value)).date()


def _deal_fields(data: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if "title" in data:
        fields["title"] = data.get("title")
    if "value" in data:
        fields["value"] = Decimal(str(data["value"])) if data.get("value") is not None else None
    if "currency" in data:
        fields["currency"] = str(data.get("currency") or "").upper() or None
    if "expected_close_date" in data:
        fields["expected_close_date"] = _parse_date(data.get("expected_close_date"))
    if data.get("stage_id") is not None:
        fields["stage_id"] = int(data["stage_id"])
    if data.get("pipeline_id") is not None:
        fields["pipeline_id"] = int(data["pipeline_id"])
    return fields


def get_or_sync_deal(
    db: Session,
    deal_id: int,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
    refresh: bool = True,
) -> models.Deal | None:
    """Local mirror of a CRM deal, refreshed from the CRM.

    A deal the CRM does not know keeps its mirror as-is. When the CRM is down an
    existing mirror is used unchanged; without one the ExternalServiceError
    propagates.
    """
    deal = db.get(models.Deal, int(deal_id))
    if collaborators.crm is None or (deal is not None and not refresh):
        return deal

    try:
        data = call_with_retry(
            collaborators.crm.get_deal,
            int(deal_id),
            service="crm",
            policy=RetryPolicy.from_config(config),
        )
    except ExternalServiceError as exc:
        if deal is None:
            raise
        logger.warning("deal_refresh_failed", extra={"deal_id": deal.id, "error": str(exc)})
        return deal
    if not data:
        return deal

    fields = _deal_fields(dict(data))
    if deal is None:
        deal = models.Deal(id=int(deal_id), synced_at=utc_now(), **fields)
        db.add(deal)
        db.flush()
        logger.info("deal_mirror_synced", extra={"deal_id": deal.id})
        return deal

    changed = {k: v for k, v in fields.items() if getattr(deal, k) != v}
    for k, v in changed.items():
        setattr(deal, k, v)
    deal.synced_at = utc_now()
    db.flush()
    if changed:
        logger.info("deal_mirror_refreshed", extra={"deal_id": deal.id, "fields": sorted(changed)})
    return deal


def get_transition(
    db: Session, deal_id: int, target: models.DealStage
) -> models.DealStageTransition | None:
    return (
        db.query(models.DealStageTransition)
        .filter(models.DealStageTransition.deal_id == int(deal_id))
        .filter(models.DealStageTransition.target_stage == target)
        .first()
    )


def _ensure_transition(
    db: Session,
    deal: models.Deal,
    target: models.DealStage,
    *,
    from_stage: models.DealStage,
    ratio: Decimal | None,
    config: ReconciliationConfig,
) -> models.DealStageTransition:
    existing = get_transition(db, deal.id, target)
    if existing is not None:
        return existing

    transition = models.DealStageTransition(
        deal_id=deal.id,
        target_stage=target,
        from_stage=from_stage,
        crm_stage_id=stage_id_for(deal, target, config),
        status=models.TransitionStatus.pending,
        reason="paid_ratio",
        paid_ratio=ratio,
        attempts=0,
    )
    try:
        with db.begin_nested():
            db.add(transition)
    except IntegrityError:
        existing = get_transition(db, deal.id, target)
        if existing is None:
            raise
        logger.info("deal_transition_raced", extra={"deal_id": deal.id, "target_stage": target.value})
        return existing
    return transition


def notification_due(deal: models.Deal, config: ReconciliationConfig) -> bool:
    last = as_utc(deal.last_notified_at)
    if last is None:
        return True
    return utc_now() - last >= timedelta(minutes=int(config.notification_min_interval_minutes))


def _notify(
    db: Session,
    deal: models.Deal,
    transition: models.DealStageTransition,
    settlement: DealSettlement,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> bool:
    if transition.notified_at is not None or collaborators.notifier is None:
        return False
    if not notification_due(deal, config):
        logger.info(
            "notification_suppressed_interval",
            extra={"deal_id": deal.id, "target_stage": transition.target_stage.value},
        )
        return False

    template = (
        TEMPLATE_PAYMENT_COMPLETED
        if transition.target_stage == models.DealStage.fully_paid
        else TEMPLATE_PAYMENT_RECEIVED
    )
    payload: dict[str, Any] = {
        "deal_id": deal.id,
        "stage": transition.target_stage.value,
        "paid_base": str(settlement.paid_base),
        "expected_base": str(settlement.expected_base) if settlement.expected_base is not None else None,
        "base_currency": config.base_currency,
    }
    call_with_retry(
        collaborators.notifier.send,
        deal.id,
        template,
        payload,
        service="notifications",
        policy=RetryPolicy.from_config(config),
    )
    now = utc_now()
    transition.notified_at = now
    deal.last_notified_at = now
    db.flush()
    logger.info("deal_notification_sent", extra={"deal_id": deal.id, "template": template})
    return True


def _checkpoint(db: Session, config: ReconciliationConfig) -> None:
    if not config.dry_run:
        db.commit()


def process_deal_stage(
    db: Session,
    deal_id: int,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> StageResult | None:
    """Move a deal forward through its payment stages from its settlement state.

    Stages only move forward; an evaluation that lands at or behind the current
    stage is a no-op. The transition row is written under the deal lock.

    In apply mode the session is committed before each external call (the CRM
    refresh, then the stage update and notification), which also releases the
    entity locks the caller's transaction holds. The caller commits what
    follows. In dry-run mode nothing is committed and nothing is sent.

    Raises ExternalServiceError when the CRM or notifier keeps failing; the
    transition is then left `failed` (or applied but not notified) for the
    next run to retry.
    """
    _checkpoint(db, config)
    deal = get_or_sync_deal(db, deal_id, collaborators=collaborators, config=config)
    if deal is None:
        return None

    with entity_lock(db, "deal", deal.id):
        settlement = compute_deal_settlement(db, deal, config=config)
        result = StageResult(deal_id=deal.id, settlement=settlement, warnings=list(settlement.warnings))

        state = get_schedule_state(db, deal.id)
        if state is None and settlement.paid_base > ZERO and settlement.first_paid_on is not None:
            state = ensure_schedule_state(
                db, deal, settlement.first_paid_on, min_days=config.split_schedule_min_days
            )
        if state is not None:
            result.schedule_type = state.schedule_type
        elif settlement.first_paid_on is not None:
            result.schedule_type = resolve_schedule(
                deal.expected_close_date, settlement.first_paid_on, min_days=config.split_schedule_min_days
            ).schedule_type

        if settlement.paid_base <= ZERO:
            return result

        target = target_stage_for(settlement.ratio, result.schedule_type, config=config)
        result.target_stage = target
        current = current_stage(db, deal, config)

        transition = None
        if target is not None and models.DEAL_STAGE_ORDER[target] > models.DEAL_STAGE_ORDER[current]:
            transition = _ensure_transition(
                db, deal, target, from_stage=current, ratio=settlement.ratio, config=config
            )
        elif target is not None:
            # Already there (or further): only a pending notification may be left.
            transition = (
                db.query(models.DealStageTransition)
                .filter(models.DealStageTransition.deal_id == deal.id)
                .filter(models.DealStageTransition.target_stage == current)
                .filter(models.DealStageTransition.status == models.TransitionStatus.applied)
                .first()
            )
        result.transition = transition

    if transition is None:
        return result

    if config.dry_run:
        if transition.status != models.TransitionStatus.applied:
            result.action = "would_apply"
        return result

    _checkpoint(db, config)

    if transition.status != models.TransitionStatus.applied:
        _apply_crm_stage(db, deal, transition, collaborators=collaborators, config=config)
        result.action = "applied"

    result.notified = _notify(
        db, deal, transition, settlement, collaborators=collaborators, config=config
    )
    if result.notified and result.action == "none":
        result.action = "notified"
    return result


def _apply_crm_stage(
    db: Session,
    deal: models.Deal,
    transition: models.DealStageTransition,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> None:
    stage_id = transition.crm_stage_id or stage_id_for(deal, transition.target_stage, config)
    transition.attempts = int(transition.attempts or 0) + 1
    try:
        if collaborators.crm is not None and stage_id is not None:
            call_with_retry(
                collaborators.crm.update_deal_stage,
                deal.id,
                int(stage_id),
                service="crm",
                policy=RetryPolicy.from_config(config),
            )
    except ExternalServiceError as exc:
        transition.status = models.TransitionStatus.failed
        transition.last_error = str(exc)
        db.flush()
        logger.error(
            "deal_stage_update_failed",
            extra={"deal_id": deal.id, "target_stage": transition.target_stage.value, "error": str(exc)},
        )
        raise

    from_stage_id = deal.stage_id
    transition.status = models.TransitionStatus.applied
    transition.applied_at = utc_now()
    transition.last_error = None
    transition.crm_stage_id = stage_id
    if stage_id is not None:
        deal.stage_id = int(stage_id)
    db.flush()

    audit_event(
        db,
        "deal.stage_transition_applied",
        "deal",
        deal.id,
        {
            "target_stage": transition.target_stage.value,
            "from_stage": transition.from_stage.value if transition.from_stage else None,
            "crm_stage_id": stage_id,
            "previous_crm_stage_id": from_stage_id,
            "paid_ratio": transition.paid_ratio,
        },
    )
    logger.info(
        "deal_stage_transition_applied",
        extra={"deal_id": deal.id, "target_stage": transition.target_stage.value, "stage_id": stage_id},
    )
