from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.services.deal_stage_automation import compute_deal_settlement, current_stage
from settlement_engine.services.errors import ConsistencyWarning, NotFoundError
from settlement_engine.services.payment_schedule import check_schedule_drift, get_schedule_state
from settlement_engine.services.settlement_aggregator import verify_proforma_aggregates

logger = logging.getLogger("settlement.diagnostics")


def run_consistency_checks(
    db: Session,
    *,
    deal_ids: Iterable[int] = (),
    proforma_ids: Iterable[int] = (),
    config: ReconciliationConfig,
) -> list[ConsistencyWarning]:
    """Aggregate mismatch and schedule drift checks. Report only, nothing is corrected."""
    warnings: list[ConsistencyWarning] = []
    deal_ids = sorted({int(d) for d in deal_ids if d is not None})
    proforma_ids = set(int(p) for p in proforma_ids if p is not None)

    if deal_ids:
        for (pid,) in db.query(models.Proforma.id).filter(models.Proforma.deal_id.in_(deal_ids)).all():
            proforma_ids.add(int(pid))

    for pid in sorted(proforma_ids):
        proforma = db.get(models.Proforma, pid)
        if proforma is None:
            continue
        w = verify_proforma_aggregates(db, proforma, base_currency=config.base_currency)
        if w is not None:
            warnings.append(w)

    for deal_id in deal_ids:
        deal = db.get(models.Deal, deal_id)
        state = get_schedule_state(db, deal_id)
        if deal is None or state is None:
            continue
        w = check_schedule_drift(state, deal)
        if w is not None:
            warnings.append(w)

    for w in warnings:
        logger.warning("consistency_warning", extra=w.log_extra())
    return warnings


def describe_deal(db: Session, deal_id: int, *, config: ReconciliationConfig) -> dict[str, Any]:
    """Read-only snapshot of a deal's settlement for operators."""
    deal = db.get(models.Deal, int(deal_id))
    if deal is None:
        raise NotFoundError(f"Deal {deal_id} not found")

    settlement = compute_deal_settlement(db, deal, config=config)
    state = get_schedule_state(db, deal.id)
    transitions = (
        db.query(models.DealStageTransition)
        .filter(models.DealStageTransition.deal_id == deal.id)
        .order_by(models.DealStageTransition.id.asc())
        .all()
    )
    warnings = list(settlement.warnings)
    warnings.extend(run_consistency_checks(db, deal_ids=[deal.id], config=config))

    return {
        "deal_id": deal.id,
        "stage": current_stage(db, deal, config).value,
        "expected_base": settlement.expected_base,
        "paid_base": settlement.paid_base,
        "paid_ratio": settlement.ratio,
        "schedule": (
            {
                "schedule_type": state.schedule_type.value,
                "second_payment_due_date": state.second_payment_due_date,
                "expected_close_date_snapshot": state.expected_close_date_snapshot,
            }
            if state is not None
            else None
        ),
        "transitions": [
            {
                "target_stage": t.target_stage.value,
                "status": t.status.value,
                "attempts": t.attempts,
                "notified": t.notified_at is not None,
                "last_error": t.last_error,
            }
            for t in transitions
        ],
        "warnings": [w.as_dict() for w in warnings],
    }
