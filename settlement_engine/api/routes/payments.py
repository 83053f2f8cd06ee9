from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.api.deps import get_actor, get_collaborators, get_db, get_reconciliation_config
from settlement_engine.config import ReconciliationConfig
from settlement_engine.schemas.reconciliation import (
    DuplicateResolutionRequest,
    PaymentActionRequest,
    PaymentAssignRequest,
    PaymentRead,
)
from settlement_engine.services.collaborators import Collaborators
from settlement_engine.services.dedup_index import resolve_duplicate_review
from settlement_engine.services.deal_stage_automation import process_deal_stage
from settlement_engine.services.errors import ExternalServiceError, MatchAmbiguousError
from settlement_engine.services.matching_engine import (
    approve_payment,
    assign_payment,
    clear_payment,
    delete_payment,
    match_payment,
    reject_payment,
)

router = APIRouter(prefix="/payments", tags=["payments"])

logger = logging.getLogger("settlement.api.payments")

_db_dep = Depends(get_db)
_collaborators_dep = Depends(get_collaborators)
_config_dep = Depends(get_reconciliation_config)
_actor_dep = Depends(get_actor)


def _finish(
    db: Session,
    payment: models.Payment,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> PaymentRead:
    """Commit the operator change, then let the deal's stage catch up."""
    db.commit()
    if payment.linked_deal_id is not None:
        try:
            process_deal_stage(db, payment.linked_deal_id, collaborators=collaborators, config=config)
        except ExternalServiceError as exc:
            # The transition stays failed; the scheduler retries it.
            logger.warning(
                "operator_stage_update_failed",
                extra={"payment_id": payment.id, "deal_id": payment.linked_deal_id, "error": str(exc)},
            )
        if config.dry_run:
            db.rollback()
        else:
            db.commit()
    db.refresh(payment)
    return PaymentRead.model_validate(payment)


@router.get("/{payment_id}", response_model=PaymentRead)
def get_payment(payment_id: int, db: Session = _db_dep):
    payment = db.get(models.Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail={"code": "payment.not_found", "payment_id": payment_id})
    return PaymentRead.model_validate(payment)


@router.post("/{payment_id}/approve", response_model=PaymentRead)
def approve(
    payment_id: int,
    payload: PaymentActionRequest | None = None,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    payment = approve_payment(db, payment_id, actor=(payload and payload.actor) or actor, config=config)
    return _finish(db, payment, collaborators=collaborators, config=config)


@router.post("/{payment_id}/reject", response_model=PaymentRead)
def reject(
    payment_id: int,
    payload: PaymentActionRequest | None = None,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    payment = reject_payment(
        db,
        payment_id,
        actor=(payload and payload.actor) or actor,
        reason=payload.reason if payload else None,
        config=config,
    )
    return _finish(db, payment, collaborators=collaborators, config=config)


@router.post("/{payment_id}/assign", response_model=PaymentRead)
def assign(
    payment_id: int,
    payload: PaymentAssignRequest,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    payment = assign_payment(
        db,
        payment_id,
        proforma_id=payload.proforma_id,
        proforma_fullnumber=payload.proforma_fullnumber,
        actor=payload.actor or actor,
        config=config,
    )
    return _finish(db, payment, collaborators=collaborators, config=config)


@router.post("/{payment_id}/clear", response_model=PaymentRead)
def clear(
    payment_id: int,
    payload: PaymentActionRequest | None = None,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    payment = clear_payment(db, payment_id, actor=(payload and payload.actor) or actor, config=config)
    return _finish(db, payment, collaborators=collaborators, config=config)


@router.post("/{payment_id}/resolve-duplicate", response_model=PaymentRead)
def resolve_duplicate(
    payment_id: int,
    payload: DuplicateResolutionRequest,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    payment = resolve_duplicate_review(db, payment_id, action=payload.action, actor=payload.actor or actor)
    if payload.action == "keep":
        try:
            match_payment(db, payment, config=config)
        except MatchAmbiguousError as exc:
            logger.info("payment_match_ambiguous", extra={"payment_id": payment.id, "candidates": exc.candidate_ids})
    return _finish(db, payment, collaborators=collaborators, config=config)


@router.post("/{payment_id}/delete", response_model=PaymentRead)
def delete(
    payment_id: int,
    payload: PaymentActionRequest | None = None,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    payment = delete_payment(
        db,
        payment_id,
        actor=(payload and payload.actor) or actor,
        reason=payload.reason if payload else None,
        config=config,
    )
    return _finish(db, payment, collaborators=collaborators, config=config)
