from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session, selectinload

from settlement_engine import models
from settlement_engine.api.deps import get_actor, get_collaborators, get_db, get_reconciliation_config
from settlement_engine.config import ReconciliationConfig
from settlement_engine.schemas.reconciliation import (
    CashConfirmRequest,
    CashPaymentCreate,
    CashPaymentRead,
    CashRefundRequest,
)
from settlement_engine.services.cash_payments import (
    confirm_cash_payment,
    create_cash_expectation,
    refund_cash_payment,
    request_confirmation,
)
from settlement_engine.services.collaborators import Collaborators
from settlement_engine.services.deal_stage_automation import process_deal_stage
from settlement_engine.services.errors import ExternalServiceError

router = APIRouter(prefix="/cash-payments", tags=["cash-payments"])

logger = logging.getLogger("settlement.api.cash")

_db_dep = Depends(get_db)
_collaborators_dep = Depends(get_collaborators)
_config_dep = Depends(get_reconciliation_config)
_actor_dep = Depends(get_actor)


def _read(db: Session, cash_payment_id: int) -> CashPaymentRead:
    cash = (
        db.query(models.CashPayment)
        .options(selectinload(models.CashPayment.refunds))
        .filter(models.CashPayment.id == int(cash_payment_id))
        .first()
    )
    if cash is None:
        raise HTTPException(
            status_code=404, detail={"code": "cash_payment.not_found", "cash_payment_id": cash_payment_id}
        )
    return CashPaymentRead.model_validate(cash)


def _settle_deal(
    db: Session,
    deal_id: int | None,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> None:
    if deal_id is None:
        return
    try:
        process_deal_stage(db, deal_id, collaborators=collaborators, config=config)
    except ExternalServiceError as exc:
        logger.warning("cash_stage_update_failed", extra={"deal_id": deal_id, "error": str(exc)})
    if config.dry_run:
        db.rollback()
    else:
        db.commit()


@router.post("", response_model=CashPaymentRead, status_code=status.HTTP_201_CREATED)
def create_cash_payment(
    payload: CashPaymentCreate,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
):
    cash = create_cash_expectation(
        db,
        deal_id=payload.deal_id,
        proforma_id=payload.proforma_id,
        expected_amount=payload.expected_amount,
        currency=payload.currency,
        actor=payload.actor or actor,
        note=payload.note,
    )
    db.commit()
    return _read(db, cash.id)


@router.get("/{cash_payment_id}", response_model=CashPaymentRead)
def get_cash_payment(cash_payment_id: int, db: Session = _db_dep):
    return _read(db, cash_payment_id)


@router.post("/{cash_payment_id}/request-confirmation", response_model=CashPaymentRead)
def request_cash_confirmation(
    cash_payment_id: int,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
):
    request_confirmation(db, cash_payment_id, actor=actor)
    db.commit()
    return _read(db, cash_payment_id)


@router.post("/{cash_payment_id}/confirm", response_model=CashPaymentRead)
def confirm(
    cash_payment_id: int,
    payload: CashConfirmRequest,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    cash = confirm_cash_payment(
        db,
        cash_payment_id,
        amount=payload.amount,
        currency=payload.currency,
        confirmed_by=payload.confirmed_by or actor,
        confirmed_at=payload.confirmed_at,
        confirmation_id=payload.confirmation_id,
        fx=collaborators.fx,
        config=config,
    )
    deal_id = cash.deal_id
    db.commit()
    _settle_deal(db, deal_id, collaborators=collaborators, config=config)
    return _read(db, cash_payment_id)


@router.post("/{cash_payment_id}/refund", response_model=CashPaymentRead)
def refund(
    cash_payment_id: int,
    payload: CashRefundRequest,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    config: ReconciliationConfig = _config_dep,
):
    # Refunds never move a deal backwards, so there is no stage step here.
    refund_cash_payment(
        db,
        cash_payment_id,
        amount=payload.amount,
        processed_by=payload.processed_by or actor,
        reason=payload.reason,
        config=config,
    )
    db.commit()
    return _read(db, cash_payment_id)
