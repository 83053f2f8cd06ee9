from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.api.deps import get_actor, get_db, get_reconciliation_config
from settlement_engine.config import ReconciliationConfig
from settlement_engine.schemas.reconciliation import (
    ProformaAggregatesRead,
    ProformaRecomputeRequest,
    ProformaVerifyResponse,
)
from settlement_engine.services.settlement_aggregator import (
    apply_aggregate_correction,
    verify_proforma_aggregates,
)

router = APIRouter(prefix="/proformas", tags=["proformas"])

_db_dep = Depends(get_db)
_config_dep = Depends(get_reconciliation_config)
_actor_dep = Depends(get_actor)


def _get_proforma(db: Session, proforma_id: int) -> models.Proforma:
    proforma = db.get(models.Proforma, proforma_id)
    if proforma is None:
        raise HTTPException(
            status_code=404, detail={"code": "proforma.not_found", "proforma_id": proforma_id}
        )
    return proforma


@router.get("/{proforma_id}", response_model=ProformaAggregatesRead)
def get_proforma(proforma_id: int, db: Session = _db_dep):
    return ProformaAggregatesRead.model_validate(_get_proforma(db, proforma_id))


@router.get("/{proforma_id}/verify", response_model=ProformaVerifyResponse)
def verify_proforma(
    proforma_id: int,
    db: Session = _db_dep,
    config: ReconciliationConfig = _config_dep,
):
    proforma = _get_proforma(db, proforma_id)
    warning = verify_proforma_aggregates(db, proforma, base_currency=config.base_currency)
    return ProformaVerifyResponse(
        proforma_id=proforma.id,
        consistent=warning is None,
        warning=warning.as_dict() if warning is not None else None,
    )


@router.post("/{proforma_id}/recompute", response_model=ProformaAggregatesRead)
def recompute_proforma(
    proforma_id: int,
    payload: ProformaRecomputeRequest | None = None,
    db: Session = _db_dep,
    actor: str | None = _actor_dep,
    config: ReconciliationConfig = _config_dep,
):
    """Explicit operator correction; audited when it changes anything."""
    proforma = _get_proforma(db, proforma_id)
    apply_aggregate_correction(
        db,
        proforma.id,
        base_currency=config.base_currency,
        actor=(payload and payload.actor) or actor or "operator",
    )
    db.commit()
    db.refresh(proforma)
    return ProformaAggregatesRead.model_validate(proforma)
