from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement_engine.api.deps import get_db, get_reconciliation_config
from settlement_engine.config import ReconciliationConfig
from settlement_engine.schemas.reconciliation import DealSettlementRead
from settlement_engine.services.diagnostics import describe_deal

router = APIRouter(prefix="/deals", tags=["deals"])

_db_dep = Depends(get_db)
_config_dep = Depends(get_reconciliation_config)


@router.get("/{deal_id}/settlement", response_model=DealSettlementRead)
def get_deal_settlement(
    deal_id: int,
    db: Session = _db_dep,
    config: ReconciliationConfig = _config_dep,
):
    """Read-only view: stage, paid ratio, schedule, transitions and open warnings."""
    return DealSettlementRead(**describe_deal(db, deal_id, config=config))
