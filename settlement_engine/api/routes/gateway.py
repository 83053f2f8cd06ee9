from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, status

from settlement_engine.api.deps import get_collaborators, get_reconciliation_config, get_session_factory
from settlement_engine.api.routes.reconciliation import report_response
from settlement_engine.config import ReconciliationConfig
from settlement_engine.schemas.ingest import decode_gateway_event
from settlement_engine.schemas.reconciliation import ReconciliationReportRead
from settlement_engine.services.collaborators import Collaborators
from settlement_engine.services.reconciliation_pipeline import execute_reconciliation_run

router = APIRouter(prefix="/gateway", tags=["gateway"])

_session_factory_dep = Depends(get_session_factory)
_collaborators_dep = Depends(get_collaborators)
_config_dep = Depends(get_reconciliation_config)


@router.post("/events", response_model=ReconciliationReportRead, status_code=status.HTTP_200_OK)
def receive_gateway_event(
    payload: dict[str, Any] = Body(...),
    session_factory=_session_factory_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    """Webhook entry for payment gateway events.

    Signature verification happens upstream; the payload is decoded once here
    so unsupported event types are rejected before anything is stored. A
    redelivered event hashes to the same run and is reported, not reprocessed.
    """
    decode_gateway_event(payload)
    report = execute_reconciliation_run(
        session_factory,
        [{"kind": "gateway", "event": payload}],
        collaborators,
        config,
        source="gateway",
    )
    return report_response(report)
