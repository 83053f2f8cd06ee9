from __future__ import annotations

import dataclasses
import re

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.api.deps import (
    get_collaborators,
    get_db,
    get_reconciliation_config,
    get_session_factory,
)
from settlement_engine.config import ReconciliationConfig
from settlement_engine.schemas.reconciliation import (
    ReconciliationReportRead,
    ReconciliationRunRequest,
    ReconciliationRunStatusResponse,
    RecordResultRead,
)
from settlement_engine.services.collaborators import Collaborators
from settlement_engine.services.reconciliation_pipeline import (
    ReconciliationReport,
    execute_reconciliation_run,
)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

_HEX_64_RE = re.compile(r"^[0-9a-f]{64}$")

_db_dep = Depends(get_db)
_session_factory_dep = Depends(get_session_factory)
_collaborators_dep = Depends(get_collaborators)
_config_dep = Depends(get_reconciliation_config)


def report_response(report: ReconciliationReport) -> ReconciliationReportRead:
    return ReconciliationReportRead(
        run_id=report.run_id,
        inputs_hash=report.inputs_hash,
        mode=report.mode,
        status=report.status,
        processed=report.processed,
        linked=report.linked,
        skipped=report.skipped,
        flagged=report.flagged,
        failed=report.failed,
        warnings=list(report.warnings),
        records=[
            RecordResultRead(
                index=r.index,
                outcome=r.outcome,
                payment_id=r.payment_id,
                deal_id=r.deal_id,
                message=r.message,
            )
            for r in report.records
        ],
    )


@router.post(
    "/runs",
    response_model=ReconciliationReportRead,
    status_code=status.HTTP_200_OK,
)
def run_reconciliation(
    payload: ReconciliationRunRequest,
    session_factory=_session_factory_dep,
    collaborators: Collaborators = _collaborators_dep,
    config: ReconciliationConfig = _config_dep,
):
    if payload.mode is not None and payload.mode != config.mode:
        config = dataclasses.replace(config, mode=payload.mode)

    report = execute_reconciliation_run(
        session_factory,
        payload.records,
        collaborators,
        config,
        source=payload.source,
    )
    return report_response(report)


@router.get(
    "/runs/{run_ref}",
    response_model=ReconciliationRunStatusResponse,
    status_code=status.HTTP_200_OK,
)
def get_reconciliation_run(run_ref: str, db: Session = _db_dep):
    run: models.ReconciliationRun | None = None

    if run_ref.isdigit():
        run = db.get(models.ReconciliationRun, int(run_ref))
    else:
        key = str(run_ref).strip().lower()
        if not _HEX_64_RE.match(key):
            raise HTTPException(
                status_code=400,
                detail={"code": "reconciliation.run_ref.invalid", "run_ref": run_ref},
            )
        run = (
            db.query(models.ReconciliationRun)
            .filter(models.ReconciliationRun.inputs_hash == key)
            .first()
        )

    if run is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "reconciliation.run.not_found", "run_ref": run_ref},
        )
    return ReconciliationRunStatusResponse.model_validate(run)
