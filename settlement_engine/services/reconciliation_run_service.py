from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import ReconciliationMode

_RECONCILIATION_RUN_SCHEMA_VERSION = "reconciliation.run.v1"


def _jsonable(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, (str, int, float, bool)):
        return v
    if isinstance(v, Decimal):
        return str(v)
    if isinstance(v, (date, datetime)):
        return v.isoformat()
    if isinstance(v, dict):
        return {str(k): _jsonable(vv) for k, vv in sorted(v.items(), key=lambda x: str(x[0]))}
    if isinstance(v, (list, tuple)):
        return [_jsonable(x) for x in v]
    return str(v)


def compute_reconciliation_inputs_hash(
    *,
    records: Sequence[dict[str, Any]],
    source: str,
    mode: ReconciliationMode,
) -> str:
    """Deterministic hash of a batch; key order inside records does not matter."""
    payload = {
        "schema_version": _RECONCILIATION_RUN_SCHEMA_VERSION,
        "source": str(source),
        "mode": str(mode),
        "records": [_jsonable(r) for r in records],
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


@dataclass(frozen=True)
class ReconciliationRunPlan:
    source: str
    mode: ReconciliationMode
    record_count: int
    inputs_hash: str


def build_reconciliation_run_plan(
    *,
    records: Sequence[dict[str, Any]],
    source: str,
    mode: ReconciliationMode,
) -> ReconciliationRunPlan:
    return ReconciliationRunPlan(
        source=str(source),
        mode=mode,
        record_count=len(records),
        inputs_hash=compute_reconciliation_inputs_hash(records=records, source=source, mode=mode),
    )


def get_run_by_hash(db: Session, inputs_hash: str) -> models.ReconciliationRun | None:
    return (
        db.query(models.ReconciliationRun)
        .filter(models.ReconciliationRun.inputs_hash == inputs_hash)
        .first()
    )


def ensure_reconciliation_run(db: Session, plan: ReconciliationRunPlan) -> models.ReconciliationRun:
    existing = get_run_by_hash(db, plan.inputs_hash)
    if existing is not None:
        return existing

    run = models.ReconciliationRun(
        inputs_hash=plan.inputs_hash,
        source=plan.source,
        mode=plan.mode,
        record_count=plan.record_count,
        status="queued",
        processed=0,
        linked=0,
        skipped=0,
        flagged=0,
        failed=0,
    )
    db.add(run)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_run_by_hash(db, plan.inputs_hash)
        if existing is None:
            raise
        return existing

    return run


_RUN_STATUS_ORDER = {
    "queued": 0,
    "running": 1,
    "done": 2,
    "failed": 2,
    "cancelled": 2,
}


def transition_reconciliation_run_status(
    db: Session,
    *,
    run: models.ReconciliationRun,
    new_status: str,
    error_code: str | None = None,
    error_message: str | None = None,
    allow_resume: bool = False,
) -> models.ReconciliationRun:
    if new_status not in _RUN_STATUS_ORDER:
        raise ValueError(f"Invalid reconciliation run status: {new_status}")

    old = str(getattr(run, "status", "queued") or "queued")
    if old not in _RUN_STATUS_ORDER:
        old = "queued"

    if allow_resume and old in {"failed", "cancelled"} and new_status == "running":
        run.status = "running"
        run.completed_at = None
        run.error_code = None
        run.error_message = None
        db.flush()
        return run

    if _RUN_STATUS_ORDER[new_status] < _RUN_STATUS_ORDER[old]:
        raise ValueError(f"Invalid transition: {old} -> {new_status}")
    if old in {"done", "failed", "cancelled"} and new_status != old:
        raise ValueError(f"Run is terminal; cannot transition: {old} -> {new_status}")

    run.status = new_status

    if new_status == "running" and run.started_at is None:
        run.started_at = datetime.now(timezone.utc)

    if new_status in {"done", "failed", "cancelled"}:
        if run.completed_at is None:
            run.completed_at = datetime.now(timezone.utc)
        if new_status == "failed":
            run.error_code = error_code
            run.error_message = error_message

    db.flush()
    return run
