import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from settlement_engine import models

logger = logging.getLogger("settlement.audit")


def _json_default(value: Any) -> str:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def audit_event(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Any,
    payload: Dict[str, Any] | None = None,
    *,
    actor: Optional[str] = "system",
    idempotency_key: str | None = None,
    request_id: str | None = None,
) -> models.AuditLog:
    """
    Record an audit entry inside the caller's transaction.

    The row is added and flushed, never committed: it is persisted together
    with the change it describes, and a rolled-back (dry-run) change leaves no
    audit trail behind. With an idempotency key, an existing entry is reused.
    """
    if idempotency_key:
        existing = (
            db.query(models.AuditLog)
            .filter(models.AuditLog.idempotency_key == idempotency_key)
            .first()
        )
        if existing is not None:
            return existing

    log = models.AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        actor=actor,
        payload_json=json.dumps(payload or {}, default=_json_default, sort_keys=True),
        idempotency_key=idempotency_key,
        request_id=request_id,
    )
    db.add(log)
    db.flush()
    logger.info(
        "audit_event",
        extra={"action": action, "entity_type": entity_type, "entity_id": log.entity_id},
    )
    return log
