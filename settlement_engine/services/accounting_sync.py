from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from dateutil import parser as date_parser
from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.services.collaborators import Collaborators, RetryPolicy, call_with_retry
from settlement_engine.services.errors import ValidationError
from settlement_engine.services.ingest_normalizer import extract_proforma_number, normalize_name

logger = logging.getLogger("settlement.accounting")


def _parse_date(value) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    return date_parser.parse(str(value)).date()


def _find(db: Session, fullnumber: str) -> models.Proforma | None:
    return db.query(models.Proforma).filter(models.Proforma.fullnumber == fullnumber).first()


def upsert_proforma(db: Session, data: dict[str, Any]) -> models.Proforma:
    """Mirror one proforma from the accounting system.

    Only descriptive fields are refreshed on an existing row; aggregates stay
    with the settlement aggregator.
    """
    raw_number = str(data.get("fullnumber") or "").strip()
    fullnumber = extract_proforma_number(raw_number) or raw_number
    if not fullnumber:
        raise ValidationError("proforma fullnumber is missing", field_name="fullnumber")
    if data.get("total") is None:
        raise ValidationError(f"proforma {fullnumber} has no total", field_name="total")

    values = {
        "deal_id": int(data["deal_id"]) if data.get("deal_id") is not None else None,
        "buyer_name": data.get("buyer_name"),
        "buyer_normalized_name": normalize_name(data.get("buyer_name")),
        "currency": str(data.get("currency") or "").upper(),
        "total": Decimal(str(data["total"])),
        "issued_at": _parse_date(data.get("issued_at")),
        "exchange_rate": Decimal(str(data["exchange_rate"])) if data.get("exchange_rate") else None,
    }
    if data.get("deleted"):
        values["status"] = models.ProformaStatus.deleted

    proforma = _find(db, fullnumber)
    if proforma is None:
        proforma = models.Proforma(fullnumber=fullnumber, **values)
        db.add(proforma)
        # A concurrent insert surfaces as IntegrityError; the record fails and is retried.
        db.flush()
        logger.info("proforma_mirrored", extra={"proforma_id": proforma.id, "fullnumber": fullnumber})
        return proforma

    for key, value in values.items():
        setattr(proforma, key, value)
    db.flush()
    return proforma


def sync_proforma_by_fullnumber(
    db: Session,
    fullnumber: str,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> models.Proforma | None:
    existing = _find(db, fullnumber)
    if existing is not None or collaborators.accounting is None:
        return existing

    data = call_with_retry(
        collaborators.accounting.get_proforma,
        fullnumber,
        service="accounting",
        policy=RetryPolicy.from_config(config),
    )
    if not data:
        return None
    return upsert_proforma(db, {"fullnumber": fullnumber, **dict(data)})


def sync_deal_proformas(
    db: Session,
    deal_id: int,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> list[models.Proforma]:
    if collaborators.accounting is None:
        return []
    rows = call_with_retry(
        collaborators.accounting.list_proformas,
        int(deal_id),
        service="accounting",
        policy=RetryPolicy.from_config(config),
    )
    out = []
    for row in rows or []:
        out.append(upsert_proforma(db, {"deal_id": int(deal_id), **dict(row)}))
    return out


def sync_for_payment(
    db: Session,
    payment: models.Payment,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> None:
    """Make sure proformas a payment can be matched against are mirrored locally."""
    if collaborators.accounting is None:
        return
    for number in (payment.manual_proforma_fullnumber, payment.proforma_number_hint):
        if number:
            sync_proforma_by_fullnumber(db, number, collaborators=collaborators, config=config)
    if payment.linked_deal_id:
        has_any = (
            db.query(models.Proforma.id)
            .filter(models.Proforma.deal_id == int(payment.linked_deal_id))
            .first()
        )
        if has_any is None:
            sync_deal_proformas(
                db, int(payment.linked_deal_id), collaborators=collaborators, config=config
            )
