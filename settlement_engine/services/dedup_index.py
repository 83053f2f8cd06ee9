from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Iterable, Literal

from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.services.audit import audit_event
from settlement_engine.services.errors import (
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from settlement_engine.services.ingest_normalizer import fold_accents
from settlement_engine.services.money import round_money, utc_now

logger = logging.getLogger("settlement.dedup")

DESCRIPTION_PREFIX_LENGTH = 50

_PUNCT_RE = re.compile(r"[^\w\s]+", re.UNICODE)
_SPACES_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class DedupResult:
    payment: models.Payment
    outcome: Literal["new", "review"]
    duplicate_of_id: int | None = None


def _phrase_pattern(phrases: Iterable[str]) -> re.Pattern | None:
    folded = sorted(
        {fold_accents(p).lower().strip() for p in phrases if p and p.strip()},
        key=len,
        reverse=True,
    )
    if not folded:
        return None
    return re.compile(r"\b(?:" + "|".join(re.escape(p) for p in folded) + r")\b")


def has_transient_phrase(description: str | None, phrases: Iterable[str]) -> bool:
    if not description:
        return False
    pattern = _phrase_pattern(phrases)
    if pattern is None:
        return False
    return bool(pattern.search(fold_accents(description).lower()))


def normalize_description(
    description: str | None,
    phrases: Iterable[str],
    *,
    limit: int | None = DESCRIPTION_PREFIX_LENGTH,
) -> str:
    """Transient-insensitive form of a bank description.

    Status markers ("pending", "blokada", ...) are removed before lowercasing
    leftovers, dropping punctuation and truncating.
    """
    s = fold_accents(description or "").lower()
    pattern = _phrase_pattern(phrases)
    if pattern is not None:
        s = pattern.sub(" ", s)
    s = _PUNCT_RE.sub(" ", s).replace("_", " ")
    s = _SPACES_RE.sub(" ", s).strip()
    if limit is not None:
        s = s[:limit].rstrip()
    return s


def compute_fingerprint(
    *,
    operation_date: date,
    amount: Decimal,
    direction: models.PaymentDirection,
    currency: str,
    description: str | None,
    phrases: Iterable[str],
) -> str:
    signed = round_money(amount)
    if direction == models.PaymentDirection.outgoing:
        signed = -signed
    parts = [
        operation_date.isoformat(),
        f"{signed:.2f}",
        str(currency or "").upper(),
        normalize_description(description, phrases),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def description_similarity(a: str | None, b: str | None, phrases: Iterable[str]) -> float:
    na = normalize_description(a, phrases, limit=None)
    nb = normalize_description(b, phrases, limit=None)
    if not na and not nb:
        return 1.0
    return SequenceMatcher(None, na, nb).ratio()


def fingerprint_payment(payment: models.Payment, config: ReconciliationConfig) -> str:
    payment.fingerprint = compute_fingerprint(
        operation_date=payment.operation_date,
        amount=payment.amount,
        direction=payment.direction,
        currency=payment.currency,
        description=payment.description,
        phrases=config.transient_phrases,
    )
    return payment.fingerprint


def _live(db: Session):
    return db.query(models.Payment).filter(models.Payment.deleted_at.is_(None))


def _is_upgrade(stored: models.Payment, incoming: models.Payment, phrases) -> bool:
    """True when the stored row is the transient version and the incoming one is final."""
    return has_transient_phrase(stored.description, phrases) and not has_transient_phrase(
        incoming.description, phrases
    )


def _merge_final_version(
    db: Session,
    stored: models.Payment,
    incoming: models.Payment,
    *,
    tier: int,
    config: ReconciliationConfig,
) -> None:
    before = {
        "description": stored.description,
        "operation_date": stored.operation_date,
        "external_ref": stored.external_ref,
        "proforma_number_hint": stored.proforma_number_hint,
    }
    stored.description = incoming.description
    stored.operation_date = incoming.operation_date
    if incoming.external_ref:
        stored.external_ref = incoming.external_ref
    if incoming.proforma_number_hint:
        stored.proforma_number_hint = incoming.proforma_number_hint
    fingerprint_payment(stored, config)
    db.flush()

    audit_event(
        db,
        "payment.dedup_merged",
        "payment",
        stored.id,
        {
            "tier": tier,
            "before": before,
            "after": {
                "description": stored.description,
                "operation_date": stored.operation_date,
                "external_ref": stored.external_ref,
                "proforma_number_hint": stored.proforma_number_hint,
            },
        },
    )
    logger.info("payment_merged_final_version", extra={"payment_id": stored.id, "tier": tier})


def _heuristic_candidates(db: Session, payment: models.Payment, config: ReconciliationConfig):
    if not payment.normalized_counterparty:
        return []
    window = timedelta(days=int(config.dedup_date_window_days))
    return (
        _live(db)
        .filter(models.Payment.review_status != models.ReviewStatus.duplicate_review)
        .filter(models.Payment.normalized_counterparty == payment.normalized_counterparty)
        .filter(models.Payment.amount == payment.amount)
        .filter(models.Payment.currency == payment.currency)
        .filter(models.Payment.direction == payment.direction)
        .filter(models.Payment.operation_date >= payment.operation_date - window)
        .filter(models.Payment.operation_date <= payment.operation_date + window)
        .order_by(models.Payment.id.asc())
        .all()
    )


def _refunded_charge(payment: models.Payment) -> str | None:
    if payment.source != models.PaymentSource.gateway:
        return None
    if payment.direction != models.PaymentDirection.outgoing:
        return None
    return (payment.match_metadata or {}).get("charge_id")


def _register_charge_refund(
    db: Session,
    payment: models.Payment,
    charge_id: str,
    *,
    config: ReconciliationConfig,
) -> DedupResult:
    """Book the part of a charge's cumulative refund that no earlier event covered.

    Refund events are keyed by (charge, cumulative amount); a redelivery is a
    tier 0 duplicate and an older event arriving late covers nothing new.
    """
    booked_rows = (
        _live(db)
        .filter(models.Payment.source == models.PaymentSource.gateway)
        .filter(models.Payment.direction == models.PaymentDirection.outgoing)
        .filter(models.Payment.external_ref.startswith(f"{charge_id}:refunded:", autoescape=True))
        .order_by(models.Payment.id.asc())
        .all()
    )
    for row in booked_rows:
        if row.external_ref == payment.external_ref:
            raise DuplicateError(
                f"Payment already ingested as {row.id} (source reference)",
                existing_payment_id=row.id,
                tier=0,
            )

    booked = round_money(sum((Decimal(row.amount) for row in booked_rows), Decimal("0")))
    cumulative = round_money(payment.amount)
    delta = round_money(cumulative - booked)
    if cumulative <= 0:
        raise ValidationError("refunded amount must be positive", field_name="amount_refunded")
    if delta <= 0:
        raise DuplicateError(
            f"Refunds of charge {charge_id} already booked up to {booked}",
            existing_payment_id=booked_rows[-1].id,
            tier=0,
        )

    if delta != cumulative:
        if payment.amount_base is not None:
            payment.amount_base = round_money(Decimal(payment.amount_base) * delta / cumulative)
        payment.amount = delta
    payment.match_metadata = {**(payment.match_metadata or {}), "refunded_before": str(booked)}
    fingerprint_payment(payment, config)
    db.add(payment)
    db.flush()
    logger.info(
        "charge_refund_booked",
        extra={"payment_id": payment.id, "charge_id": charge_id, "amount": str(delta)},
    )
    return DedupResult(payment=payment, outcome="new")


def register_payment(
    db: Session,
    payment: models.Payment,
    *,
    config: ReconciliationConfig,
) -> DedupResult:
    """Store a normalized payment unless it is already known.

    Raises DuplicateError for a tier 0 (source reference), tier 1
    (fingerprint) or tier 2 transient/final hit; `merged` tells whether the
    stored row was upgraded to the final version. A tier 2 hit that cannot be
    resolved automatically is stored flagged for duplicate review.
    """
    phrases = config.transient_phrases
    charge_id = _refunded_charge(payment)
    if charge_id is not None:
        return _register_charge_refund(db, payment, charge_id, config=config)

    fingerprint_payment(payment, config)

    if payment.external_ref:
        same_ref = (
            _live(db)
            .filter(models.Payment.source == payment.source)
            .filter(models.Payment.external_ref == payment.external_ref)
            .first()
        )
        if same_ref is not None:
            merged = False
            if _is_upgrade(same_ref, payment, phrases):
                _merge_final_version(db, same_ref, payment, tier=0, config=config)
                merged = True
            raise DuplicateError(
                f"Payment already ingested as {same_ref.id} (source reference)",
                existing_payment_id=same_ref.id,
                tier=0,
                merged=merged,
            )

    same_fp = _live(db).filter(models.Payment.fingerprint == payment.fingerprint).first()
    if same_fp is not None:
        merged = False
        if _is_upgrade(same_fp, payment, phrases):
            _merge_final_version(db, same_fp, payment, tier=1, config=config)
            merged = True
        raise DuplicateError(
            f"Payment already ingested as {same_fp.id} (fingerprint)",
            existing_payment_id=same_fp.id,
            tier=1,
            merged=merged,
        )

    threshold = float(config.dedup_similarity_threshold)
    best: tuple[float, models.Payment] | None = None
    for candidate in _heuristic_candidates(db, payment, config):
        score = description_similarity(candidate.description, payment.description, phrases)
        if score >= threshold and (best is None or score > best[0]):
            best = (score, candidate)

    if best is not None:
        score, stored = best
        if _is_upgrade(stored, payment, phrases):
            _merge_final_version(db, stored, payment, tier=2, config=config)
            raise DuplicateError(
                f"Payment is the final version of {stored.id}",
                existing_payment_id=stored.id,
                tier=2,
                merged=True,
            )
        if _is_upgrade(payment, stored, phrases):
            raise DuplicateError(
                f"Payment is a transient version of {stored.id}",
                existing_payment_id=stored.id,
                tier=2,
                merged=False,
            )

        payment.review_status = models.ReviewStatus.duplicate_review
        payment.duplicate_of_id = stored.id
        payment.match_metadata = {
            **(payment.match_metadata or {}),
            "duplicate_similarity": round(score, 4),
        }
        db.add(payment)
        db.flush()
        audit_event(
            db,
            "payment.flagged_duplicate_review",
            "payment",
            payment.id,
            {"duplicate_of_id": stored.id, "similarity": round(score, 4)},
        )
        logger.info(
            "payment_flagged_duplicate_review",
            extra={"payment_id": payment.id, "duplicate_of_id": stored.id, "similarity": score},
        )
        return DedupResult(payment=payment, outcome="review", duplicate_of_id=stored.id)

    db.add(payment)
    db.flush()
    return DedupResult(payment=payment, outcome="new")


def resolve_duplicate_review(
    db: Session,
    payment_id: int,
    *,
    action: Literal["keep", "discard"],
    actor: str | None = None,
) -> models.Payment:
    """Operator decision on a flagged probable duplicate.

    keep: the row becomes a normal payment (callers then run matching).
    discard: the row is soft-deleted.
    """
    payment = db.get(models.Payment, int(payment_id))
    if payment is None or payment.deleted_at is not None:
        raise NotFoundError(f"Payment {payment_id} not found")
    if payment.review_status != models.ReviewStatus.duplicate_review:
        raise InvalidTransitionError(f"Payment {payment_id} is not awaiting duplicate review")

    duplicate_of_id = payment.duplicate_of_id
    if action == "keep":
        payment.review_status = models.ReviewStatus.none
        payment.duplicate_of_id = None
    elif action == "discard":
        payment.deleted_at = utc_now()
    else:
        raise InvalidTransitionError(f"Unknown duplicate resolution: {action}")

    db.flush()
    audit_event(
        db,
        f"payment.duplicate_{action}",
        "payment",
        payment.id,
        {"duplicate_of_id": duplicate_of_id},
        actor=actor,
    )
    return payment
