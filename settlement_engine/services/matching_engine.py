from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Any, Literal

from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.services.audit import audit_event
from settlement_engine.services.errors import (
    InvalidTransitionError,
    MatchAmbiguousError,
    NotFoundError,
)
from settlement_engine.services.money import ZERO, round_money, utc_now
from settlement_engine.services.settlement_aggregator import recompute_proforma_aggregates

logger = logging.getLogger("settlement.matching")

MatchOutcomeStatus = Literal["linked", "kept", "unmatched", "skipped"]

# Buyer names below this similarity are not considered candidates at all.
_NAME_FLOOR = 0.5
_TIE_EPSILON = 1e-9


@dataclass(frozen=True)
class MatchCandidate:
    proforma_id: int
    fullnumber: str
    score: float
    name_score: float
    amount_score: float
    amount_basis: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "proforma_id": self.proforma_id,
            "fullnumber": self.fullnumber,
            "score": round(self.score, 4),
            "name_score": round(self.name_score, 4),
            "amount_score": round(self.amount_score, 4),
            "amount_basis": self.amount_basis,
        }


@dataclass(frozen=True)
class MatchOutcome:
    status: MatchOutcomeStatus
    proforma_id: int | None = None
    confidence: float | None = None
    reason: str | None = None
    candidates: list[MatchCandidate] = field(default_factory=list)
    affected_proforma_ids: tuple[int, ...] = ()


def _active_proformas(db: Session):
    return db.query(models.Proforma).filter(
        models.Proforma.status == models.ProformaStatus.active
    )


def _find_by_fullnumber(db: Session, fullnumber: str) -> models.Proforma | None:
    return (
        _active_proformas(db)
        .filter(models.Proforma.fullnumber == str(fullnumber).strip())
        .first()
    )


def _resolve_manual(db: Session, payment: models.Payment) -> models.Proforma | None:
    if payment.manual_proforma_id:
        return db.get(models.Proforma, int(payment.manual_proforma_id))
    if payment.manual_proforma_fullnumber:
        return _find_by_fullnumber(db, payment.manual_proforma_fullnumber)
    return None


def name_similarity(a: str | None, b: str | None) -> float:
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


def _amount_in_proforma_currency(
    payment: models.Payment, proforma: models.Proforma, base_currency: str
) -> Decimal | None:
    if payment.currency == proforma.currency:
        return Decimal(payment.amount)
    base_amount = payment.amount_base
    if base_amount is None and payment.currency == base_currency:
        base_amount = payment.amount
    if base_amount is None:
        return None
    if proforma.currency == base_currency:
        return Decimal(base_amount)
    if proforma.exchange_rate:
        return Decimal(base_amount) / Decimal(proforma.exchange_rate)
    return None


def amount_closeness(
    amount: Decimal, proforma: models.Proforma, *, deposit_ratio: Decimal, tolerance: Decimal
) -> tuple[float, str]:
    """Best closeness of `amount` to the remaining balance, full total or deposit."""
    total = Decimal(proforma.total)
    remaining = total - Decimal(proforma.payments_total or 0)
    targets = [("remaining", remaining), ("total", total), ("deposit", total * deposit_ratio)]

    best = (0.0, "none")
    for basis, target in targets:
        if target <= ZERO:
            continue
        diff = abs(Decimal(amount) - target)
        score = 1.0 if diff <= tolerance else max(0.0, 1.0 - float(diff / target))
        if score > best[0]:
            best = (score, basis)
    return best


def _currency_compatible(
    payment: models.Payment, proforma: models.Proforma, base_currency: str
) -> bool:
    if payment.currency == proforma.currency:
        return True
    if payment.currency == base_currency or payment.amount_base is not None:
        return proforma.currency == base_currency or proforma.exchange_rate is not None
    return False


def score_candidates(
    db: Session,
    payment: models.Payment,
    *,
    config: ReconciliationConfig,
) -> list[MatchCandidate]:
    earliest_issue = payment.operation_date - timedelta(days=int(config.issue_days_before_payment))
    latest_issue = payment.operation_date + timedelta(days=int(config.issue_days_after_payment))

    query = _active_proformas(db).filter(
        (models.Proforma.issued_at.is_(None))
        | (
            (models.Proforma.issued_at >= earliest_issue)
            & (models.Proforma.issued_at <= latest_issue)
        )
    )
    if payment.linked_deal_id:
        query = query.filter(models.Proforma.deal_id == int(payment.linked_deal_id))

    out: list[MatchCandidate] = []
    for proforma in query.order_by(models.Proforma.id.asc()).all():
        if not _currency_compatible(payment, proforma, config.base_currency):
            continue
        if payment.linked_deal_id:
            name_score = 1.0
        else:
            name_score = name_similarity(payment.normalized_counterparty, proforma.buyer_normalized_name)
            if name_score < _NAME_FLOOR:
                continue
        amount = _amount_in_proforma_currency(payment, proforma, config.base_currency)
        if amount is None:
            continue
        amount_score, basis = amount_closeness(
            amount,
            proforma,
            deposit_ratio=Decimal(config.deposit_ratio),
            tolerance=Decimal(config.match_amount_tolerance),
        )
        out.append(
            MatchCandidate(
                proforma_id=proforma.id,
                fullnumber=proforma.fullnumber,
                score=round(0.5 * name_score + 0.5 * amount_score, 6),
                name_score=name_score,
                amount_score=amount_score,
                amount_basis=basis,
            )
        )

    out.sort(key=lambda c: (-c.score, c.proforma_id))
    return out


def _recompute(db: Session, proforma_ids, *, config: ReconciliationConfig, reason: str) -> tuple[int, ...]:
    done: list[int] = []
    for pid in proforma_ids:
        if pid is None or pid in done:
            continue
        recompute_proforma_aggregates(db, pid, base_currency=config.base_currency, reason=reason)
        done.append(pid)
    return tuple(done)


def link_payment(
    db: Session,
    payment: models.Payment,
    proforma: models.Proforma,
    *,
    config: ReconciliationConfig,
    status: models.MatchStatus = models.MatchStatus.matched,
    confidence: float | None = 1.0,
    reason: str,
    actor: str | None = "system",
    metadata: dict[str, Any] | None = None,
) -> tuple[int, ...]:
    """Point a payment at one proforma and refresh every affected aggregate."""
    previous = payment.effective_proforma_id
    payment.linked_proforma_id = proforma.id
    if proforma.deal_id is not None:
        payment.linked_deal_id = proforma.deal_id
    payment.match_status = status
    payment.match_confidence = confidence
    payment.match_reason = reason
    if metadata is not None:
        payment.match_metadata = {**(payment.match_metadata or {}), **metadata}
    db.flush()

    audit_event(
        db,
        "payment.linked",
        "payment",
        payment.id,
        {
            "proforma_id": proforma.id,
            "previous_proforma_id": previous,
            "status": status.value,
            "reason": reason,
            "confidence": confidence,
        },
        actor=actor,
    )
    logger.info(
        "payment_linked",
        extra={"payment_id": payment.id, "proforma_id": proforma.id, "reason": reason},
    )
    return _recompute(db, [previous, proforma.id], config=config, reason=f"link:{reason}")


def match_payment(
    db: Session,
    payment: models.Payment,
    *,
    config: ReconciliationConfig,
) -> MatchOutcome:
    """Find the proforma a payment settles. First rule that applies wins:

    1. an existing direct link is kept;
    2. a manual override key is resolved and linked;
    3. a proforma number in the description, or a gateway deal pre-link with
       exactly one active proforma, is linked deterministically;
    4. fuzzy scoring by buyer name and amount, auto-accepted only above the
       threshold with a clear margin over the runner-up.

    Raises MatchAmbiguousError when the best candidates tie.
    """
    if payment.deleted_at is not None or payment.review_status == models.ReviewStatus.duplicate_review:
        return MatchOutcome(status="skipped", reason="not_eligible")

    if payment.match_status in {models.MatchStatus.approved, models.MatchStatus.rejected}:
        return MatchOutcome(
            status="kept", proforma_id=payment.effective_proforma_id, reason="operator_decision"
        )

    if payment.linked_proforma_id:
        return MatchOutcome(
            status="kept",
            proforma_id=payment.linked_proforma_id,
            confidence=payment.match_confidence,
            reason=payment.match_reason or "direct_link",
        )

    manual = _resolve_manual(db, payment)
    if manual is not None:
        affected = link_payment(db, payment, manual, config=config, reason="manual_override")
        return MatchOutcome("linked", manual.id, 1.0, "manual_override", affected_proforma_ids=affected)

    if payment.proforma_number_hint:
        by_number = _find_by_fullnumber(db, payment.proforma_number_hint)
        if by_number is not None:
            affected = link_payment(db, payment, by_number, config=config, reason="proforma_number")
            return MatchOutcome(
                "linked", by_number.id, 1.0, "proforma_number", affected_proforma_ids=affected
            )

    if payment.linked_deal_id:
        deal_proformas = (
            _active_proformas(db)
            .filter(models.Proforma.deal_id == int(payment.linked_deal_id))
            .order_by(models.Proforma.id.asc())
            .all()
        )
        if len(deal_proformas) == 1:
            affected = link_payment(db, payment, deal_proformas[0], config=config, reason="deal_prelink")
            return MatchOutcome(
                "linked", deal_proformas[0].id, 1.0, "deal_prelink", affected_proforma_ids=affected
            )
        if not deal_proformas:
            # Deal-level payment: counted on the deal, not on any proforma.
            return MatchOutcome(status="unmatched", reason="deal_without_proforma")

    candidates = score_candidates(db, payment, config=config)
    if not candidates:
        return MatchOutcome(status="unmatched", reason="no_candidates")

    top = candidates[0]
    runner_up = candidates[1] if len(candidates) > 1 else None
    threshold = float(config.fuzzy_match_threshold)

    if top.score >= threshold and runner_up is not None and abs(top.score - runner_up.score) < _TIE_EPSILON:
        tied = [c for c in candidates if abs(c.score - top.score) < _TIE_EPSILON]
        payment.match_metadata = {
            **(payment.match_metadata or {}),
            "candidates": [c.as_dict() for c in candidates[:5]],
            "ambiguous": True,
        }
        payment.match_reason = "ambiguous"
        db.flush()
        raise MatchAmbiguousError(
            f"Payment {payment.id} matches {len(tied)} proformas equally",
            candidate_ids=[c.proforma_id for c in tied],
        )

    clear_margin = runner_up is None or (top.score - runner_up.score) >= float(config.fuzzy_match_margin)
    if top.score >= threshold and clear_margin:
        proforma = db.get(models.Proforma, top.proforma_id)
        affected = link_payment(
            db,
            payment,
            proforma,
            config=config,
            confidence=top.score,
            reason="fuzzy",
            metadata={"candidates": [c.as_dict() for c in candidates[:5]]},
        )
        return MatchOutcome("linked", proforma.id, top.score, "fuzzy", candidates, affected)

    payment.match_metadata = {
        **(payment.match_metadata or {}),
        "candidates": [c.as_dict() for c in candidates[:5]],
    }
    payment.match_reason = "below_threshold" if top.score < threshold else "insufficient_margin"
    db.flush()
    return MatchOutcome(status="unmatched", reason=payment.match_reason, candidates=candidates)


def _get_live_payment(db: Session, payment_id: int) -> models.Payment:
    payment = db.get(models.Payment, int(payment_id))
    if payment is None or payment.deleted_at is not None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def _set_status(
    db: Session,
    payment: models.Payment,
    new_status: models.MatchStatus,
    *,
    action: str,
    actor: str | None,
    config: ReconciliationConfig,
    extra: dict[str, Any] | None = None,
) -> models.Payment:
    old_status = payment.match_status
    payment.match_status = new_status
    db.flush()
    audit_event(
        db,
        action,
        "payment",
        payment.id,
        {"from": old_status.value, "to": new_status.value, **(extra or {})},
        actor=actor,
    )
    _recompute(db, [payment.effective_proforma_id], config=config, reason=action)
    return payment


def approve_payment(
    db: Session, payment_id: int, *, actor: str | None, config: ReconciliationConfig
) -> models.Payment:
    payment = _get_live_payment(db, payment_id)
    if payment.match_status != models.MatchStatus.matched or payment.effective_proforma_id is None:
        raise InvalidTransitionError(
            f"Only matched payments can be approved (payment {payment.id} is {payment.match_status.value})"
        )
    return _set_status(
        db, payment, models.MatchStatus.approved, action="payment.approved", actor=actor, config=config
    )


def reject_payment(
    db: Session,
    payment_id: int,
    *,
    actor: str | None,
    reason: str | None = None,
    config: ReconciliationConfig,
) -> models.Payment:
    payment = _get_live_payment(db, payment_id)
    if payment.match_status != models.MatchStatus.matched:
        raise InvalidTransitionError(
            f"Only matched payments can be rejected (payment {payment.id} is {payment.match_status.value})"
        )
    return _set_status(
        db,
        payment,
        models.MatchStatus.rejected,
        action="payment.rejected",
        actor=actor,
        config=config,
        extra={"reason": reason},
    )


def assign_payment(
    db: Session,
    payment_id: int,
    *,
    proforma_id: int | None = None,
    proforma_fullnumber: str | None = None,
    actor: str | None,
    config: ReconciliationConfig,
) -> models.Payment:
    """Operator assignment to a proforma; the payment ends up approved."""
    payment = _get_live_payment(db, payment_id)
    if payment.match_status == models.MatchStatus.approved:
        raise InvalidTransitionError(f"Payment {payment.id} is already approved; clear it first")
    if payment.review_status == models.ReviewStatus.duplicate_review:
        raise InvalidTransitionError(f"Payment {payment.id} is awaiting duplicate review")

    proforma = None
    if proforma_id is not None:
        proforma = db.get(models.Proforma, int(proforma_id))
    elif proforma_fullnumber:
        proforma = _find_by_fullnumber(db, proforma_fullnumber)
    if proforma is None or proforma.status != models.ProformaStatus.active:
        raise NotFoundError("Proforma not found or not active")

    payment.manual_proforma_id = proforma.id
    payment.manual_proforma_fullnumber = proforma.fullnumber
    link_payment(
        db,
        payment,
        proforma,
        config=config,
        status=models.MatchStatus.approved,
        confidence=1.0,
        reason="manual_assign",
        actor=actor,
    )
    return payment


def clear_payment(
    db: Session, payment_id: int, *, actor: str | None, config: ReconciliationConfig
) -> models.Payment:
    """Undo an operator decision: the payment goes back to unmatched with no link."""
    payment = _get_live_payment(db, payment_id)
    if payment.match_status not in {models.MatchStatus.approved, models.MatchStatus.rejected}:
        raise InvalidTransitionError(
            f"Only approved or rejected payments can be cleared (payment {payment.id} is {payment.match_status.value})"
        )

    previous = {payment.linked_proforma_id, payment.manual_proforma_id}
    old_status = payment.match_status
    payment.linked_proforma_id = None
    payment.manual_proforma_id = None
    payment.manual_proforma_fullnumber = None
    payment.match_status = models.MatchStatus.unmatched
    payment.match_confidence = None
    payment.match_reason = None
    db.flush()

    audit_event(
        db,
        "payment.cleared",
        "payment",
        payment.id,
        {"from": old_status.value, "previous_proforma_ids": sorted(p for p in previous if p)},
        actor=actor,
    )
    _recompute(db, sorted(p for p in previous if p), config=config, reason="payment.cleared")
    return payment


def delete_payment(
    db: Session,
    payment_id: int,
    *,
    actor: str | None,
    reason: str | None = None,
    config: ReconciliationConfig,
) -> models.Payment:
    """Soft delete; the row stays for audit and drops out of every aggregate."""
    payment = _get_live_payment(db, payment_id)
    previous = payment.effective_proforma_id
    payment.deleted_at = utc_now()
    db.flush()
    audit_event(
        db,
        "payment.deleted",
        "payment",
        payment.id,
        {"reason": reason, "proforma_id": previous, "amount": round_money(payment.amount)},
        actor=actor,
    )
    _recompute(db, [previous], config=config, reason="payment.deleted")
    return payment
