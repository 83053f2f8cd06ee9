from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from settlement_engine import models
from settlement_engine.schemas.ingest import decode_ingest_record
from settlement_engine.services.dedup_index import register_payment
from settlement_engine.services.errors import (
    InvalidTransitionError,
    MatchAmbiguousError,
    NotFoundError,
)
from settlement_engine.services.ingest_normalizer import normalize_record
from settlement_engine.services.matching_engine import (
    approve_payment,
    assign_payment,
    clear_payment,
    delete_payment,
    match_payment,
    reject_payment,
    score_candidates,
)


def _ingest(db, config, row):
    payment = normalize_record(decode_ingest_record(row), config=config)
    return register_payment(db, payment, config=config).payment


def _audit_actions(db, action):
    return db.query(models.AuditLog).filter(models.AuditLog.action == action).count()


def test_proforma_number_in_description_links_deterministically(db_session, config, factory):
    factory.make_deal(db_session)
    proforma = factory.make_proforma(db_session)
    payment = _ingest(db_session, config, factory.bank_row())

    outcome = match_payment(db_session, payment, config=config)

    assert outcome.status == "linked"
    assert outcome.reason == "proforma_number"
    assert payment.linked_proforma_id == proforma.id
    assert payment.linked_deal_id == 100
    assert payment.match_status == models.MatchStatus.matched
    assert proforma.payments_total == Decimal("1000.00")
    assert proforma.payments_count == 1


def test_rematching_a_linked_payment_keeps_the_link(db_session, config, factory):
    factory.make_proforma(db_session)
    payment = _ingest(db_session, config, factory.bank_row())
    match_payment(db_session, payment, config=config)

    again = match_payment(db_session, payment, config=config)

    assert again.status == "kept"
    assert _audit_actions(db_session, "payment.linked") == 1


def test_manual_override_wins_over_fuzzy_scoring(db_session, config, factory):
    factory.make_proforma(db_session, "CO-PROF 1/2025")
    target = factory.make_proforma(db_session, "CO-PROF 2/2025", buyer_normalized_name="someone else")
    payment = _ingest(db_session, config, factory.bank_row(description="przelew"))
    payment.manual_proforma_fullnumber = "CO-PROF 2/2025"

    outcome = match_payment(db_session, payment, config=config)

    assert outcome.reason == "manual_override"
    assert payment.linked_proforma_id == target.id


def test_direct_link_and_manual_key_count_once(db_session, config, factory):
    proforma = factory.make_proforma(db_session)
    payment = _ingest(db_session, config, factory.bank_row())
    match_payment(db_session, payment, config=config)

    payment.manual_proforma_id = proforma.id
    db_session.flush()
    approve_payment(db_session, payment.id, actor="ops", config=config)

    assert proforma.payments_count == 1
    assert proforma.payments_total == Decimal("1000.00")


def test_gateway_prelink_uses_the_deals_only_proforma(db_session, config, factory):
    factory.make_deal(db_session)
    proforma = factory.make_proforma(db_session)
    payment = _ingest(
        db_session, config, {"kind": "gateway", "event": factory.checkout_completed(amount_total=50000)}
    )

    outcome = match_payment(db_session, payment, config=config)

    assert outcome.reason == "deal_prelink"
    assert payment.linked_proforma_id == proforma.id
    assert proforma.payments_total == Decimal("500.00")


def test_gateway_payment_for_deal_without_proforma_stays_on_the_deal(db_session, config, factory):
    factory.make_deal(db_session)
    payment = _ingest(db_session, config, {"kind": "gateway", "event": factory.checkout_completed()})

    outcome = match_payment(db_session, payment, config=config)

    assert outcome.status == "unmatched"
    assert outcome.reason == "deal_without_proforma"
    assert payment.linked_deal_id == 100
    assert payment.linked_proforma_id is None


def test_fuzzy_match_links_clear_winner(db_session, config, factory):
    winner = factory.make_proforma(db_session, "CO-PROF 1/2025")
    factory.make_proforma(
        db_session,
        "CO-PROF 2/2025",
        deal_id=101,
        buyer_name="Zofia Wisniewska",
        buyer_normalized_name="zofia wisniewska",
        total="4000.00",
    )
    payment = _ingest(db_session, config, factory.bank_row(description="oplata za oboz"))

    outcome = match_payment(db_session, payment, config=config)

    assert outcome.status == "linked"
    assert outcome.reason == "fuzzy"
    assert outcome.proforma_id == winner.id
    assert payment.match_confidence == pytest.approx(1.0)
    assert payment.match_metadata["candidates"][0]["proforma_id"] == winner.id


def test_fuzzy_below_threshold_leaves_payment_unmatched(db_session, config, factory):
    factory.make_proforma(db_session)
    payment = _ingest(db_session, config, factory.bank_row(amount="700.00", description="wplata"))

    outcome = match_payment(db_session, payment, config=config)

    assert outcome.status == "unmatched"
    assert outcome.reason == "below_threshold"
    assert payment.linked_proforma_id is None
    assert payment.match_metadata["candidates"]


def test_exact_tie_raises_ambiguity_with_candidates(db_session, config, factory):
    first = factory.make_proforma(db_session, "CO-PROF 1/2025")
    second = factory.make_proforma(db_session, "CO-PROF 2/2025", deal_id=101)
    payment = _ingest(db_session, config, factory.bank_row(description="oplata"))

    with pytest.raises(MatchAmbiguousError) as exc:
        match_payment(db_session, payment, config=config)

    assert sorted(exc.value.candidate_ids) == sorted([first.id, second.id])
    assert payment.linked_proforma_id is None
    assert payment.match_metadata["ambiguous"] is True


def test_flagged_duplicate_is_not_matched(db_session, config, factory):
    factory.make_proforma(db_session)
    payment = _ingest(db_session, config, factory.bank_row())
    payment.review_status = models.ReviewStatus.duplicate_review

    assert match_payment(db_session, payment, config=config).status == "skipped"


def test_approve_reject_and_clear(db_session, config, factory):
    proforma = factory.make_proforma(db_session)
    payment = _ingest(db_session, config, factory.bank_row())
    match_payment(db_session, payment, config=config)

    reject_payment(db_session, payment.id, actor="ops", reason="wrong buyer", config=config)
    assert payment.match_status == models.MatchStatus.rejected
    assert proforma.payments_total == Decimal("0.00")
    assert match_payment(db_session, payment, config=config).status == "kept"

    clear_payment(db_session, payment.id, actor="ops", config=config)
    assert payment.match_status == models.MatchStatus.unmatched
    assert payment.linked_proforma_id is None

    with pytest.raises(InvalidTransitionError):
        approve_payment(db_session, payment.id, actor="ops", config=config)

    match_payment(db_session, payment, config=config)
    approve_payment(db_session, payment.id, actor="ops", config=config)
    assert payment.match_status == models.MatchStatus.approved
    assert proforma.payments_total == Decimal("1000.00")


def test_assign_moves_payment_between_proformas(db_session, config, factory):
    old = factory.make_proforma(db_session, "CO-PROF 1/2025")
    new = factory.make_proforma(db_session, "CO-PROF 2/2025", deal_id=101)
    payment = _ingest(db_session, config, factory.bank_row(description="CO-PROF 1/2025"))
    match_payment(db_session, payment, config=config)
    assert old.payments_total == Decimal("1000.00")

    assign_payment(db_session, payment.id, proforma_fullnumber="CO-PROF 2/2025", actor="ops", config=config)

    assert payment.match_status == models.MatchStatus.approved
    assert payment.linked_proforma_id == new.id
    assert payment.manual_proforma_id == new.id
    assert payment.linked_deal_id == 101
    assert old.payments_total == Decimal("0.00")
    assert new.payments_total == Decimal("1000.00")

    with pytest.raises(InvalidTransitionError):
        assign_payment(db_session, payment.id, proforma_id=old.id, actor="ops", config=config)
    with pytest.raises(NotFoundError):
        assign_payment(db_session, 9999, proforma_id=old.id, actor="ops", config=config)


def test_delete_drops_payment_from_aggregates(db_session, config, factory):
    proforma = factory.make_proforma(db_session)
    payment = _ingest(db_session, config, factory.bank_row())
    match_payment(db_session, payment, config=config)

    delete_payment(db_session, payment.id, actor="ops", reason="bank error", config=config)

    assert payment.deleted_at is not None
    assert proforma.payments_total == Decimal("0.00")
    assert proforma.payments_count == 0
    with pytest.raises(NotFoundError):
        delete_payment(db_session, payment.id, actor="ops", config=config)


def test_candidates_are_issued_at_most_a_week_after_the_payment(db_session, config, factory):
    paid_on = date(2025, 6, 1)

    def issued(number, days):
        return factory.make_proforma(db_session, number, deal_id=None, issued_at=paid_on + timedelta(days=days))

    earlier = issued("CO-PROF 1/2025", -300)
    issued("CO-PROF 2/2025", 30)
    within = issued("CO-PROF 3/2025", 7)
    issued("CO-PROF 4/2024", -400)
    payment = _ingest(
        db_session, config, factory.bank_row(description="oplata", operation_date=paid_on.isoformat())
    )

    candidates = score_candidates(db_session, payment, config=config)

    assert sorted(c.proforma_id for c in candidates) == [earlier.id, within.id]
