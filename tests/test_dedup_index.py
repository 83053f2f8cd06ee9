from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from settlement_engine import models
from settlement_engine.schemas.ingest import decode_ingest_record
from settlement_engine.services.dedup_index import (
    compute_fingerprint,
    has_transient_phrase,
    register_payment,
    resolve_duplicate_review,
)
from settlement_engine.services.errors import DuplicateError, InvalidTransitionError
from settlement_engine.services.ingest_normalizer import normalize_record

D0 = date(2025, 3, 10)


def _payment(config, row):
    return normalize_record(decode_ingest_record(row), config=config)


def _row(factory, operation_id, *, day=D0, description="CO-PROF 12/2025 oplata", **kw):
    return factory.bank_row(
        operation_id, operation_date=day.isoformat(), description=description, **kw
    )


def _live_payments(db):
    return db.query(models.Payment).filter(models.Payment.deleted_at.is_(None)).all()


def test_fingerprint_ignores_transient_markers_but_not_direction(config):
    kwargs = dict(
        operation_date=D0,
        amount=Decimal("1000.00"),
        currency="PLN",
        phrases=config.transient_phrases,
    )
    transient = compute_fingerprint(
        direction=models.PaymentDirection.incoming,
        description="Blokada środków CO-PROF 12/2025 oplata",
        **kwargs,
    )
    final = compute_fingerprint(
        direction=models.PaymentDirection.incoming,
        description="CO-PROF 12/2025 oplata",
        **kwargs,
    )
    outgoing = compute_fingerprint(
        direction=models.PaymentDirection.outgoing,
        description="CO-PROF 12/2025 oplata",
        **kwargs,
    )
    assert transient == final
    assert outgoing != final
    assert len(final) == 64


def test_transient_phrase_detection(config):
    assert has_transient_phrase("Transakcja nierozliczona 123", config.transient_phrases)
    assert has_transient_phrase("BLOKADA ŚRODKÓW", config.transient_phrases)
    assert not has_transient_phrase("CO-PROF 12/2025 oplata", config.transient_phrases)


def test_same_source_reference_is_tier0_duplicate(db_session, config, factory):
    first = register_payment(db_session, _payment(config, _row(factory, "OP-1")), config=config)
    assert first.outcome == "new"

    again = _payment(config, _row(factory, "OP-1", description="different text"))
    with pytest.raises(DuplicateError) as exc:
        register_payment(db_session, again, config=config)
    assert exc.value.tier == 0
    assert exc.value.existing_payment_id == first.payment.id
    assert exc.value.merged is False
    assert len(_live_payments(db_session)) == 1


def test_same_fingerprint_without_reference_is_tier1_duplicate(db_session, config, factory):
    register_payment(db_session, _payment(config, _row(factory, None)), config=config)
    with pytest.raises(DuplicateError) as exc:
        register_payment(db_session, _payment(config, _row(factory, None)), config=config)
    assert exc.value.tier == 1
    assert len(_live_payments(db_session)) == 1


def test_final_version_replaces_transient_version(db_session, config, factory):
    transient = register_payment(
        db_session,
        _payment(
            config,
            _row(factory, "OP-T", description="Blokada srodkow CO-PROF 12/2025 oplata"),
        ),
        config=config,
    ).payment

    final_day = D0 + timedelta(days=1)
    with pytest.raises(DuplicateError) as exc:
        register_payment(
            db_session,
            _payment(config, _row(factory, "OP-F", day=final_day)),
            config=config,
        )
    assert exc.value.tier == 2
    assert exc.value.merged is True
    assert exc.value.existing_payment_id == transient.id

    live = _live_payments(db_session)
    assert len(live) == 1
    assert live[0].description == "CO-PROF 12/2025 oplata"
    assert live[0].external_ref == "OP-F"
    assert live[0].operation_date == final_day

    actions = [a.action for a in db_session.query(models.AuditLog).all()]
    assert "payment.dedup_merged" in actions


def test_transient_arriving_after_final_is_dropped(db_session, config, factory):
    final = register_payment(db_session, _payment(config, _row(factory, "OP-F")), config=config)
    with pytest.raises(DuplicateError) as exc:
        register_payment(
            db_session,
            _payment(
                config,
                _row(
                    factory,
                    "OP-T",
                    day=D0 - timedelta(days=1),
                    description="Pending CO-PROF 12/2025 oplata",
                ),
            ),
            config=config,
        )
    assert exc.value.merged is False
    assert exc.value.existing_payment_id == final.payment.id
    assert _live_payments(db_session)[0].description == "CO-PROF 12/2025 oplata"


def test_unresolvable_probable_duplicate_is_flagged_for_review(db_session, config, factory):
    first = register_payment(db_session, _payment(config, _row(factory, "OP-1")), config=config)
    result = register_payment(
        db_session,
        _payment(config, _row(factory, "OP-2", day=D0 + timedelta(days=2))),
        config=config,
    )
    assert result.outcome == "review"
    assert result.duplicate_of_id == first.payment.id
    assert result.payment.review_status == models.ReviewStatus.duplicate_review
    assert result.payment.match_metadata["duplicate_similarity"] == 1.0


def test_outside_date_window_or_other_counterparty_is_new(db_session, config, factory):
    register_payment(db_session, _payment(config, _row(factory, "OP-1")), config=config)
    far = register_payment(
        db_session,
        _payment(config, _row(factory, "OP-2", day=D0 + timedelta(days=10))),
        config=config,
    )
    other = register_payment(
        db_session,
        _payment(
            config,
            _row(factory, "OP-3", day=D0 + timedelta(days=1), counterparty="Anna Nowak"),
        ),
        config=config,
    )
    assert far.outcome == "new"
    assert other.outcome == "new"
    assert len(_live_payments(db_session)) == 3


def test_resolve_duplicate_review_keep_and_discard(db_session, config, factory):
    register_payment(db_session, _payment(config, _row(factory, "OP-1")), config=config)
    kept = register_payment(
        db_session, _payment(config, _row(factory, "OP-2", day=D0 + timedelta(days=1))), config=config
    ).payment
    discarded = register_payment(
        db_session, _payment(config, _row(factory, "OP-3", day=D0 + timedelta(days=2))), config=config
    ).payment

    resolve_duplicate_review(db_session, kept.id, action="keep", actor="ops")
    assert kept.review_status == models.ReviewStatus.none
    assert kept.duplicate_of_id is None

    resolve_duplicate_review(db_session, discarded.id, action="discard", actor="ops")
    assert discarded.deleted_at is not None
    assert len(_live_payments(db_session)) == 2

    with pytest.raises(InvalidTransitionError):
        resolve_duplicate_review(db_session, kept.id, action="keep")


def _charge_refunded(event_id, refunded_minor, *, created=1741600000):
    return {
        "kind": "gateway",
        "event": {
            "id": event_id,
            "type": "charge.refunded",
            "created": created,
            "data": {
                "object": {
                    "id": "ch_7",
                    "amount_refunded": refunded_minor,
                    "currency": "pln",
                    "payment_intent": "pi_7",
                    "customer_name": "Jan Kowalski",
                    "metadata": {"deal_id": 100},
                }
            },
        },
    }


def test_partial_refunds_of_one_charge_book_only_the_new_part(db_session, config):
    first = register_payment(db_session, _payment(config, _charge_refunded("evt_r1", 30000)), config=config)
    second = register_payment(db_session, _payment(config, _charge_refunded("evt_r2", 50000)), config=config)

    assert first.payment.amount == Decimal("300.00")
    assert second.payment.amount == Decimal("200.00")
    assert second.payment.amount_base == Decimal("200.00")
    assert second.payment.match_metadata["refunded_before"] == "300.00"
    refunded = sum(p.amount for p in _live_payments(db_session))
    assert refunded == Decimal("500.00")


def test_refund_redelivery_and_late_older_event_book_nothing(db_session, config):
    newest = register_payment(db_session, _payment(config, _charge_refunded("evt_r2", 50000)), config=config)

    with pytest.raises(DuplicateError) as redelivered:
        register_payment(db_session, _payment(config, _charge_refunded("evt_r2", 50000)), config=config)
    with pytest.raises(DuplicateError) as late:
        register_payment(db_session, _payment(config, _charge_refunded("evt_r1", 30000)), config=config)

    assert redelivered.value.existing_payment_id == newest.payment.id
    assert late.value.existing_payment_id == newest.payment.id
    assert [p.amount for p in _live_payments(db_session)] == [Decimal("500.00")]


def test_final_version_brings_a_proforma_number_the_transient_lacked(db_session, config, factory):
    transient = register_payment(
        db_session,
        _payment(config, _row(factory, "OP-T", description="Blokada srodkow COPROF12 2025 oplata oboz")),
        config=config,
    ).payment
    assert transient.proforma_number_hint is None

    with pytest.raises(DuplicateError) as exc:
        register_payment(
            db_session,
            _payment(config, _row(factory, "OP-F", description="CO-PROF 12/2025 oplata oboz")),
            config=config,
        )

    assert exc.value.merged is True
    assert transient.proforma_number_hint == "CO-PROF 12/2025"
