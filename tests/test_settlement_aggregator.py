from __future__ import annotations

from decimal import Decimal

import pytest

from settlement_engine import models
from settlement_engine.schemas.ingest import decode_ingest_record
from settlement_engine.services.dedup_index import register_payment
from settlement_engine.services.ingest_normalizer import normalize_record
from settlement_engine.services.matching_engine import assign_payment, match_payment
from settlement_engine.services.settlement_aggregator import (
    aggregate_writer,
    apply_aggregate_correction,
    recompute_proforma_aggregates,
    verify_proforma_aggregates,
)


def _linked(db, config, row, fx=None):
    payment = normalize_record(decode_ingest_record(row), config=config, fx=fx)
    payment = register_payment(db, payment, config=config).payment
    match_payment(db, payment, config=config)
    return payment


def _recompute_audits(db):
    return (
        db.query(models.AuditLog)
        .filter(models.AuditLog.action == "proforma.aggregates_recomputed")
        .count()
    )


def test_refunds_subtract_from_totals(db_session, config, factory):
    proforma = factory.make_proforma(db_session)
    _linked(db_session, config, factory.bank_row("OP-1"))
    _linked(db_session, config, factory.bank_row("OP-2", amount="-200.00", description="zwrot CO-PROF 12/2025"))

    assert proforma.payments_total == Decimal("800.00")
    assert proforma.payments_total_base == Decimal("800.00")
    assert proforma.payments_count == 2


def test_recompute_is_idempotent_and_silent_when_unchanged(db_session, config, factory):
    proforma = factory.make_proforma(db_session)
    _linked(db_session, config, factory.bank_row())
    audits = _recompute_audits(db_session)

    first = recompute_proforma_aggregates(db_session, proforma.id, base_currency="PLN")
    second = recompute_proforma_aggregates(db_session, proforma.id, base_currency="PLN")

    assert first == second
    assert first.payments_total == Decimal("1000.00")
    assert _recompute_audits(db_session) == audits


def test_foreign_currency_payment_uses_its_own_base_amount(db_session, config, factory):
    proforma = factory.make_proforma(db_session, total="250.00", currency="EUR", exchange_rate="4.25")
    fx = factory.FakeFX({("EUR", "PLN"): "4.30"})
    _linked(db_session, config, factory.bank_row(amount="100,00", currency="EUR"), fx=fx)

    assert proforma.payments_total == Decimal("100.00")
    assert proforma.payments_total_base == Decimal("430.00")


def test_proforma_rate_is_the_fallback_without_market_rate(db_session, config, factory):
    proforma = factory.make_proforma(db_session, total="250.00", currency="EUR", exchange_rate="4.25")
    _linked(db_session, config, factory.bank_row(amount="100,00", currency="EUR"))

    assert proforma.payments_total_base == Decimal("425.00")


def test_unconvertible_payment_is_reported_not_guessed(db_session, config, factory):
    proforma = factory.make_proforma(db_session)
    payment = normalize_record(
        decode_ingest_record(factory.bank_row(amount="100.00", currency="USD", description="przelew")),
        config=config,
    )
    payment = register_payment(db_session, payment, config=config).payment
    assign_payment(db_session, payment.id, proforma_id=proforma.id, actor="ops", config=config)

    result = recompute_proforma_aggregates(db_session, proforma.id, base_currency="PLN")

    assert result.payments_count == 1
    assert result.payments_total_base == Decimal("0.00")
    assert [w.kind for w in result.warnings] == ["missing_fx_rate"]
    assert result.warnings[0].entity_id == payment.id


def test_aggregates_cannot_be_written_outside_the_aggregator(db_session, factory):
    proforma = factory.make_proforma(db_session)
    proforma.payments_total = Decimal("5.00")

    with pytest.raises(RuntimeError):
        db_session.flush()
    db_session.rollback()


def test_mismatch_is_reported_then_corrected_explicitly(db_session, config, factory):
    proforma = factory.make_proforma(db_session)
    _linked(db_session, config, factory.bank_row())
    with aggregate_writer(db_session):
        proforma.payments_total = Decimal("1.00")

    warning = verify_proforma_aggregates(db_session, proforma, base_currency="PLN")
    assert warning is not None
    assert warning.kind == "aggregate_mismatch"
    assert warning.details["stored"]["payments_total"] == "1.00"
    assert proforma.payments_total == Decimal("1.00")

    apply_aggregate_correction(db_session, proforma.id, base_currency="PLN", actor="ops")

    assert proforma.payments_total == Decimal("1000.00")
    assert verify_proforma_aggregates(db_session, proforma, base_currency="PLN") is None
    last = (
        db_session.query(models.AuditLog)
        .filter(models.AuditLog.action == "proforma.aggregates_recomputed")
        .order_by(models.AuditLog.id.desc())
        .first()
    )
    assert last.actor == "ops"
    assert '"reason": "operator_correction"' in last.payload_json
