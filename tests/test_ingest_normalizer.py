from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from settlement_engine import models
from settlement_engine.schemas.ingest import decode_gateway_event, decode_ingest_record
from settlement_engine.services.errors import ValidationError
from settlement_engine.services.ingest_normalizer import (
    extract_proforma_number,
    normalize_name,
    normalize_record,
)
from settlement_engine.services.money import parse_amount


class _BrokenFX:
    def get_rate(self, from_currency, to_currency, as_of):
        raise TimeoutError("fx feed timed out")


def _normalize(payload, config, fx=None):
    return normalize_record(decode_ingest_record(payload), config=config, fx=fx)


def test_parse_amount_handles_bank_formats():
    assert parse_amount("1 234,56") == (Decimal("1234.56"), None)
    assert parse_amount("-1.234,56") == (Decimal("-1234.56"), None)
    assert parse_amount("1,234.56") == (Decimal("1234.56"), None)
    assert parse_amount("250.00 EUR") == (Decimal("250.00"), "EUR")
    assert parse_amount("99,90 zł") == (Decimal("99.90"), "PLN")
    assert parse_amount("1,500") == (Decimal("1500"), None)
    assert parse_amount("0,500") == (Decimal("0.500"), None)
    assert parse_amount("-0,5") == (Decimal("-0.5"), None)
    with pytest.raises(ValueError):
        parse_amount("abc")


def test_extract_proforma_number_variants():
    assert extract_proforma_number("Zaplata CO-PROF 12/2025 dziekuje") == "CO-PROF 12/2025"
    assert extract_proforma_number("co prof 7 / 2024") == "CO-PROF 7/2024"
    assert extract_proforma_number("CO PROF-3/2025") == "CO-PROF 3/2025"
    assert extract_proforma_number("faktura 12/2025") is None


def test_normalize_name_folds_accents_and_punctuation():
    assert normalize_name("  Łukasz  Żółć-Sp. z o.o. ") == "lukasz zolc sp z o o"
    assert normalize_name("") is None


def test_bank_row_normalized_into_canonical_payment(config, factory):
    payment = _normalize(
        factory.bank_row(
            "OP-77",
            amount="1 234,56",
            operation_date="05.03.2025",
            description="Przelew co prof 12/2025",
        ),
        config,
    )
    assert payment.source == models.PaymentSource.bank
    assert payment.external_ref == "OP-77"
    assert payment.operation_date == date(2025, 3, 5)
    assert payment.amount == Decimal("1234.56")
    assert payment.amount_base == Decimal("1234.56")
    assert payment.direction == models.PaymentDirection.incoming
    assert payment.normalized_counterparty == "jan kowalski"
    assert payment.proforma_number_hint == "CO-PROF 12/2025"
    assert payment.linked_proforma_id is None
    assert payment.match_status == models.MatchStatus.unmatched


def test_negative_bank_amount_is_an_outgoing_refund(config, factory):
    payment = _normalize(factory.bank_row(amount="-200,00"), config)
    assert payment.direction == models.PaymentDirection.outgoing
    assert payment.amount == Decimal("200.00")


@pytest.mark.parametrize(
    "overrides, field_name",
    [
        ({"operation_date": None}, "operation_date"),
        ({"operation_date": "not a date"}, "operation_date"),
        ({"amount": ""}, "amount"),
        ({"amount": "0,00"}, "amount"),
        ({"currency": None}, "currency"),
    ],
)
def test_bank_row_missing_fields_are_rejected_not_zeroed(config, factory, overrides, field_name):
    row = factory.bank_row()
    row.update(overrides)
    with pytest.raises(ValidationError) as exc:
        _normalize(row, config)
    assert exc.value.field_name == field_name


def test_foreign_currency_gets_base_amount_from_fx(config, factory):
    fx = factory.FakeFX({("EUR", "PLN"): "4.30"})
    payment = _normalize(factory.bank_row(amount="100,00", currency="EUR"), config, fx=fx)
    assert payment.currency == "EUR"
    assert payment.amount_base == Decimal("430.00")


def test_fx_outage_leaves_base_amount_unknown(config, factory):
    payment = _normalize(factory.bank_row(amount="100,00", currency="EUR"), config, fx=_BrokenFX())
    assert payment is not None
    assert payment.amount_base is None


def test_checkout_completed_becomes_gateway_payment(config, factory):
    event = factory.checkout_completed(amount_total=123456, proforma_fullnumber="CO-PROF 12/2025")
    payment = _normalize({"kind": "gateway", "event": event}, config)
    assert payment.source == models.PaymentSource.gateway
    assert payment.external_ref == "cs_1"
    assert payment.amount == Decimal("1234.56")
    assert payment.currency == "PLN"
    assert payment.linked_deal_id == 100
    assert payment.proforma_number_hint == "CO-PROF 12/2025"
    assert payment.match_metadata == {"payment_type": "single"}


def test_unpaid_checkout_and_failed_events_move_no_money(config, factory):
    unpaid = factory.checkout_completed(payment_status="unpaid")
    assert _normalize({"kind": "gateway", "event": unpaid}, config) is None

    expired = factory.checkout_completed()
    expired["type"] = "checkout.session.expired"
    assert _normalize({"kind": "gateway", "event": expired}, config) is None


def test_async_success_counts_even_without_paid_status(config, factory):
    event = factory.checkout_completed(payment_status="unpaid")
    event["type"] = "checkout.session.async_payment_succeeded"
    payment = _normalize({"kind": "gateway", "event": event}, config)
    assert payment is not None
    assert payment.amount == Decimal("1000.00")


def test_charge_refunded_is_outgoing_keyed_by_cumulative_amount(config):
    event = {
        "id": "evt_refund_1",
        "type": "charge.refunded",
        "created": 1735732800,
        "data": {
            "object": {
                "id": "ch_1",
                "amount_refunded": 5000,
                "currency": "pln",
                "payment_intent": "pi_1",
                "metadata": {"deal_id": 100},
            }
        },
    }
    payment = _normalize({"kind": "gateway", "event": event}, config)
    assert payment.direction == models.PaymentDirection.outgoing
    assert payment.external_ref == "ch_1:refunded:5000"
    assert payment.match_metadata == {"charge_id": "ch_1", "refunded_total": "50.00"}
    assert payment.amount == Decimal("50.00")
    assert payment.operation_date == date(2025, 1, 1)


def test_unknown_gateway_event_type_is_rejected():
    with pytest.raises(ValidationError):
        decode_gateway_event({"id": "evt", "type": "invoice.paid", "data": {"object": {}}})


def test_unknown_record_kind_is_rejected():
    with pytest.raises(ValidationError):
        decode_ingest_record({"kind": "cheque", "amount": "10"})


def test_cash_confirmation_requires_amount(config):
    with pytest.raises(ValidationError):
        _normalize(
            {"kind": "cash", "confirmation_id": "c-1", "currency": "PLN", "confirmed_at": "2025-01-02T10:00:00Z"},
            config,
        )
