from __future__ import annotations

import logging
import re
import unicodedata
from datetime import date, datetime, timezone
from decimal import Decimal

from dateutil import parser as date_parser

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.schemas.ingest import (
    BankTransactionRow,
    CashConfirmation,
    ChargeRefunded,
    CheckoutSessionAsyncPaymentFailed,
    CheckoutSessionAsyncPaymentSucceeded,
    CheckoutSessionCompleted,
    CheckoutSessionExpired,
    GatewayRecord,
)
from settlement_engine.services.collaborators import (
    FXRateCollaborator,
    RetryPolicy,
    call_with_retry,
)
from settlement_engine.services.errors import ExternalServiceError, ValidationError
from settlement_engine.services.money import parse_amount, round_money

logger = logging.getLogger("settlement.ingest")

PROFORMA_NUMBER_RE = re.compile(r"CO\s*-?\s*PROF\s*-?\s*(\d{1,6})\s*[/\-]\s*(\d{4})", re.IGNORECASE)

# Letters NFKD does not decompose.
_FOLD_EXTRA = str.maketrans({"ł": "l", "Ł": "L", "ø": "o", "Ø": "O", "ß": "ss", "đ": "d", "Đ": "D"})
_NON_WORD_RE = re.compile(r"[^\w\s]+", re.UNICODE)
_SPACES_RE = re.compile(r"\s+")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def fold_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value.translate(_FOLD_EXTRA))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(value: str | None) -> str | None:
    """Lowercase, accent-folded, punctuation-free, whitespace-collapsed."""
    if not value:
        return None
    s = fold_accents(str(value)).lower()
    s = _NON_WORD_RE.sub(" ", s).replace("_", " ")
    s = _SPACES_RE.sub(" ", s).strip()
    return s or None


def extract_proforma_number(text: str | None) -> str | None:
    """Find a proforma number such as "CO-PROF 123/2025" (also "CO PROF-123/2025")."""
    if not text:
        return None
    m = PROFORMA_NUMBER_RE.search(str(text))
    if not m:
        return None
    return f"CO-PROF {m.group(1)}/{m.group(2)}"


def refund_ref(charge_id: str, refunded_minor: int | None) -> str:
    """Source reference of a charge refund, keyed by the cumulative refunded amount."""
    return f"{charge_id}:refunded:{int(refunded_minor or 0)}"


def _parse_operation_date(raw) -> date:
    if raw is None or raw == "":
        raise ValidationError("operation_date is missing", field_name="operation_date")
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    s = str(raw).strip()
    try:
        # Bank exports use day-first dates unless the value is ISO formatted.
        return date_parser.parse(s, dayfirst=not _ISO_DATE_RE.match(s)).date()
    except (ValueError, OverflowError) as exc:
        raise ValidationError(
            f"operation_date is not a date: {raw!r}", field_name="operation_date"
        ) from exc


def _resolve_currency(*candidates: str | None) -> str:
    for c in candidates:
        s = str(c or "").strip().upper()
        if s:
            if not re.fullmatch(r"[A-Z]{3}", s):
                raise ValidationError(f"currency is not an ISO code: {c!r}", field_name="currency")
            return s
    raise ValidationError("currency is missing", field_name="currency")


def _from_unix(ts: int | None) -> date | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).date()


def _minor_to_major(value: int | None, field_name: str) -> Decimal:
    if value is None:
        raise ValidationError(f"{field_name} is missing", field_name=field_name)
    return round_money(Decimal(int(value)) / Decimal(100))


def _normalize_bank_row(row: BankTransactionRow) -> models.Payment:
    operation_date = _parse_operation_date(row.operation_date)
    if row.amount is None or str(row.amount).strip() == "":
        raise ValidationError("amount is missing", field_name="amount")
    try:
        signed, embedded_currency = parse_amount(row.amount)
    except ValueError as exc:
        raise ValidationError(str(exc), field_name="amount") from exc
    if signed == 0:
        raise ValidationError("amount is zero", field_name="amount")

    currency = _resolve_currency(row.currency, embedded_currency, row.currency_hint)
    direction = (
        models.PaymentDirection.outgoing if signed < 0 else models.PaymentDirection.incoming
    )

    return models.Payment(
        source=models.PaymentSource.bank,
        external_ref=(str(row.operation_id).strip() or None) if row.operation_id else None,
        operation_date=operation_date,
        amount=round_money(abs(signed)),
        currency=currency,
        counterparty_name=row.counterparty,
        normalized_counterparty=normalize_name(row.counterparty),
        description=row.description,
        direction=direction,
        proforma_number_hint=extract_proforma_number(row.description),
        match_status=models.MatchStatus.unmatched,
        review_status=models.ReviewStatus.none,
    )


def _normalize_gateway_event(record: GatewayRecord) -> models.Payment | None:
    event = record.event

    if isinstance(event, (CheckoutSessionAsyncPaymentFailed, CheckoutSessionExpired)):
        return None

    if isinstance(event, ChargeRefunded):
        charge = event.data.object
        # amount_refunded is cumulative for the charge; the dedup index books only the new part.
        amount = _minor_to_major(charge.amount_refunded, "amount_refunded")
        if amount == 0:
            return None
        op_date = _from_unix(event.created) or _from_unix(charge.created)
        if op_date is None:
            raise ValidationError("refund has no date", field_name="operation_date")
        return models.Payment(
            source=models.PaymentSource.gateway,
            external_ref=refund_ref(charge.id, charge.amount_refunded),
            operation_date=op_date,
            amount=amount,
            currency=_resolve_currency(charge.currency, record.currency_hint),
            counterparty_name=charge.customer_name,
            normalized_counterparty=normalize_name(charge.customer_name),
            description=f"refund total {amount} of {charge.payment_intent or charge.id}",
            direction=models.PaymentDirection.outgoing,
            linked_deal_id=charge.metadata.deal_id,
            proforma_number_hint=extract_proforma_number(charge.metadata.proforma_fullnumber),
            match_metadata={"charge_id": charge.id, "refunded_total": str(amount)},
            match_status=models.MatchStatus.unmatched,
            review_status=models.ReviewStatus.none,
        )

    if not isinstance(event, (CheckoutSessionCompleted, CheckoutSessionAsyncPaymentSucceeded)):
        raise ValidationError(f"Unsupported gateway event: {event.type}")
    session = event.data.object
    paid = session.payment_status == "paid" or isinstance(
        event, CheckoutSessionAsyncPaymentSucceeded
    )
    if not paid:
        # Completed but still awaiting an async method; the success event carries the money.
        return None

    amount = _minor_to_major(session.amount_total, "amount_total")
    op_date = _from_unix(session.created) or _from_unix(event.created)
    if op_date is None:
        raise ValidationError("checkout session has no date", field_name="operation_date")

    return models.Payment(
        source=models.PaymentSource.gateway,
        external_ref=session.id,
        operation_date=op_date,
        amount=amount,
        currency=_resolve_currency(session.currency, record.currency_hint),
        counterparty_name=session.customer_name or session.customer_email,
        normalized_counterparty=normalize_name(session.customer_name),
        description=f"checkout {session.id}",
        direction=models.PaymentDirection.incoming,
        linked_deal_id=session.metadata.deal_id,
        proforma_number_hint=extract_proforma_number(session.metadata.proforma_fullnumber),
        match_metadata=(
            {"payment_type": session.metadata.payment_type}
            if session.metadata.payment_type
            else None
        ),
        match_status=models.MatchStatus.unmatched,
        review_status=models.ReviewStatus.none,
    )


def _normalize_cash_confirmation(conf: CashConfirmation) -> models.Payment:
    if conf.amount is None:
        raise ValidationError("amount is missing", field_name="amount")
    if conf.amount <= 0:
        raise ValidationError("cash amount must be positive", field_name="amount")
    if conf.confirmed_at is None:
        raise ValidationError("confirmed_at is missing", field_name="operation_date")

    return models.Payment(
        source=models.PaymentSource.cash,
        external_ref=conf.confirmation_id,
        operation_date=conf.confirmed_at.date(),
        amount=round_money(conf.amount),
        currency=_resolve_currency(conf.currency, conf.currency_hint),
        counterparty_name=conf.confirmed_by,
        normalized_counterparty=None,
        description=f"cash confirmation {conf.confirmation_id}",
        direction=models.PaymentDirection.incoming,
        linked_deal_id=conf.deal_id,
        match_status=models.MatchStatus.unmatched,
        review_status=models.ReviewStatus.none,
    )


def fill_amount_base(
    payment: models.Payment,
    *,
    config: ReconciliationConfig,
    fx: FXRateCollaborator | None,
) -> None:
    if payment.currency == config.base_currency:
        payment.amount_base = round_money(payment.amount)
        return
    if fx is None:
        return
    try:
        rate = call_with_retry(
            fx.get_rate,
            payment.currency,
            config.base_currency,
            payment.operation_date,
            service="fx",
            policy=RetryPolicy.from_config(config),
        )
    except ExternalServiceError as exc:
        # Base amount stays unknown; the aggregator falls back to the proforma rate.
        logger.warning(
            "fx_rate_unavailable",
            extra={"currency": payment.currency, "date": str(payment.operation_date), "error": str(exc)},
        )
        return
    if rate is not None:
        payment.amount_base = round_money(Decimal(payment.amount) * Decimal(str(rate)))


def normalize_record(
    record,
    *,
    config: ReconciliationConfig,
    fx: FXRateCollaborator | None = None,
) -> models.Payment | None:
    """Turn one decoded record into a canonical, not yet persisted, unlinked Payment.

    Returns None for gateway events that do not move money. Raises
    ValidationError when the date, amount or currency cannot be determined.
    """
    if isinstance(record, BankTransactionRow):
        payment = _normalize_bank_row(record)
    elif isinstance(record, GatewayRecord):
        payment = _normalize_gateway_event(record)
    elif isinstance(record, CashConfirmation):
        payment = _normalize_cash_confirmation(record)
    else:
        raise ValidationError(f"Unsupported record type: {type(record).__name__}")

    if payment is None:
        return None

    fill_amount_base(payment, config=config, fx=fx)
    return payment
