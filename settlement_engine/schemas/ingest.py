from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from settlement_engine.services.errors import ValidationError


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class BankTransactionRow(_Lenient):
    """One row of a parsed bank statement. Values are kept raw; the normalizer parses them."""

    kind: Literal["bank"] = "bank"
    operation_id: Optional[str] = None
    operation_date: Optional[Union[date, str]] = None
    amount: Optional[Union[Decimal, str]] = None
    currency: Optional[str] = None
    counterparty: Optional[str] = None
    description: Optional[str] = None
    account: Optional[str] = None
    currency_hint: Optional[str] = None


class GatewayMetadata(_Lenient):
    deal_id: Optional[int] = None
    proforma_fullnumber: Optional[str] = None
    payment_type: Optional[str] = None  # deposit | rest | single


class GatewayCheckoutSession(_Lenient):
    id: str
    payment_status: Optional[str] = None  # paid | unpaid | no_payment_required
    amount_total: Optional[int] = None  # minor units
    currency: Optional[str] = None
    created: Optional[int] = None  # unix seconds
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: GatewayMetadata = Field(default_factory=GatewayMetadata)


class GatewayCharge(_Lenient):
    id: str
    amount_refunded: Optional[int] = None  # minor units
    currency: Optional[str] = None
    created: Optional[int] = None
    payment_intent: Optional[str] = None
    customer_name: Optional[str] = None
    metadata: GatewayMetadata = Field(default_factory=GatewayMetadata)


class _SessionData(_Lenient):
    object: GatewayCheckoutSession


class _ChargeData(_Lenient):
    object: GatewayCharge


class CheckoutSessionCompleted(_Lenient):
    id: str
    type: Literal["checkout.session.completed"]
    created: Optional[int] = None
    data: _SessionData


class CheckoutSessionAsyncPaymentSucceeded(_Lenient):
    id: str
    type: Literal["checkout.session.async_payment_succeeded"]
    created: Optional[int] = None
    data: _SessionData


class CheckoutSessionAsyncPaymentFailed(_Lenient):
    id: str
    type: Literal["checkout.session.async_payment_failed"]
    created: Optional[int] = None
    data: _SessionData


class CheckoutSessionExpired(_Lenient):
    id: str
    type: Literal["checkout.session.expired"]
    created: Optional[int] = None
    data: _SessionData


class ChargeRefunded(_Lenient):
    id: str
    type: Literal["charge.refunded"]
    created: Optional[int] = None
    data: _ChargeData


GatewayEvent = Annotated[
    Union[
        CheckoutSessionCompleted,
        CheckoutSessionAsyncPaymentSucceeded,
        CheckoutSessionAsyncPaymentFailed,
        CheckoutSessionExpired,
        ChargeRefunded,
    ],
    Field(discriminator="type"),
]


class GatewayRecord(_Lenient):
    kind: Literal["gateway"] = "gateway"
    event: GatewayEvent
    currency_hint: Optional[str] = None


class CashConfirmation(_Lenient):
    kind: Literal["cash"] = "cash"
    confirmation_id: str
    cash_payment_id: Optional[int] = None
    deal_id: Optional[int] = None
    proforma_id: Optional[int] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    currency_hint: Optional[str] = None


IngestRecord = Annotated[
    Union[BankTransactionRow, GatewayRecord, CashConfirmation],
    Field(discriminator="kind"),
]

_gateway_event_adapter: TypeAdapter[Any] = TypeAdapter(GatewayEvent)
_ingest_record_adapter: TypeAdapter[Any] = TypeAdapter(IngestRecord)


def _summarize(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors()[:3]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def decode_gateway_event(payload: dict[str, Any]):
    """Decode an already signature-verified gateway payload into its typed event."""
    try:
        return _gateway_event_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Unsupported gateway event: {_summarize(exc)}") from exc


def decode_ingest_record(payload: dict[str, Any]):
    try:
        return _ingest_record_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid ingest record: {_summarize(exc)}") from exc
