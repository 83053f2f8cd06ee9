from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

_CURRENCY_IN_AMOUNT_RE = re.compile(r"([A-Za-z]{3}|zł|zl|€|\$)", re.IGNORECASE)
_CURRENCY_SYMBOLS = {"zł": "PLN", "zl": "PLN", "€": "EUR", "$": "USD"}


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize to cents with banker's rounding."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_EVEN)


def to_decimal(value) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_amount(raw) -> tuple[Decimal, str | None]:
    """Parse a bank-style amount string into (signed value, embedded currency).

    Handles "1 234,56", "-1.234,56", "250.00 EUR", "1,234.56" and plain numbers.
    Raises ValueError when nothing numeric can be extracted.
    """
    if isinstance(raw, (int, float, Decimal)):
        return Decimal(str(raw)), None

    s = str(raw or "").strip()
    if not s:
        raise ValueError("empty amount")

    currency = None
    m = _CURRENCY_IN_AMOUNT_RE.search(s)
    if m:
        token = m.group(1)
        currency = _CURRENCY_SYMBOLS.get(token.lower(), token.upper())
        s = (s[: m.start()] + s[m.end() :]).strip()

    s = s.replace("\u00a0", "").replace(" ", "").replace("'", "")
    negative = s.startswith("-") or (s.startswith("(") and s.endswith(")"))
    s = s.strip("()+-")

    if "," in s and "." in s:
        # Whichever separator comes last is the decimal separator.
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        head, _, tail = s.rpartition(",")
        # "1,500" groups thousands; "0,500" and "12,50" are decimal commas.
        grouped = len(tail) == 3 and bool(head) and not head.startswith("0")
        s = s.replace(",", "") if grouped else f"{head.replace(',', '')}.{tail}"

    if not re.fullmatch(r"\d+(\.\d+)?", s):
        raise ValueError(f"unparseable amount: {raw!r}")

    try:
        value = Decimal(s)
    except InvalidOperation as exc:
        raise ValueError(f"unparseable amount: {raw!r}") from exc

    return (-value if negative else value), currency


def convert_to_base(
    amount: Decimal,
    currency: str,
    base_currency: str,
    *,
    rate: Decimal | None = None,
    amount_base: Decimal | None = None,
) -> Decimal | None:
    """Convert an amount to the base currency; None when no rate is known."""
    if amount_base is not None:
        return round_money(amount_base)
    if str(currency or "").upper() == str(base_currency or "").upper():
        return round_money(amount)
    if rate is None:
        return None
    return round_money(Decimal(amount) * Decimal(rate))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
