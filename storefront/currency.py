from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.orm import Session

from . import crud
from .models import Currency


def parse_amount(amount: Any) -> Decimal:
    if amount is None or isinstance(amount, bool):
        raise ValueError("invalid_amount")
    if isinstance(amount, str):
        amount = amount.strip()
        if not amount:
            raise ValueError("invalid_amount")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError("invalid_amount")
    if not value.is_finite():
        raise ValueError("invalid_amount")
    return value


def round_amount(value: Decimal, decimal_places: int) -> Decimal:
    """Display rounding; never feed the result back into another conversion."""
    exponent = Decimal(1).scaleb(-int(decimal_places))
    return value.quantize(exponent, rounding=ROUND_HALF_UP)


def _lookup(db: Session, *codes: str) -> dict[str, Currency]:
    found = crud.get_currencies_by_codes(db, codes)
    for code in codes:
        currency = found.get(code)
        if currency is None or not currency.is_active or _rate(currency) is None:
            raise ValueError(f"unknown_currency:{code}")
    return found


def _rate(currency: Currency) -> Decimal | None:
    """Stored rate, or None when the row holds no usable (positive) rate."""
    if currency.is_base:
        return Decimal(1)
    try:
        rate = Decimal(str(currency.exchange_rate))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate <= 0:
        return None
    return rate


def convert_with_currencies(amount: Decimal, source: Currency, target: Currency) -> Decimal:
    amount_in_base = amount / _rate(source)
    return amount_in_base * _rate(target)


def convert(db: Session, amount: Any, from_code: str, to_code: str) -> Decimal:
    """Convert ``amount`` between two stored currencies, unrounded."""
    value = parse_amount(amount)
    from_code = (from_code or "").strip().upper()
    to_code = (to_code or "").strip().upper()
    currencies = _lookup(db, from_code, to_code)
    return convert_with_currencies(value, currencies[from_code], currencies[to_code])


def conversion_quote(db: Session, amount: Any, from_code: str, to_code: str) -> dict:
    value = parse_amount(amount)
    from_code = (from_code or "").strip().upper()
    to_code = (to_code or "").strip().upper()
    currencies = _lookup(db, from_code, to_code)
    source, target = currencies[from_code], currencies[to_code]

    converted = convert_with_currencies(value, source, target)
    return {
        "from": {"code": from_code, "amount": value},
        "to": {
            "code": to_code,
            "amount": round_amount(converted, target.decimal_places),
            "symbol": target.symbol,
        },
        "rate": _rate(target) / _rate(source),
    }
