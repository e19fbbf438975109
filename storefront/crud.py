import datetime as dt
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from . import config
from .models import Currency, Product, StockReservation


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# -----------------------------
# Reservations (checkout hold)
# -----------------------------

def _merge_items(items: Iterable[dict[str, Any]]) -> dict[int, int]:
    merged: dict[int, int] = {}
    for item in items:
        pid = int(item["product_id"])
        qty = int(item["quantity"])
        if qty <= 0:
            raise ValueError("quantity must be > 0")
        merged[pid] = merged.get(pid, 0) + qty
    return merged


def create_reservations(
    db: Session,
    *,
    order_id: int,
    items: list[dict[str, Any]],
    ttl_seconds: Optional[int] = None,
) -> dt.datetime:
    """Hold stock for an order until the returned expiry (UTC).

    items: [{"product_id": int, "quantity": int}, ...]
    Products that don't track inventory, or allow backorders, are not held.
    """
    if ttl_seconds is None or ttl_seconds <= 0:
        ttl_seconds = config.RESERVATION_TTL_SECONDS

    merged = _merge_items(items)
    expires_at = utcnow() + dt.timedelta(seconds=ttl_seconds)

    try:
        # Lock products in stable order to avoid deadlocks
        to_reserve: list[tuple[Product, int]] = []
        for pid in sorted(merged.keys()):
            qty = merged[pid]
            product = (
                db.query(Product)
                .filter(Product.id == pid)
                .with_for_update()
                .first()
            )
            if not product:
                raise ValueError(f"product_not_found:{pid}")
            if not product.track_inventory or product.allow_backorder:
                continue

            available = product.available_stock
            if available < qty:
                raise ValueError(f"insufficient_available_stock:{pid}:{available}:{qty}")
            to_reserve.append((product, qty))

        for product, qty in to_reserve:
            db.add(
                StockReservation(
                    order_id=order_id,
                    product_id=product.id,
                    quantity=qty,
                    expires_at=expires_at,
                    released=False,
                )
            )
            product.reserved_stock = int(product.reserved_stock or 0) + qty

        db.commit()
        return expires_at
    except Exception:
        db.rollback()
        raise


def get_expired_reservation_ids(db: Session, *, now: dt.datetime) -> list[int]:
    rows = (
        db.query(StockReservation.id)
        .filter(
            StockReservation.expires_at < now,
            StockReservation.released.is_(False),
        )
        .order_by(StockReservation.id)
        .all()
    )
    return [row.id for row in rows]


# -----------------------------
# Currencies
# -----------------------------

def get_currency_by_code(db: Session, code: str) -> Optional[Currency]:
    return db.query(Currency).filter(Currency.code == code).first()


def get_currencies_by_codes(db: Session, codes: Iterable[str]) -> dict[str, Currency]:
    codes = list(set(codes))
    rows = db.query(Currency).filter(Currency.code.in_(codes)).all()
    return {c.code: c for c in rows}


def get_active_currencies(db: Session) -> list[Currency]:
    return (
        db.query(Currency)
        .filter(Currency.is_active.is_(True))
        .order_by(Currency.is_base.desc(), Currency.code.asc())
        .all()
    )


def upsert_currency(
    db: Session,
    *,
    code: str,
    name: str,
    symbol: str,
    decimal_places: int,
    is_base: bool,
    exchange_rate: Decimal,
    now: Optional[dt.datetime] = None,
) -> Currency:
    """Insert the currency or refresh its rate. Does not commit."""
    now = now or utcnow()
    currency = get_currency_by_code(db, code)
    if currency is None:
        currency = Currency(
            code=code,
            name=name,
            symbol=symbol,
            decimal_places=decimal_places,
            is_base=is_base,
            is_active=True,
            exchange_rate=exchange_rate,
            updated_at=now,
        )
        db.add(currency)
    else:
        currency.exchange_rate = exchange_rate
        currency.is_active = True
        currency.updated_at = now
    return currency
