from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import config, crud
from .messaging import publish_event_safely, utc_timestamp
from .models import Order, OrderStatus, PaymentStatus, Product, StockReservation
from .scheduler import PeriodicJob

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _release_reservation(db: Session, reservation_id: int) -> Optional[dict]:
    """Release one reservation inside the caller's transaction.

    Returns None when the row was already released by someone else, otherwise a
    small summary of what changed.
    """
    # The released=false predicate makes a concurrent sweep lose the race cleanly
    claimed = db.execute(
        update(StockReservation)
        .where(StockReservation.id == reservation_id, StockReservation.released.is_(False))
        .values(released=True)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        return None

    reservation = db.get(StockReservation, reservation_id)

    product = (
        db.query(Product)
        .filter(Product.id == reservation.product_id)
        .with_for_update()
        .first()
    )
    if product is None:
        logger.warning(
            "Reservation %s points at missing product %s; releasing without stock change",
            reservation.id,
            reservation.product_id,
        )
    else:
        current = int(product.reserved_stock or 0)
        if current < reservation.quantity:
            logger.warning(
                "reserved_stock drift on product %s: have %s, releasing %s; clamping to 0",
                product.id,
                current,
                reservation.quantity,
            )
            product.reserved_stock = 0
        else:
            product.reserved_stock = current - reservation.quantity

    cancelled = db.execute(
        update(Order)
        .where(Order.id == reservation.order_id, Order.status == OrderStatus.PENDING.value)
        .values(status=OrderStatus.CANCELLED.value, payment_status=PaymentStatus.FAILED.value)
        .execution_options(synchronize_session=False)
    )

    return {
        "reservation_id": reservation.id,
        "order_id": reservation.order_id,
        "product_id": reservation.product_id,
        "quantity": reservation.quantity,
        "order_cancelled": cancelled.rowcount == 1,
    }


def release_expired_reservations(
    session_factory: SessionFactory,
    *,
    now: Optional[dt.datetime] = None,
) -> int:
    """Release every reservation that expired before ``now``.

    Each reservation is released in its own transaction so one bad row can't
    block the rest; a failed row stays unreleased and is retried next sweep.
    Returns the number of reservations released.
    """
    now = now or crud.utcnow()

    db = session_factory()
    try:
        expired_ids = crud.get_expired_reservation_ids(db, now=now)
    finally:
        db.close()

    if not expired_ids:
        return 0

    released = 0
    cancelled_orders: list[dict] = []
    for reservation_id in expired_ids:
        db = session_factory()
        try:
            summary = _release_reservation(db, reservation_id)
            if summary is None:
                db.rollback()
                continue
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to release stock reservation %s", reservation_id)
            continue
        finally:
            db.close()

        released += 1
        if summary["order_cancelled"]:
            cancelled_orders.append(summary)

    for summary in cancelled_orders:
        publish_event_safely(
            "order.cancelled",
            {
                "event": "order.cancelled",
                "occurred_at": utc_timestamp(),
                "order_id": summary["order_id"],
                "reason": "reservation_expired",
            },
        )

    if released:
        logger.info("Released %s expired stock reservations", released)
    return released


def build_reservation_cleanup_job(
    session_factory: SessionFactory,
    interval_seconds: Optional[int] = None,
) -> PeriodicJob:
    return PeriodicJob(
        "stock-reservation-cleanup",
        lambda: release_expired_reservations(session_factory),
        interval_seconds or config.RESERVATION_SWEEP_INTERVAL_SECONDS,
    )
