import datetime as dt
import itertools
import os
from decimal import Decimal

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BACKGROUND_JOBS_ENABLED"] = "false"
os.environ["EVENTS_ENABLED"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.models import Base, Currency, Order, OrderStatus, PaymentStatus, Product, StockReservation

_numbers = itertools.count(1)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def now():
    return dt.datetime.now(dt.timezone.utc)


@pytest.fixture()
def make_product(db):
    def _make(**kwargs):
        n = next(_numbers)
        fields = {"name": f"Product {n}", "price": 1000, "stock": 10, "reserved_stock": 0}
        fields.update(kwargs)
        product = Product(**fields)
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture()
def make_order(db):
    def _make(status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING):
        order = Order(
            order_number=f"ORD-{next(_numbers):06d}",
            status=status.value,
            payment_status=payment_status.value,
        )
        db.add(order)
        db.commit()
        return order

    return _make


@pytest.fixture()
def make_reservation(db):
    def _make(product, order, quantity, expires_at, released=False):
        reservation = StockReservation(
            product_id=product.id,
            order_id=order.id,
            quantity=quantity,
            expires_at=expires_at,
            released=released,
        )
        db.add(reservation)
        db.commit()
        return reservation

    return _make


@pytest.fixture()
def currencies(db):
    rows = [
        Currency(code="UGX", name="Ugandan Shilling", symbol="USh", exchange_rate=1,
                 decimal_places=0, is_base=True, is_active=True),
        Currency(code="USD", name="US Dollar", symbol="$", exchange_rate=Decimal("0.00027"),
                 decimal_places=2, is_base=False, is_active=True),
        Currency(code="KES", name="Kenyan Shilling", symbol="KSh", exchange_rate=Decimal("0.0349"),
                 decimal_places=0, is_base=False, is_active=True),
        Currency(code="EUR", name="Euro", symbol="€", exchange_rate=Decimal("0.00025"),
                 decimal_places=2, is_base=False, is_active=False),
    ]
    db.add_all(rows)
    db.commit()
    return {c.code: c for c in rows}
