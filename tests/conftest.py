import os

# Must be set before anything imports app.database
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENV_MODE"] = "development"
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import Settings
from app.database import Base
from app.models import (
    Discount,
    DiscountType,
    MenuItem,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    Table,
    TableStatus,
)
from app.services.payment.mock import MockPaymentGateway

# Fixed clock: all bookings in tests are relative to this
NOW = datetime(2026, 11, 2, 9, 0)
TOMORROW = NOW.date() + timedelta(days=1)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        env_mode="development",
        database_url="sqlite+aiosqlite://",
        app_base_url="http://testserver",
        verify_notification_signature=True,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> MockPaymentGateway:
    return MockPaymentGateway(failure_rate=0.0, min_latency=0.0, max_latency=0.0)


@pytest.fixture
def failing_gateway() -> MockPaymentGateway:
    return MockPaymentGateway(failure_rate=1.0, min_latency=0.0, max_latency=0.0)


# =============================================================================
# DATA HELPERS
# =============================================================================

async def add_all(session_factory, *objects):
    async with session_factory() as session:
        session.add_all(objects)
        await session.commit()
    return objects


async def fetch(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


@pytest.fixture
async def menu(session_factory):
    """Two dishes with stock and one unavailable dish."""
    items = (
        MenuItem(name="Nasi Goreng", price=10000, stock_quantity=10, is_available=True),
        MenuItem(name="Es Teh", price=5000, stock_quantity=20, is_available=True),
        MenuItem(name="Rendang", price=50000, stock_quantity=5, is_available=False),
    )
    return await add_all(session_factory, *items)


@pytest.fixture
async def tables(session_factory):
    """Tables of capacity 2, 4 and 6."""
    rows = (
        Table(table_number=1, capacity=2, status=TableStatus.AVAILABLE),
        Table(table_number=2, capacity=4, status=TableStatus.AVAILABLE),
        Table(table_number=3, capacity=6, status=TableStatus.AVAILABLE),
    )
    return await add_all(session_factory, *rows)


@pytest.fixture
async def welcome_discount(session_factory):
    (discount,) = await add_all(
        session_factory,
        Discount(
            code="WELCOME10",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=10,
            start_date=NOW.date() - timedelta(days=1),
            end_date=NOW.date() + timedelta(days=30),
            is_active=True,
            max_uses=0,
        ),
    )
    return discount


async def make_order(session_factory, menu_items, quantities, order_type=OrderType.TAKEAWAY, **fields):
    order = Order(
        order_type=order_type,
        status=fields.pop("status", OrderStatus.PENDING),
        payment_status=PaymentStatus.PENDING,
        customer_name="Budi Santoso",
        **fields,
    )
    for menu_item, quantity in zip(menu_items, quantities):
        item = OrderItem(
            menu_item_id=menu_item.id,
            name=menu_item.name,
            quantity=quantity,
            unit_price=menu_item.price,
        )
        item.recompute_subtotal()
        order.items.append(item)
    order.total_amount = sum(item.subtotal for item in order.items)
    await add_all(session_factory, order)
    return order


async def make_reservation(
    session_factory,
    table,
    on_date: date = TOMORROW,
    at: time = time(19, 0),
    status=ReservationStatus.PENDING,
    **fields,
):
    reservation = Reservation(
        table_id=table.id,
        customer_name="Siti Wijaya",
        reservation_date=on_date,
        reservation_time=at,
        number_of_guests=fields.pop("number_of_guests", 2),
        booking_fee=fields.pop("booking_fee", 100000.0),
        status=status,
        payment_status=PaymentStatus.PENDING,
        **fields,
    )
    await add_all(session_factory, reservation)
    return reservation
