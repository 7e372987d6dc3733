"""
Seed Script

Creates the tables, a starter menu and a welcome discount so the
storefront flows can be exercised locally.
Run from project root: python scripts/seed.py

Version: 1.0.0
"""

import asyncio
import os
import sys
from datetime import date, timedelta

from sqlalchemy import select

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from app.database import async_session_maker, engine, init_db  # noqa: E402
from app.models import Discount, DiscountType, MenuItem, Table, TableStatus  # noqa: E402

# (table_number, capacity)
TABLES = [
    (1, 2), (2, 2), (3, 4), (4, 4), (5, 4),
    (6, 6), (7, 6), (8, 8), (9, 10), (10, 12),
]

MENU_ITEMS = [
    {"name": "Nasi Goreng Spesial", "price": 35000, "stock_quantity": 50},
    {"name": "Mie Goreng Jawa", "price": 30000, "stock_quantity": 50},
    {"name": "Sate Ayam (10 tusuk)", "price": 40000, "stock_quantity": 40},
    {"name": "Ayam Bakar Madu", "price": 45000, "stock_quantity": 30},
    {"name": "Gado-Gado", "price": 25000, "stock_quantity": 30},
    {"name": "Soto Betawi", "price": 38000, "stock_quantity": 25},
    {"name": "Es Teh Manis", "price": 10000, "stock_quantity": 200},
    {"name": "Es Jeruk", "price": 12000, "stock_quantity": 200},
]


async def seed() -> dict[str, int]:
    """Insert whatever is missing; existing rows are left untouched."""
    await init_db()
    created = {"tables": 0, "menu_items": 0, "discounts": 0}

    async with async_session_maker() as session:
        existing_tables = set((await session.execute(select(Table.table_number))).scalars().all())
        for number, capacity in TABLES:
            if number not in existing_tables:
                session.add(Table(table_number=number, capacity=capacity, status=TableStatus.AVAILABLE))
                created["tables"] += 1

        existing_items = set((await session.execute(select(MenuItem.name))).scalars().all())
        for item in MENU_ITEMS:
            if item["name"] not in existing_items:
                session.add(MenuItem(is_available=True, **item))
                created["menu_items"] += 1

        welcome = await session.scalar(select(Discount).where(Discount.code == "WELCOME10"))
        if welcome is None:
            session.add(Discount(
                code="WELCOME10",
                description="10% off your first order",
                discount_type=DiscountType.PERCENTAGE,
                discount_value=10,
                start_date=date.today(),
                end_date=date.today() + timedelta(days=90),
                is_active=True,
                max_uses=100,
            ))
            created["discounts"] += 1

        await session.commit()

    await engine.dispose()
    return created


if __name__ == "__main__":
    result = asyncio.run(seed())
    print("=" * 50)
    print("🌱 SEED COMPLETE")
    print("=" * 50)
    for name, count in result.items():
        print(f"   {name}: {count} created")
    print("=" * 50)
