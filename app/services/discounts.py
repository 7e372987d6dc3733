"""
Discount Codes

Resolves a code to an active Discount whose validity window contains today.
Codes match case-insensitively after trimming.
Checkout treats an unusable code as "no discount"; the validation endpoint
reports it explicitly.
"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ValidationError
from app.models import Discount, DiscountType, Order, OrderStatus

logger = logging.getLogger(__name__)


async def find_valid_discount(
    db: AsyncSession,
    code: Optional[str],
    today: Optional[date] = None,
) -> Optional[Discount]:
    """Return the usable Discount for code, or None."""
    if not code:
        return None
    today = today or date.today()

    result = await db.execute(
        select(Discount).where(
            func.upper(Discount.code) == code.strip().upper(),
            Discount.is_active.is_(True),
            Discount.start_date <= today,
            Discount.end_date >= today,
        )
    )
    discount = result.scalar_one_or_none()
    if discount is None:
        logger.info(f"Discount code {code!r} is unknown, inactive or out of its window")
        return None

    if discount.max_uses:
        used = await db.scalar(
            select(func.count(Order.id)).where(
                Order.discount_code == discount.code,
                Order.status != OrderStatus.CANCELLED,
            )
        )
        if (used or 0) >= discount.max_uses:
            logger.info(f"Discount code {code!r} reached max_uses={discount.max_uses}")
            return None

    return discount


async def validate_discount(
    db: AsyncSession,
    code: str,
    today: Optional[date] = None,
) -> Discount:
    """
    Explicit validation for the storefront "apply code" button.

    Raises:
        ValidationError: if the code cannot be used today
    """
    discount = await find_valid_discount(db, code, today=today)
    if discount is None:
        raise ValidationError("Invalid discount code.", detail={"code": code})
    return discount


def compute_discount_amount(discount: Optional[Discount], gross_amount: float) -> float:
    """
    Amount to take off gross_amount, in whole currency units and never
    more than gross_amount itself.
    """
    if discount is None or gross_amount <= 0:
        return 0.0
    if discount.discount_type == DiscountType.PERCENTAGE:
        amount = int(gross_amount * discount.discount_value / 100)
    else:
        amount = int(discount.discount_value)
    return float(max(0, min(amount, int(gross_amount))))
