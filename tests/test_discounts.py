from datetime import timedelta

import pytest

from app.core.exceptions import ValidationError
from app.models import Discount, DiscountType, OrderStatus
from app.services.discounts import compute_discount_amount, find_valid_discount, validate_discount
from tests.conftest import NOW, add_all, make_order


def _discount(**overrides) -> Discount:
    values = dict(
        code="PROMO",
        discount_type=DiscountType.FIXED,
        discount_value=5000,
        start_date=NOW.date() - timedelta(days=1),
        end_date=NOW.date() + timedelta(days=1),
        is_active=True,
        max_uses=0,
    )
    values.update(overrides)
    return Discount(**values)


async def test_active_code_in_window_is_found(session_factory, db):
    await add_all(session_factory, _discount())
    discount = await find_valid_discount(db, "PROMO", today=NOW.date())
    assert discount is not None
    assert discount.code == "PROMO"


async def test_code_is_trimmed(session_factory, db):
    await add_all(session_factory, _discount())
    assert await find_valid_discount(db, "  PROMO ", today=NOW.date()) is not None


async def test_code_matches_case_insensitively(session_factory, db):
    await add_all(session_factory, _discount(code="Hemat50"))

    discount = await find_valid_discount(db, " hemat50 ", today=NOW.date())

    assert discount is not None
    assert discount.code == "Hemat50"


@pytest.mark.parametrize(
    "overrides",
    [
        {"is_active": False},
        {"end_date": NOW.date() - timedelta(days=1)},
        {"start_date": NOW.date() + timedelta(days=1), "end_date": NOW.date() + timedelta(days=5)},
    ],
    ids=["inactive", "expired", "not-started"],
)
async def test_unusable_code_resolves_to_none(session_factory, db, overrides):
    await add_all(session_factory, _discount(**overrides))
    assert await find_valid_discount(db, "PROMO", today=NOW.date()) is None


async def test_missing_code_resolves_to_none(db):
    assert await find_valid_discount(db, None) is None
    assert await find_valid_discount(db, "") is None
    assert await find_valid_discount(db, "NOPE", today=NOW.date()) is None


async def test_max_uses_counts_non_cancelled_orders(session_factory, db, menu):
    await add_all(session_factory, _discount(max_uses=2))
    await make_order(session_factory, [menu[0]], [1], discount_code="PROMO")
    await make_order(session_factory, [menu[0]], [1], discount_code="PROMO", status=OrderStatus.CANCELLED)

    assert await find_valid_discount(db, "PROMO", today=NOW.date()) is not None

    await make_order(session_factory, [menu[0]], [1], discount_code="PROMO")
    assert await find_valid_discount(db, "PROMO", today=NOW.date()) is None


async def test_validate_raises_for_invalid_code(db):
    with pytest.raises(ValidationError, match="Invalid discount code"):
        await validate_discount(db, "NOPE", today=NOW.date())


def test_percentage_is_truncated_to_whole_units():
    discount = _discount(discount_type=DiscountType.PERCENTAGE, discount_value=15)
    assert compute_discount_amount(discount, 33333) == 4999.0


def test_fixed_discount_never_exceeds_gross():
    discount = _discount(discount_value=50000)
    assert compute_discount_amount(discount, 20000) == 20000.0
    assert compute_discount_amount(discount, 80000) == 50000.0


def test_no_discount_is_zero():
    assert compute_discount_amount(None, 20000) == 0.0
