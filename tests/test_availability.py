from datetime import date, datetime, time, timedelta

import pytest

from app.core.exceptions import ValidationError
from app.models import ReservationStatus, TableStatus, Table
from app.services.availability import AvailabilityChecker, validate_booking_slot
from tests.conftest import NOW, TOMORROW, add_all, make_reservation


# =============================================================================
# BOOKING RULES
# =============================================================================

def test_slot_inside_opening_hours_is_accepted(settings):
    validate_booking_slot(TOMORROW, time(10, 0), 4, now=NOW, settings=settings)
    validate_booking_slot(TOMORROW, time(22, 0), 4, now=NOW, settings=settings)


@pytest.mark.parametrize("at", [time(9, 59), time(22, 1), time(23, 30)])
def test_slot_outside_opening_hours_is_rejected(settings, at):
    with pytest.raises(ValidationError, match="between 10:00 and 22:00"):
        validate_booking_slot(TOMORROW, at, 2, now=NOW, settings=settings)


def test_past_date_is_rejected(settings):
    with pytest.raises(ValidationError, match="past"):
        validate_booking_slot(NOW.date() - timedelta(days=1), time(12, 0), 2, now=NOW, settings=settings)


def test_same_day_needs_two_hours_notice(settings):
    # NOW is 09:00
    with pytest.raises(ValidationError, match="2 hours in advance"):
        validate_booking_slot(NOW.date(), time(10, 30), 2, now=NOW, settings=settings)
    validate_booking_slot(NOW.date(), time(11, 0), 2, now=NOW, settings=settings)


@pytest.mark.parametrize("party_size", [0, 21])
def test_party_size_bounds(settings, party_size):
    with pytest.raises(ValidationError, match="Party size"):
        validate_booking_slot(TOMORROW, time(12, 0), party_size, now=NOW, settings=settings)


# =============================================================================
# CONFLICT WINDOW
# =============================================================================

async def test_table_without_bookings_is_available(db, tables, settings):
    checker = AvailabilityChecker(db, settings)
    assert await checker.is_table_available(tables[0].id, TOMORROW, time(19, 0))


async def test_booking_inside_window_blocks(session_factory, db, tables, settings):
    await make_reservation(session_factory, tables[0], at=time(18, 0))
    checker = AvailabilityChecker(db, settings)

    assert not await checker.is_table_available(tables[0].id, TOMORROW, time(19, 30))
    assert await checker.is_table_available(tables[1].id, TOMORROW, time(19, 30))


async def test_window_bounds_are_inclusive(session_factory, db, tables, settings):
    await make_reservation(session_factory, tables[0], at=time(17, 0))
    checker = AvailabilityChecker(db, settings)

    assert not await checker.is_table_available(tables[0].id, TOMORROW, time(19, 0))
    assert await checker.is_table_available(tables[0].id, TOMORROW, time(19, 1))


async def test_cancelled_booking_never_blocks(session_factory, db, tables, settings):
    await make_reservation(session_factory, tables[0], at=time(19, 0), status=ReservationStatus.CANCELLED)
    checker = AvailabilityChecker(db, settings)

    assert await checker.is_table_available(tables[0].id, TOMORROW, time(19, 0))


async def test_window_compares_full_timestamps_across_midnight(session_factory, db, settings):
    (late_table,) = await add_all(session_factory, Table(table_number=9, capacity=4))
    day = date(2026, 11, 10)
    # 23:30 the evening before is 1.5h from 01:00
    await make_reservation(session_factory, late_table, on_date=day, at=time(23, 30))
    checker = AvailabilityChecker(db, settings)

    assert not await checker.is_table_available(late_table.id, day + timedelta(days=1), time(1, 0))
    assert await checker.is_table_available(late_table.id, day + timedelta(days=1), time(12, 0))
    # Same clock time, different day
    assert await checker.is_table_available(late_table.id, day + timedelta(days=2), time(23, 30))


async def test_excluded_reservation_does_not_block_itself(session_factory, db, tables, settings):
    reservation = await make_reservation(session_factory, tables[0], at=time(19, 0))
    checker = AvailabilityChecker(db, settings)

    assert await checker.is_table_available(
        tables[0].id, TOMORROW, time(19, 0), exclude_reservation_id=reservation.id
    )


# =============================================================================
# TABLE SEARCH
# =============================================================================

async def test_find_filters_capacity_and_orders_smallest_first(db, tables, settings):
    checker = AvailabilityChecker(db, settings)
    found = await checker.find_available_tables(TOMORROW, time(19, 0), 3)

    assert [t.table_number for t in found] == [2, 3]


async def test_find_skips_booked_and_non_available_tables(session_factory, db, tables, settings):
    await make_reservation(session_factory, tables[1], at=time(19, 0))
    async with session_factory() as session:
        table = await session.get(Table, tables[2].id)
        table.status = TableStatus.MAINTENANCE
        await session.commit()

    checker = AvailabilityChecker(db, settings)
    assert await checker.find_available_tables(TOMORROW, time(19, 0), 3) == []


async def test_check_reports_rule_violation(db, tables, settings):
    result = await AvailabilityChecker(db, settings).check(TOMORROW, time(8, 0), 2, now=NOW)

    assert result.available is False
    assert "between" in result.message
    assert result.tables == []


async def test_check_lists_tables(db, tables, settings):
    result = await AvailabilityChecker(db, settings).check(TOMORROW, time(12, 0), 5, now=NOW)

    assert result.available is True
    assert [t.table_number for t in result.tables] == [3]
