"""
Table Availability

Decides whether a table can take a booking at a given date and time.

Two bookings of the same table conflict when their start times are within
reservation_conflict_hours of each other, bounds included. Times are compared
as combined date+time values so windows that cross midnight behave.
Cancelled reservations never block.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.exceptions import LookupFailedError, ValidationError
from app.models import Reservation, ReservationStatus, Table, TableStatus

logger = logging.getLogger(__name__)


@dataclass
class AvailabilityResult:
    available: bool
    message: str
    tables: list[Table] = field(default_factory=list)


def validate_booking_slot(
    reservation_date: date,
    reservation_time: time,
    party_size: int,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> None:
    """
    Apply the public booking rules.

    Raises:
        ValidationError: past date, outside opening hours, too little notice
            for a same-day booking, or party size out of range
    """
    settings = settings or get_settings()
    now = now or datetime.now()

    if party_size < 1 or party_size > settings.max_party_size:
        raise ValidationError(
            f"Party size must be between 1 and {settings.max_party_size}."
        )
    if reservation_date < now.date():
        raise ValidationError("Reservation date cannot be in the past.")
    if not settings.opening_time <= reservation_time <= settings.closing_time:
        raise ValidationError(
            f"Reservations are only available between "
            f"{settings.opening_time:%H:%M} and {settings.closing_time:%H:%M}."
        )
    if reservation_date == now.date():
        starts_at = datetime.combine(reservation_date, reservation_time)
        if starts_at - now < timedelta(hours=settings.same_day_lead_hours):
            raise ValidationError(
                f"Same-day reservations must be made at least "
                f"{settings.same_day_lead_hours} hours in advance."
            )


class AvailabilityChecker:
    """Read-only queries over tables and their reservations."""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def conflict_window(self, reservation_date: date, reservation_time: time) -> tuple[datetime, datetime]:
        starts_at = datetime.combine(reservation_date, reservation_time)
        margin = timedelta(hours=self.settings.reservation_conflict_hours)
        return starts_at - margin, starts_at + margin

    async def _blocking_reservations(
        self,
        reservation_date: date,
        reservation_time: time,
        table_ids: Optional[list[int]] = None,
        exclude_reservation_id: Optional[int] = None,
    ) -> list[Reservation]:
        window_start, window_end = self.conflict_window(reservation_date, reservation_time)

        # Narrow by date in SQL, then compare full timestamps below
        query = select(Reservation).where(
            Reservation.status != ReservationStatus.CANCELLED,
            Reservation.reservation_date >= window_start.date(),
            Reservation.reservation_date <= window_end.date(),
        )
        if table_ids is not None:
            query = query.where(Reservation.table_id.in_(table_ids))
        if exclude_reservation_id is not None:
            query = query.where(Reservation.id != exclude_reservation_id)

        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.exception(f"Availability lookup failed: {e}")
            raise LookupFailedError("Could not check table availability.") from e

        return [
            reservation
            for reservation in result.scalars().all()
            if window_start
            <= datetime.combine(reservation.reservation_date, reservation.reservation_time)
            <= window_end
        ]

    async def is_table_available(
        self,
        table_id: int,
        reservation_date: date,
        reservation_time: time,
        exclude_reservation_id: Optional[int] = None,
    ) -> bool:
        """True when no non-cancelled booking of the table falls in the window."""
        blocking = await self._blocking_reservations(
            reservation_date,
            reservation_time,
            table_ids=[table_id],
            exclude_reservation_id=exclude_reservation_id,
        )
        if blocking:
            logger.debug(
                f"Table {table_id} blocked at {reservation_date} {reservation_time} "
                f"by reservations {[r.id for r in blocking]}"
            )
        return not blocking

    async def find_available_tables(
        self,
        reservation_date: date,
        reservation_time: time,
        party_size: int,
    ) -> list[Table]:
        """
        Tables that seat the party, are in the available state, and have no
        conflicting booking. Smallest fitting table first.
        """
        try:
            result = await self.db.execute(
                select(Table)
                .where(Table.capacity >= party_size, Table.status == TableStatus.AVAILABLE)
                .order_by(Table.capacity, Table.table_number)
            )
        except SQLAlchemyError as e:
            logger.exception(f"Table lookup failed: {e}")
            raise LookupFailedError("Could not check table availability.") from e

        candidates = list(result.scalars().all())
        if not candidates:
            return []

        blocking = await self._blocking_reservations(
            reservation_date,
            reservation_time,
            table_ids=[table.id for table in candidates],
        )
        blocked_ids = {reservation.table_id for reservation in blocking}
        return [table for table in candidates if table.id not in blocked_ids]

    async def check(
        self,
        reservation_date: date,
        reservation_time: time,
        party_size: int,
        now: Optional[datetime] = None,
    ) -> AvailabilityResult:
        """Storefront availability query: slot rules first, then tables."""
        try:
            validate_booking_slot(
                reservation_date, reservation_time, party_size, now=now, settings=self.settings
            )
        except ValidationError as e:
            return AvailabilityResult(available=False, message=e.message)

        tables = await self.find_available_tables(reservation_date, reservation_time, party_size)
        if not tables:
            return AvailabilityResult(
                available=False,
                message="No table is available for the selected time and party size.",
            )
        return AvailabilityResult(available=True, message="Table available", tables=tables)
