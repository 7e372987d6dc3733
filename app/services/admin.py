"""
Staff Operations

Status changes made from the back office. These bypass the gateway but
must keep tables consistent with the reservations that hold them.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.exceptions import ConflictError, NotFoundError, ServiceError
from app.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    Table,
)
from app.schemas import AdminReservationCreate
from app.services.availability import AvailabilityChecker
from app.services.payables import release_table, reserve_table

logger = logging.getLogger(__name__)

TERMINAL_ORDER_STATUSES = (OrderStatus.COMPLETED, OrderStatus.CANCELLED)
TABLE_RELEASING_STATUSES = (
    ReservationStatus.CANCELLED,
    ReservationStatus.COMPLETED,
    ReservationStatus.NO_SHOW,
)


async def _commit(db: AsyncSession, action: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception(f"{action} rolled back: {e}")
        raise ServiceError(f"Could not {action.lower()}.") from e


async def _get_order(db: AsyncSession, order_id: int) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order #{order_id} not found.")
    return order


async def _get_reservation(db: AsyncSession, reservation_id: int) -> Reservation:
    reservation = await db.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError(f"Reservation #{reservation_id} not found.")
    return reservation


# =============================================================================
# ORDERS
# =============================================================================

async def update_order_status(db: AsyncSession, order_id: int, status: OrderStatus) -> Order:
    """
    Move an order along its lifecycle.

    Raises:
        NotFoundError: unknown order
        ConflictError: the order is already completed or cancelled
    """
    order = await _get_order(db, order_id)
    if order.status == status:
        return order
    if order.status in TERMINAL_ORDER_STATUSES:
        raise ConflictError(
            f"Order #{order_id} is {order.status.value} and can no longer change."
        )

    previous = order.status
    order.status = status
    await _commit(db, "Update order status")
    await db.refresh(order)
    logger.info(f"Order #{order_id}: {previous.value} -> {status.value} (staff)")
    return order


async def delete_order(db: AsyncSession, order_id: int) -> None:
    """Completed orders are kept for the books."""
    order = await _get_order(db, order_id)
    if order.status == OrderStatus.COMPLETED:
        raise ConflictError("Completed orders cannot be deleted.")

    await db.delete(order)
    await _commit(db, "Delete order")
    logger.info(f"Order #{order_id} deleted (staff)")


# =============================================================================
# RESERVATIONS
# =============================================================================

async def create_reservation(
    db: AsyncSession,
    data: AdminReservationCreate,
    settings: Optional[Settings] = None,
) -> Reservation:
    """
    Book a chosen table on behalf of a guest. No booking fee is charged.

    The reservation starts pending like a storefront booking. When
    admin_reservation_reserves_table is set the table is flipped to
    reserved straight away.

    Raises:
        NotFoundError: unknown table
        ConflictError: table too small or already booked in the window
    """
    settings = settings or get_settings()

    table = await db.get(Table, data.table_id)
    if table is None:
        raise NotFoundError(f"Table #{data.table_id} not found.")
    if table.capacity < data.number_of_guests:
        raise ConflictError(
            f"Table {table.table_number} seats {table.capacity}, "
            f"party of {data.number_of_guests} requested."
        )

    checker = AvailabilityChecker(db, settings)
    if not await checker.is_table_available(table.id, data.reservation_date, data.reservation_time):
        raise ConflictError(f"Table {table.table_number} is not available at that time.")

    reservation = Reservation(
        user_id=data.user_id,
        table_id=table.id,
        customer_name=data.customer_name,
        customer_email=data.customer_email,
        customer_phone=data.customer_phone,
        reservation_date=data.reservation_date,
        reservation_time=data.reservation_time,
        number_of_guests=data.number_of_guests,
        special_requests=data.special_requests,
        booking_fee=0.0,
        status=ReservationStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
    )
    db.add(reservation)

    if settings.admin_reservation_reserves_table:
        await reserve_table(db, table.id)

    await _commit(db, "Create reservation")
    await db.refresh(reservation)
    logger.info(f"Reservation #{reservation.id} created for table {table.table_number} (staff)")
    return reservation


async def update_reservation_status(
    db: AsyncSession,
    reservation_id: int,
    status: ReservationStatus,
    reason: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Reservation:
    """
    Confirming reserves the table; cancelling, completing or marking a
    no-show releases it unless another confirmed booking holds it.

    Raises:
        NotFoundError: unknown reservation
        ConflictError: re-confirming a cancelled booking whose slot is taken
    """
    reservation = await _get_reservation(db, reservation_id)
    previous = reservation.status
    if previous == status:
        return reservation

    if status == ReservationStatus.CONFIRMED:
        if previous == ReservationStatus.CANCELLED:
            checker = AvailabilityChecker(db, settings)
            if not await checker.is_table_available(
                reservation.table_id,
                reservation.reservation_date,
                reservation.reservation_time,
                exclude_reservation_id=reservation.id,
            ):
                raise ConflictError("The table has been booked by someone else in the meantime.")
            reservation.cancelled_at = None
            reservation.cancellation_reason = None
        reservation.status = status
        await reserve_table(db, reservation.table_id)
    else:
        reservation.status = status
        if status == ReservationStatus.CANCELLED:
            reservation.cancelled_at = datetime.now(timezone.utc)
            reservation.cancellation_reason = reason or "Cancelled by staff"
        if status in TABLE_RELEASING_STATUSES:
            await release_table(db, reservation.table_id, exclude_reservation_id=reservation.id)

    await _commit(db, "Update reservation status")
    await db.refresh(reservation)
    logger.info(f"Reservation #{reservation_id}: {previous.value} -> {status.value} (staff)")
    return reservation


async def delete_reservation(db: AsyncSession, reservation_id: int) -> None:
    reservation = await _get_reservation(db, reservation_id)
    if reservation.status == ReservationStatus.CONFIRMED:
        await release_table(db, reservation.table_id, exclude_reservation_id=reservation.id)

    await db.delete(reservation)
    await _commit(db, "Delete reservation")
    logger.info(f"Reservation #{reservation_id} deleted (staff)")
