"""
Celery Tasks
Background housekeeping for payments whose callback never arrived.

A payer who closes the tab before paying leaves the order or reservation
pending forever; the gateway's own expiry notification is not guaranteed
either. expire_stale_payments sweeps those records through the same failure
transition an `expire` notification would apply.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.celery_worker import celery_app
from app.core.config import Settings, get_settings
from app.core.exceptions import ReconciliationError
from app.models import Order, OrderStatus, Reservation, ReservationStatus
from app.services.payables import OrderPayable, ReservationPayable

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Payment expired"


async def expire_stale_payables(
    db: AsyncSession,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> dict:
    """
    Cancel orders and paid bookings still pending after the expiry window.

    Staff-created reservations carry no booking fee and are left alone.

    Returns:
        dict: counts of expired orders and reservations
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.pending_payment_expiry_minutes)

    orders = (await db.execute(
        select(Order).where(Order.status == OrderStatus.PENDING, Order.created_at < cutoff)
    )).scalars().all()
    reservations = (await db.execute(
        select(Reservation).where(
            Reservation.status == ReservationStatus.PENDING,
            Reservation.booking_fee > 0,
            Reservation.created_at < cutoff,
        )
    )).scalars().all()

    expired = {"orders": 0, "reservations": 0}
    try:
        for order in orders:
            if await OrderPayable(order).on_failure(db, reason=EXPIRY_REASON):
                expired["orders"] += 1
        for reservation in reservations:
            if await ReservationPayable(reservation).on_failure(db, reason=EXPIRY_REASON):
                expired["reservations"] += 1
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception(f"Stale payment sweep rolled back: {e}")
        raise ReconciliationError("Could not expire stale payments.") from e

    if expired["orders"] or expired["reservations"]:
        logger.info(
            f"Expired {expired['orders']} order(s) and {expired['reservations']} "
            f"reservation(s) pending since before {cutoff:%Y-%m-%d %H:%M}"
        )
    return expired


async def _run_expiry() -> dict:
    # Imported here so the worker only builds the engine when the task runs
    from app.database import async_session_maker, engine

    try:
        async with async_session_maker() as session:
            return await expire_stale_payables(session)
    finally:
        # Pooled connections are bound to this event loop
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    autoretry_for=(ReconciliationError,),
    retry_backoff=True
)
def expire_stale_payments(self) -> dict:
    """
    Periodic sweep scheduled by celery beat.

    Returns:
        dict: expired counts plus task timing
    """
    task_id = self.request.id
    start_time = time.time()

    result = asyncio.run(_run_expiry())

    result['task_id'] = task_id
    result['processing_time_seconds'] = round(time.time() - start_time, 3)
    logger.info(f"Task {task_id}: stale payment sweep finished in {result['processing_time_seconds']}s")
    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
