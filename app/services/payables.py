"""
Payables

Orders and reservations are both "payables": something a gateway
transaction settles. Each variant knows how to move its record on a
success, failure or pending outcome and what side effects follow.

Every transition is a conditional UPDATE that only matches a record still
in its pending state. When the row count is zero another delivery already
moved the record, and the side effects (stock decrement, table flip) are
skipped. That makes replays and racing deliveries safe without locks.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, ClassVar, Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from app.core.exceptions import NotFoundError
from app.models import (
    MenuItem,
    Order,
    OrderStatus,
    OrderType,
    PayableKind,
    Payment,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    Table,
    TableStatus,
)

logger = logging.getLogger(__name__)

ORDER_PREFIX = "ORDER-"
BOOKING_PREFIX = "BOOKING-"

STOCK_CONSUMING_TYPES = (OrderType.TAKEAWAY, OrderType.DELIVERY)


def order_reference(order_id: int) -> str:
    return f"{ORDER_PREFIX}{order_id}"


def booking_reference(reservation_id: int) -> str:
    return f"{BOOKING_PREFIX}{reservation_id}"


class Payable(ABC):
    """
    Capability shared by orders and reservations.

    Subclasses declare the mapped model, the reference prefix and the
    status values of their own lifecycle.
    """

    kind: ClassVar[PayableKind]
    prefix: ClassVar[str]
    model: ClassVar[Any]
    pending_status: ClassVar[Any]
    success_status: ClassVar[Any]
    failure_status: ClassVar[Any]

    def __init__(self, record):
        self.record = record

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def status(self):
        return self.record.status

    @property
    def is_pending(self) -> bool:
        return self.record.status == self.pending_status

    @property
    def reference(self) -> str:
        return f"{self.prefix}{self.record.id}"

    @property
    @abstractmethod
    def expected_amount(self) -> float:
        """What the payer was asked to pay."""

    @classmethod
    @abstractmethod
    async def load(cls, db: AsyncSession, record_id: int) -> Optional["Payable"]:
        """Fetch the record with whatever the transitions need eagerly loaded."""

    def link_payment(self, payment: Payment) -> None:
        if self.record.payment_id is None:
            self.record.payment_id = payment.id

    async def _transition(self, db: AsyncSession, **values) -> bool:
        """
        Move the record out of its pending state.

        Returns:
            bool: True if this call made the change, False if the record
                was no longer pending
        """
        result = await db.execute(
            update(self.model)
            .where(self.model.id == self.record.id, self.model.status == self.pending_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                f"{self.reference}: transition to {values.get('status')} skipped, "
                f"record is {self.record.status.value}"
            )
            return False

        for key, value in values.items():
            set_committed_value(self.record, key, value)
        logger.info(f"{self.reference}: status -> {self.record.status.value}")
        return True

    async def _sync_payment_status(self, db: AsyncSession, status, payment_status: PaymentStatus) -> bool:
        """
        Refresh payment_status on a record that staff already moved to
        status. Side effects belong to the transition and are not repeated.
        """
        if self.record.status != status or self.record.payment_status == payment_status:
            return False
        result = await db.execute(
            update(self.model)
            .where(self.model.id == self.record.id, self.model.status == status)
            .values(payment_status=payment_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        set_committed_value(self.record, "payment_status", payment_status)
        logger.info(f"{self.reference}: payment_status -> {payment_status.value}")
        return True

    async def on_success(self, db: AsyncSession) -> bool:
        applied = await self._transition(
            db, status=self.success_status, payment_status=PaymentStatus.SUCCESS
        )
        if applied:
            await self._after_success(db)
        else:
            await self._sync_payment_status(db, self.success_status, PaymentStatus.SUCCESS)
        return applied

    async def on_failure(self, db: AsyncSession, reason: Optional[str] = None) -> bool:
        applied = await self._transition(
            db, status=self.failure_status, payment_status=PaymentStatus.FAILED,
            **self._failure_values(reason),
        )
        if applied:
            await self._after_failure(db)
        else:
            await self._sync_payment_status(db, self.failure_status, PaymentStatus.FAILED)
        return applied

    async def on_pending(self, db: AsyncSession) -> bool:
        # Stays pending; only the payment mirror is refreshed
        return await self._transition(
            db, status=self.pending_status, payment_status=PaymentStatus.PENDING
        )

    def _failure_values(self, reason: Optional[str]) -> dict:
        return {}

    async def _after_success(self, db: AsyncSession) -> None:
        pass

    async def _after_failure(self, db: AsyncSession) -> None:
        pass


class OrderPayable(Payable):
    kind = PayableKind.ORDER
    prefix = ORDER_PREFIX
    model = Order
    pending_status = OrderStatus.PENDING
    success_status = OrderStatus.PROCESSING
    failure_status = OrderStatus.CANCELLED

    @property
    def expected_amount(self) -> float:
        return self.record.total_amount

    @classmethod
    async def load(cls, db: AsyncSession, record_id: int) -> Optional["OrderPayable"]:
        result = await db.execute(
            select(Order).options(selectinload(Order.items)).where(Order.id == record_id)
        )
        order = result.scalar_one_or_none()
        return cls(order) if order else None

    async def _after_success(self, db: AsyncSession) -> None:
        if self.record.order_type not in STOCK_CONSUMING_TYPES:
            return
        for item in self.record.items:
            await decrement_stock(db, item.menu_item_id, item.quantity)
        logger.info(f"{self.reference}: stock decremented for {len(self.record.items)} lines")


class ReservationPayable(Payable):
    kind = PayableKind.RESERVATION
    prefix = BOOKING_PREFIX
    model = Reservation
    pending_status = ReservationStatus.PENDING
    success_status = ReservationStatus.CONFIRMED
    failure_status = ReservationStatus.CANCELLED

    @property
    def expected_amount(self) -> float:
        return self.record.booking_fee

    @classmethod
    async def load(cls, db: AsyncSession, record_id: int) -> Optional["ReservationPayable"]:
        result = await db.execute(
            select(Reservation)
            .options(selectinload(Reservation.table))
            .where(Reservation.id == record_id)
        )
        reservation = result.scalar_one_or_none()
        return cls(reservation) if reservation else None

    def _failure_values(self, reason: Optional[str]) -> dict:
        return {
            "cancelled_at": datetime.now(timezone.utc),
            "cancellation_reason": reason or "Payment failed",
        }

    async def _after_success(self, db: AsyncSession) -> None:
        await reserve_table(db, self.record.table_id)

    async def _after_failure(self, db: AsyncSession) -> None:
        await release_table(db, self.record.table_id, exclude_reservation_id=self.record.id)


PAYABLE_TYPES: dict[PayableKind, type[Payable]] = {
    PayableKind.ORDER: OrderPayable,
    PayableKind.RESERVATION: ReservationPayable,
}


def parse_reference(reference: str) -> tuple[type[Payable], int]:
    """
    Map an external reference such as "ORDER-5" or "BOOKING-3" to the
    payable type and internal id.

    Raises:
        NotFoundError: unknown prefix or non-numeric id
    """
    for payable_type in PAYABLE_TYPES.values():
        if reference.startswith(payable_type.prefix):
            raw_id = reference[len(payable_type.prefix):]
            if raw_id.isdigit():
                return payable_type, int(raw_id)
            break
    raise NotFoundError(f"Unknown payment reference {reference!r}.", detail={"reference": reference})


async def load_payable(db: AsyncSession, kind: PayableKind, record_id: int) -> Payable:
    """
    Raises:
        NotFoundError: no such order/reservation
    """
    payable = await PAYABLE_TYPES[kind].load(db, record_id)
    if payable is None:
        raise NotFoundError(
            f"{kind.value.capitalize()} #{record_id} not found.",
            detail={"kind": kind.value, "id": record_id},
        )
    return payable


# =============================================================================
# SIDE EFFECTS
# =============================================================================

async def decrement_stock(db: AsyncSession, menu_item_id: int, quantity: int) -> None:
    """Atomic decrement that floors at zero."""
    await db.execute(
        update(MenuItem)
        .where(MenuItem.id == menu_item_id)
        .values(
            stock_quantity=case(
                (MenuItem.stock_quantity > quantity, MenuItem.stock_quantity - quantity),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )


async def reserve_table(db: AsyncSession, table_id: int) -> None:
    """Flip an available table to reserved. Occupied or maintenance tables keep their state."""
    result = await db.execute(
        update(Table)
        .where(Table.id == table_id, Table.status == TableStatus.AVAILABLE)
        .values(status=TableStatus.RESERVED)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Table {table_id} reserved")


async def release_table(
    db: AsyncSession,
    table_id: int,
    exclude_reservation_id: Optional[int] = None,
) -> None:
    """Return a reserved table to available unless another confirmed booking holds it."""
    holder = select(Reservation.id).where(
        Reservation.table_id == table_id,
        Reservation.status == ReservationStatus.CONFIRMED,
    )
    if exclude_reservation_id is not None:
        holder = holder.where(Reservation.id != exclude_reservation_id)

    result = await db.execute(
        update(Table)
        .where(
            Table.id == table_id,
            Table.status == TableStatus.RESERVED,
            ~holder.exists(),
        )
        .values(status=TableStatus.AVAILABLE)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Table {table_id} released")
