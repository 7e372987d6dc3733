"""
Checkout Orchestrator

Turns a cart (or a booking request) plus customer details into a pending
Order/Reservation and a gateway token. Nothing is marked paid here; the
reconciler does that when the gateway reports back.

Each call is one unit of work: if the gateway refuses to issue a token the
freshly created rows are rolled back, so no pending record exists without a
way to pay for it.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from app.models import (
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
from app.schemas import BookingRequest, CheckoutRequest, CustomerDetails
from app.services.availability import AvailabilityChecker, validate_booking_slot
from app.services.discounts import compute_discount_amount, find_valid_discount
from app.services.payables import (
    STOCK_CONSUMING_TYPES,
    booking_reference,
    order_reference,
)
from app.services.payment.base import (
    BasePaymentGateway,
    CallbackUrls,
    Customer,
    LineItem,
    TransactionResult,
)

logger = logging.getLogger(__name__)

DISCOUNT_LINE_ID = "DISCOUNT"
BOOKING_FEE_LINE_ID = "BOOKING-FEE"


@dataclass
class CheckoutResult:
    order: Order
    transaction: TransactionResult

    @property
    def token(self) -> str:
        return self.transaction.token


@dataclass
class BookingResult:
    reservation: Reservation
    table: Table
    transaction: TransactionResult

    @property
    def token(self) -> str:
        return self.transaction.token


class CheckoutOrchestrator:
    """
    Creates payables and requests their gateway tokens.

    Example:
        >>> orchestrator = CheckoutOrchestrator(db, get_payment_gateway())
        >>> result = await orchestrator.checkout(request)
        >>> result.order.status
        <OrderStatus.PENDING: 'pending'>
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: BasePaymentGateway,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()

    # =========================================================================
    # FOOD ORDERS
    # =========================================================================

    async def checkout(self, request: CheckoutRequest, now: Optional[datetime] = None) -> CheckoutResult:
        """
        Create a pending order for the cart and obtain a payment token.

        Raises:
            NotFoundError: a cart line names an unknown menu item
            ConflictError: item unavailable or not enough stock
            ValidationError: a menu item has no positive price, or the discount
                leaves nothing to pay
            GatewayError: the gateway did not issue a token (order rolled back)
        """
        now = now or datetime.now(timezone.utc)
        menu = await self._load_menu(request)
        self._check_cart(request, menu)

        discount = await find_valid_discount(self.db, request.discount_code, today=now.date())

        try:
            order = Order(
                user_id=request.customer.user_id,
                order_type=request.order_type,
                status=OrderStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                customer_name=request.customer.name,
                customer_email=request.customer.email,
                customer_phone=request.customer.phone,
                delivery_address=request.delivery_address,
                notes=request.notes,
            )
            if request.order_type == OrderType.DELIVERY:
                order.estimated_delivery_time = request.delivery_time or (
                    now + timedelta(minutes=self.settings.estimated_delivery_minutes)
                )

            for line in request.items:
                menu_item = menu[line.menu_item_id]
                item = OrderItem(
                    menu_item_id=menu_item.id,
                    name=menu_item.name,
                    quantity=line.quantity,
                    unit_price=menu_item.price,
                )
                item.recompute_subtotal()
                order.items.append(item)

            gross_amount = sum(item.subtotal for item in order.items)
            discount_amount = compute_discount_amount(discount, gross_amount)
            order.discount_amount = discount_amount
            order.discount_code = discount.code if discount_amount else None
            order.total_amount = gross_amount - discount_amount
            if order.total_amount <= 0:
                raise ValidationError(
                    f"Discount {discount.code} covers the whole order; there is nothing to pay.",
                    detail={"code": discount.code},
                )

            self.db.add(order)
            await self.db.flush()

            line_items = [
                LineItem(
                    id=str(item.menu_item_id),
                    price=int(item.unit_price),
                    quantity=item.quantity,
                    name=item.name,
                )
                for item in order.items
            ]
            if discount_amount:
                line_items.append(
                    LineItem(
                        id=DISCOUNT_LINE_ID,
                        price=-int(discount_amount),
                        quantity=1,
                        name=f"Discount {discount.code}",
                    )
                )

            transaction = await self._request_token(
                reference=order_reference(order.id),
                gross_amount=int(order.total_amount),
                line_items=line_items,
                customer=request.customer,
                callback_prefix="payments/orders",
            )
            await self.db.commit()
        except (ServiceError, SQLAlchemyError) as e:
            await self.db.rollback()
            if isinstance(e, SQLAlchemyError):
                logger.exception(f"Checkout rolled back: {e}")
                raise ServiceError("Could not create the order.") from e
            raise

        logger.info(
            f"Order #{order.id} created: {order.order_type.value} total={order.total_amount:.0f} "
            f"discount={order.discount_amount:.0f}"
        )
        return CheckoutResult(order=order, transaction=transaction)

    async def _load_menu(self, request: CheckoutRequest) -> dict[int, MenuItem]:
        ids = {line.menu_item_id for line in request.items}
        result = await self.db.execute(select(MenuItem).where(MenuItem.id.in_(ids)))
        menu = {item.id: item for item in result.scalars().all()}

        missing = sorted(ids - menu.keys())
        if missing:
            raise NotFoundError(
                f"Menu item(s) {missing} not found.", detail={"menu_item_ids": missing}
            )
        return menu

    def _check_cart(self, request: CheckoutRequest, menu: dict[int, MenuItem]) -> None:
        requested = defaultdict(int)
        for line in request.items:
            menu_item = menu[line.menu_item_id]
            if not menu_item.is_available:
                raise ConflictError(f"{menu_item.name} is currently unavailable.")
            if not menu_item.price or menu_item.price <= 0:
                raise ValidationError(f"{menu_item.name} has no valid price.")
            if line.unit_price is not None and line.unit_price != menu_item.price:
                logger.warning(
                    f"Cart price for {menu_item.name} ({line.unit_price}) differs from "
                    f"menu price ({menu_item.price}); using menu price"
                )
            requested[menu_item.id] += line.quantity

        if request.order_type not in STOCK_CONSUMING_TYPES:
            return
        for menu_item_id, quantity in requested.items():
            menu_item = menu[menu_item_id]
            if menu_item.stock_quantity < quantity:
                raise ConflictError(
                    f"Only {menu_item.stock_quantity} {menu_item.name} left in stock.",
                    detail={"menu_item_id": menu_item_id, "requested": quantity},
                )

    # =========================================================================
    # TABLE BOOKINGS
    # =========================================================================

    async def book_table(self, request: BookingRequest, now: Optional[datetime] = None) -> BookingResult:
        """
        Create a pending reservation and obtain a token for the booking fee.

        The fee is the configured flat amount whatever the party size or table.

        Raises:
            ValidationError: slot outside the booking rules
            NotFoundError: requested table does not exist
            ConflictError: table too small, already booked, or none free
            GatewayError: the gateway did not issue a token (reservation rolled back)
        """
        validate_booking_slot(
            request.reservation_date,
            request.reservation_time,
            request.party_size,
            now=now,
            settings=self.settings,
        )
        table = await self._pick_table(request)

        try:
            reservation = Reservation(
                user_id=request.customer.user_id,
                table_id=table.id,
                customer_name=request.customer.name,
                customer_email=request.customer.email,
                customer_phone=request.customer.phone,
                reservation_date=request.reservation_date,
                reservation_time=request.reservation_time,
                number_of_guests=request.party_size,
                special_requests=request.special_requests,
                booking_fee=float(self.settings.booking_fee),
                status=ReservationStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
            )
            self.db.add(reservation)
            await self.db.flush()

            transaction = await self._request_token(
                reference=booking_reference(reservation.id),
                gross_amount=self.settings.booking_fee,
                line_items=[
                    LineItem(
                        id=BOOKING_FEE_LINE_ID,
                        price=self.settings.booking_fee,
                        quantity=1,
                        name=f"Booking Fee - Table {table.table_number}",
                    )
                ],
                customer=request.customer,
                callback_prefix="payments/reservations",
            )
            await self.db.commit()
        except (ServiceError, SQLAlchemyError) as e:
            await self.db.rollback()
            if isinstance(e, SQLAlchemyError):
                logger.exception(f"Booking rolled back: {e}")
                raise ServiceError("Could not create the reservation.") from e
            raise

        logger.info(
            f"Reservation #{reservation.id} created: table {table.table_number} "
            f"{reservation.reservation_date} {reservation.reservation_time:%H:%M} "
            f"party={reservation.number_of_guests}"
        )
        return BookingResult(reservation=reservation, table=table, transaction=transaction)

    async def _pick_table(self, request: BookingRequest) -> Table:
        checker = AvailabilityChecker(self.db, self.settings)

        if request.table_id is None:
            tables = await checker.find_available_tables(
                request.reservation_date, request.reservation_time, request.party_size
            )
            if not tables:
                raise ConflictError("No table is available for the selected time and party size.")
            return tables[0]

        table = await self.db.get(Table, request.table_id)
        if table is None:
            raise NotFoundError(f"Table #{request.table_id} not found.")
        if table.capacity < request.party_size:
            raise ConflictError(
                f"Table {table.table_number} seats {table.capacity}, "
                f"party of {request.party_size} requested."
            )
        if table.status != TableStatus.AVAILABLE or not await checker.is_table_available(
            table.id, request.reservation_date, request.reservation_time
        ):
            raise ConflictError(f"Table {table.table_number} is not available at that time.")
        return table

    # =========================================================================
    # GATEWAY
    # =========================================================================

    async def _request_token(
        self,
        reference: str,
        gross_amount: int,
        line_items: list[LineItem],
        customer: CustomerDetails,
        callback_prefix: str,
    ) -> TransactionResult:
        callbacks = CallbackUrls(
            finish=self.settings.callback_url(f"{callback_prefix}/finish"),
            error=self.settings.callback_url(f"{callback_prefix}/error"),
            cancel=self.settings.callback_url(f"{callback_prefix}/cancel"),
        )
        logger.info(f"Requesting {self.gateway.provider_name} token for {reference} ({gross_amount})")

        result = await self.gateway.create_transaction(
            reference=reference,
            gross_amount=gross_amount,
            line_items=line_items,
            customer=Customer(
                first_name=customer.name,
                email=customer.email,
                phone=customer.phone,
            ),
            callbacks=callbacks,
        )
        if not result.success or not result.token:
            logger.error(
                f"Token request for {reference} failed: "
                f"[{result.error_code}] {result.error_message}"
            )
            raise GatewayError(
                result.error_message or "Payment gateway did not issue a token.",
                detail={"reference": reference, "code": result.error_code},
            )

        logger.info(f"Token issued for {reference} in {result.response_time_ms:.0f}ms")
        return result
