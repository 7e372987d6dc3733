"""
SQLAlchemy Database Models

Ledger entities shared by checkout, booking and payment reconciliation:
- Orders with their line items
- Table reservations
- Payments keyed by gateway transaction id
- Menu item stock and dining tables
- Discount codes
"""

import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Date,
    Time,
    DateTime,
    Text,
    Enum,
    Boolean,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


def _values(enum_cls):
    return [member.value for member in enum_cls]


class OrderType(str, enum.Enum):
    """How the customer receives the order."""
    DINE_IN = "dine-in"
    TAKEAWAY = "takeaway"
    DELIVERY = "delivery"


class OrderStatus(str, enum.Enum):
    """Order lifecycle. COMPLETED and CANCELLED are terminal."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReservationStatus(str, enum.Enum):
    """Reservation lifecycle."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class TableStatus(str, enum.Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class PaymentStatus(str, enum.Enum):
    """Shared by Payment.status and the Order/Reservation payment mirror."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PayableKind(str, enum.Enum):
    """What a payment settles."""
    ORDER = "order"
    RESERVATION = "reservation"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class MenuItem(Base):
    """A dish on the menu. stock_quantity only drops on a settled payment."""
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<MenuItem #{self.id} - {self.name} - stock={self.stock_quantity}>"


class Table(Base):
    """A dining table. Status is driven by the reservation lifecycle."""
    __tablename__ = "tables"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    table_number = Column(Integer, nullable=False, unique=True)
    capacity = Column(Integer, nullable=False)
    status = Column(
        Enum(TableStatus, values_callable=_values),
        default=TableStatus.AVAILABLE,
        nullable=False,
        index=True,
    )

    reservations = relationship("Reservation", back_populates="table")

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<Table {self.table_number} - seats {self.capacity} - {self.status.value}>"


class Payment(Base):
    """
    One row per gateway transaction.

    The target is polymorphic: payable_kind says whether payable_id points at
    an order or a reservation. transaction_status keeps the raw gateway string
    for audit, status is its normalized form.
    """
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_payments_transaction_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    transaction_id = Column(String(100), nullable=False)
    reference = Column(String(100), nullable=False, index=True)
    payable_kind = Column(Enum(PayableKind, values_callable=_values), nullable=False)
    payable_id = Column(Integer, nullable=False, index=True)

    amount = Column(Float, nullable=False, default=0.0)
    payment_method = Column(String(50), nullable=False, default="unknown")
    status = Column(
        Enum(PaymentStatus, values_callable=_values),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    transaction_status = Column(String(50), nullable=True)
    fraud_status = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Payment {self.transaction_id} - {self.reference} - {self.status.value}>"


class Order(Base):
    """
    Customer order. Created pending at checkout, moved by the reconciler.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)

    order_type = Column(
        Enum(OrderType, values_callable=_values),
        nullable=False,
        index=True,
    )
    status = Column(
        Enum(OrderStatus, values_callable=_values),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_name = Column(String(100), nullable=False)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(30), nullable=True)
    delivery_address = Column(String(255), nullable=True)
    estimated_delivery_time = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    total_amount = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    discount_code = Column(String(50), nullable=True, index=True)

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_status = Column(
        Enum(PaymentStatus, values_callable=_values),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    payment = relationship("Payment", foreign_keys=[payment_id])

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def gross_amount(self) -> float:
        """Sum of line subtotals before discount."""
        return sum(item.subtotal for item in self.items)

    def __repr__(self):
        return f"<Order #{self.id} - {self.order_type.value} - {self.status.value}>"


class OrderItem(Base):
    """A cart line. subtotal is always quantity * unit_price."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    name = Column(String(150), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    subtotal = Column(Float, nullable=False)

    order = relationship("Order", back_populates="items")

    def recompute_subtotal(self) -> float:
        self.subtotal = self.quantity * self.unit_price
        return self.subtotal

    def __repr__(self):
        return f"<OrderItem {self.name} x{self.quantity}>"


class Reservation(Base):
    """A table booking paid for with a fixed booking fee."""
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)
    table_id = Column(Integer, ForeignKey("tables.id"), nullable=False, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    customer_name = Column(String(100), nullable=False)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(30), nullable=True)

    reservation_date = Column(Date, nullable=False, index=True)
    reservation_time = Column(Time, nullable=False)
    number_of_guests = Column(Integer, nullable=False)
    special_requests = Column(Text, nullable=True)
    booking_fee = Column(Float, nullable=False, default=0.0)

    status = Column(
        Enum(ReservationStatus, values_callable=_values),
        default=ReservationStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_status = Column(
        Enum(PaymentStatus, values_callable=_values),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    table = relationship("Table", back_populates="reservations")
    payment = relationship("Payment", foreign_keys=[payment_id])

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return (
            f"<Reservation #{self.id} - table {self.table_id} - "
            f"{self.reservation_date} {self.reservation_time} - {self.status.value}>"
        )


class Discount(Base):
    """A promotional code applied at checkout."""
    __tablename__ = "discounts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    discount_type = Column(Enum(DiscountType, values_callable=_values), nullable=False)
    discount_value = Column(Float, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    max_uses = Column(Integer, nullable=False, default=0)  # 0 = unlimited

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Discount {self.code} - {self.discount_type.value} {self.discount_value}>"
