"""
Pydantic Schemas for Request/Response Validation

Covers storefront checkout and booking, gateway notifications and
redirects, staff-side status changes and read models.
"""

import re
from datetime import date, datetime, time
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models import (
    OrderType,
    OrderStatus,
    ReservationStatus,
    TableStatus,
    PaymentStatus,
    DiscountType,
)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class CartItem(BaseModel):
    """Single line in the customer's cart."""
    menu_item_id: int = Field(..., ge=1, examples=[1])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    unit_price: Optional[float] = Field(None, gt=0, examples=[25000])
    name: Optional[str] = Field(None, max_length=150, examples=["Nasi Goreng"])


class CustomerDetails(BaseModel):
    """Contact fields forwarded to the gateway."""
    name: str = Field(..., min_length=2, max_length=100, examples=["Budi Santoso"])
    email: Optional[str] = Field(None, examples=["budi@example.com"])
    phone: Optional[str] = Field(None, max_length=30, examples=["081234567890"])
    user_id: Optional[int] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        cleaned = re.sub(r"[^\d]", "", v)
        if len(cleaned) < 8:
            raise ValueError("Phone number must have at least 8 digits")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not re.match(r"^[\w\.\+-]+@[\w\.-]+\.\w+$", v):
            raise ValueError("Invalid email format")
        return v


class CheckoutRequest(BaseModel):
    """Request schema for ordering food."""
    order_type: OrderType = Field(default=OrderType.TAKEAWAY, examples=["takeaway"])
    customer: CustomerDetails
    items: List[CartItem] = Field(..., min_length=1)
    discount_code: Optional[str] = Field(None, max_length=50)
    delivery_address: Optional[str] = Field(None, max_length=255)
    delivery_time: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def require_address_for_delivery(self) -> "CheckoutRequest":
        if self.order_type == OrderType.DELIVERY and not self.delivery_address:
            raise ValueError("delivery_address is required for delivery orders")
        return self


class BookingRequest(BaseModel):
    """Request schema for booking a table."""
    model_config = ConfigDict(populate_by_name=True)

    customer: CustomerDetails
    reservation_date: date = Field(..., alias="date", examples=["2026-11-02"])
    reservation_time: time = Field(..., alias="time", examples=["19:00"])
    party_size: int = Field(..., ge=1)
    table_id: Optional[int] = None
    special_requests: Optional[str] = Field(None, max_length=500)


class DiscountValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)


class GatewayNotification(BaseModel):
    """
    Payment notification, from the server-to-server callback or the
    client finish redirect. Required fields are checked by the reconciler
    so a malformed payload is rejected without mutation.
    """
    model_config = ConfigDict(extra="allow")

    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_status: Optional[str] = None
    gross_amount: Optional[str] = None
    payment_type: Optional[str] = None
    status_code: Optional[str] = None
    signature_key: Optional[str] = None
    fraud_status: Optional[str] = None

    @field_validator("gross_amount", "status_code", mode="before")
    @classmethod
    def stringify(cls, v):
        if v is None:
            return v
        return str(v)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class AdminReservationCreate(BaseModel):
    """Staff-side booking for a chosen table."""
    table_id: int
    customer_name: str = Field(..., min_length=2, max_length=100)
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    user_id: Optional[int] = None
    reservation_date: date
    reservation_time: time
    number_of_guests: int = Field(..., ge=1)
    special_requests: Optional[str] = Field(None, max_length=500)


class ReservationStatusUpdate(BaseModel):
    status: ReservationStatus
    reason: Optional[str] = Field(None, max_length=255)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: int
    name: str
    quantity: int
    unit_price: float
    subtotal: float


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_type: OrderType
    status: OrderStatus
    payment_status: PaymentStatus
    customer_name: str
    customer_email: Optional[str]
    customer_phone: Optional[str]
    delivery_address: Optional[str]
    estimated_delivery_time: Optional[datetime]
    total_amount: float
    discount_amount: float
    discount_code: Optional[str]
    payment_id: Optional[int]
    items: List[OrderItemResponse]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class TableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    table_number: int
    capacity: int
    status: TableStatus


class ReservationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    table_id: int
    customer_name: str
    reservation_date: date
    reservation_time: time
    number_of_guests: int
    special_requests: Optional[str]
    booking_fee: float
    status: ReservationStatus
    payment_status: PaymentStatus
    payment_id: Optional[int]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    created_at: Optional[datetime]


class CheckoutResponse(BaseModel):
    """Returned once the gateway issued a token. Nothing is paid yet."""
    success: bool = True
    order_id: int
    token: str
    redirect_url: Optional[str] = None
    total_amount: float
    discount_amount: float
    client_key: Optional[str] = None


class BookingResponse(BaseModel):
    success: bool = True
    reservation_id: int
    table_number: int
    token: str
    redirect_url: Optional[str] = None
    booking_fee: float
    client_key: Optional[str] = None


class AvailabilityResponse(BaseModel):
    available: bool
    message: str
    tables: List[TableResponse] = []


class DiscountResponse(BaseModel):
    valid: bool = True
    code: str
    discount_type: DiscountType
    discount_value: float


class CallbackResponse(BaseModel):
    """Outcome of a notification or redirect."""
    status: str
    message: str
    reference: Optional[str] = None
    target_status: Optional[str] = None
    applied: bool = False


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_gateway: str
    timestamp: datetime
