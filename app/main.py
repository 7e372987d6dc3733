"""
FastAPI Application Entry Point

Restaurant checkout, table booking and payment reconciliation service.
Supports both the mock gateway (development) and Midtrans Snap (staging/production).

Endpoints:
    - POST /api/checkout: Create a pending food order and get a payment token
    - POST /api/bookings: Create a pending table booking and get a payment token
    - GET /api/tables/available: Table availability for a slot
    - POST /api/discounts/validate: Explicit discount code validation
    - POST /payments/notification: Gateway server-to-server notification
    - /payments/{orders,reservations}/{finish,error,cancel}: Browser redirects
    - /api/admin/...: Staff status changes
    - GET /health: System health check

Version: 1.0.0
"""

import asyncio
import sys
import logging
from datetime import date, datetime, time
from typing import Any, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Response, Cookie
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
import redis

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from app.core.config import get_settings, setup_logging
from app.core.exceptions import NotFoundError, ServiceError, ValidationError
from app.database import get_db, init_db, engine
from app.models import Order, PayableKind, Reservation
from app.schemas import (
    AdminReservationCreate,
    AvailabilityResponse,
    BookingRequest,
    BookingResponse,
    CallbackResponse,
    CheckoutRequest,
    CheckoutResponse,
    DiscountResponse,
    DiscountValidateRequest,
    ErrorResponse,
    GatewayNotification,
    HealthResponse,
    OrderResponse,
    OrderStatusUpdate,
    ReservationResponse,
    ReservationStatusUpdate,
    TableResponse,
)
from app.services import admin
from app.services.availability import AvailabilityChecker
from app.services.checkout import CheckoutOrchestrator
from app.services.discounts import validate_discount
from app.services.payment import BasePaymentGateway, get_payment_gateway
from app.services.reconciler import NotificationSource, PaymentReconciler, ReconcileOutcome

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

PENDING_ORDER_COOKIE = "pending_order_id"
PENDING_RESERVATION_COOKIE = "pending_reservation_id"
PENDING_COOKIE_MAX_AGE = 24 * 60 * 60


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("✅ Database initialized")

    gateway = get_payment_gateway()
    logger.info(f"✅ Payment Gateway: {gateway.provider_name}")

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Restaurant checkout, table booking and payment reconciliation. "
        "Uses a mock gateway for development and Midtrans Snap in staging/production."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _remember(response: Response, key: str, value: int) -> None:
    """Stash the pending id for the error/cancel redirects."""
    response.set_cookie(
        key=key,
        value=str(value),
        max_age=PENDING_COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
    )


async def _read_notification(request: Request) -> GatewayNotification:
    if request.method == "GET":
        payload = dict(request.query_params)
    else:
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("Notification body must be JSON.")
    if not isinstance(payload, dict):
        raise ValidationError("Notification body must be a JSON object.")
    try:
        return GatewayNotification(**payload)
    except PydanticValidationError as e:
        errors = [err["msg"] for err in e.errors()]
        raise ValidationError("Invalid notification data.", detail={"errors": errors}) from e


def _callback_response(outcome: ReconcileOutcome, message: str) -> CallbackResponse:
    return CallbackResponse(
        status="ok",
        message=message,
        reference=outcome.reference,
        target_status=outcome.target_status,
        applied=outcome.applied,
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.count()).select_from(Order))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    # Check payment gateway
    gateway_status = "healthy" if await gateway.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, gateway_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_gateway=gateway_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# STOREFRONT ENDPOINTS
# =============================================================================

@app.post(
    "/api/checkout",
    response_model=CheckoutResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Storefront"],
    summary="Checkout a cart",
)
async def checkout(
    checkout_request: CheckoutRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> CheckoutResponse:
    """
    Create a pending order for the cart and return the gateway token.

    The order stays pending until the gateway notifies the payment outcome.
    """
    logger.info(
        f"Checkout for {checkout_request.customer.name}: "
        f"{len(checkout_request.items)} line(s), {checkout_request.order_type.value}"
    )
    result = await CheckoutOrchestrator(db, gateway, settings).checkout(checkout_request)
    _remember(response, PENDING_ORDER_COOKIE, result.order.id)

    return CheckoutResponse(
        order_id=result.order.id,
        token=result.token,
        redirect_url=result.transaction.redirect_url,
        total_amount=result.order.total_amount,
        discount_amount=result.order.discount_amount,
        client_key=settings.midtrans_client_key,
    )


@app.post(
    "/api/bookings",
    response_model=BookingResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Storefront"],
    summary="Book a table",
)
async def book_table(
    booking_request: BookingRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> BookingResponse:
    """Create a pending reservation and return the token for the booking fee."""
    logger.info(
        f"Booking for {booking_request.customer.name}: {booking_request.reservation_date} "
        f"{booking_request.reservation_time} party={booking_request.party_size}"
    )
    result = await CheckoutOrchestrator(db, gateway, settings).book_table(booking_request)
    _remember(response, PENDING_RESERVATION_COOKIE, result.reservation.id)

    return BookingResponse(
        reservation_id=result.reservation.id,
        table_number=result.table.table_number,
        token=result.token,
        redirect_url=result.transaction.redirect_url,
        booking_fee=result.reservation.booking_fee,
        client_key=settings.midtrans_client_key,
    )


@app.get(
    "/api/tables/available",
    response_model=AvailabilityResponse,
    tags=["Storefront"],
)
async def check_availability(
    reservation_date: date = Query(..., alias="date"),
    reservation_time: time = Query(..., alias="time"),
    party_size: int = Query(..., ge=1),
    db: AsyncSession = Depends(get_db),
) -> AvailabilityResponse:
    """Whether a table fits the party at the requested slot."""
    result = await AvailabilityChecker(db, settings).check(reservation_date, reservation_time, party_size)
    return AvailabilityResponse(
        available=result.available,
        message=result.message,
        tables=[TableResponse.model_validate(table) for table in result.tables],
    )


@app.post(
    "/api/discounts/validate",
    response_model=DiscountResponse,
    responses={422: {"model": ErrorResponse}},
    tags=["Storefront"],
)
async def validate_discount_code(
    body: DiscountValidateRequest,
    db: AsyncSession = Depends(get_db),
) -> DiscountResponse:
    discount = await validate_discount(db, body.code)
    return DiscountResponse(
        code=discount.code,
        discount_type=discount.discount_type,
        discount_value=discount.discount_value,
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Get a specific order by ID."""

    result = await db.execute(
        select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
    )
    order = result.scalar_one_or_none()

    if not order:
        raise NotFoundError(f"Order #{order_id} not found.")

    return OrderResponse.model_validate(order)


@app.get(
    "/api/reservations/{reservation_id}",
    response_model=ReservationResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Reservations"],
)
async def get_reservation(
    reservation_id: int,
    db: AsyncSession = Depends(get_db),
) -> ReservationResponse:
    reservation = await db.get(Reservation, reservation_id)
    if not reservation:
        raise NotFoundError(f"Reservation #{reservation_id} not found.")
    return ReservationResponse.model_validate(reservation)


# =============================================================================
# PAYMENT CALLBACK ENDPOINTS
# =============================================================================

@app.post(
    "/payments/notification",
    response_model=CallbackResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Payments"],
    summary="Gateway notification",
)
async def payment_notification(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> CallbackResponse:
    """
    Server-to-server notification from the gateway.

    Configure this URL in the gateway dashboard (or MIDTRANS_NOTIFICATION_URL).
    Orders and bookings share it; the reference prefix tells them apart.
    A 5xx answer makes the gateway retry later, which is safe.
    """
    notification = await _read_notification(request)
    outcome = await PaymentReconciler(db, gateway, settings).handle_notification(
        notification, source=NotificationSource.SERVER
    )
    return _callback_response(outcome, "Notification processed")


@app.api_route(
    "/payments/orders/finish",
    methods=["GET", "POST"],
    response_model=CallbackResponse,
    tags=["Payments"],
)
@app.api_route(
    "/payments/reservations/finish",
    methods=["GET", "POST"],
    response_model=CallbackResponse,
    tags=["Payments"],
)
async def payment_finish(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> CallbackResponse:
    """
    Browser redirect after the payment popup reports a result.

    The query string is not signed, so only its order_id is used: the
    transaction state is fetched from the gateway and reconciled like a
    server notification. Whichever arrives first settles the record and the
    other becomes a no-op. A reference the gateway never saw changes nothing.
    """
    notification = await _read_notification(request)
    outcome = await PaymentReconciler(db, gateway, settings).handle_notification(
        notification, source=NotificationSource.FINISH_REDIRECT
    )
    cookie = PENDING_ORDER_COOKIE if outcome.kind == PayableKind.ORDER else PENDING_RESERVATION_COOKIE
    response.delete_cookie(cookie)
    return _callback_response(outcome, "Payment result received")


async def _abandon(
    kind: PayableKind,
    local_id: Optional[str],
    reason: str,
    response: Response,
    db: AsyncSession,
    gateway: BasePaymentGateway,
) -> CallbackResponse:
    outcome = await PaymentReconciler(db, gateway, settings).cancel_from_session(kind, local_id, reason)
    cookie = PENDING_ORDER_COOKIE if kind == PayableKind.ORDER else PENDING_RESERVATION_COOKIE
    response.delete_cookie(cookie)

    message = f"{reason}. Please try again."
    if outcome is None:
        return CallbackResponse(status="failed", message=message)
    return CallbackResponse(
        status="failed",
        message=message,
        reference=outcome.reference,
        target_status=outcome.target_status,
        applied=outcome.applied,
    )


@app.api_route("/payments/orders/error", methods=["GET", "POST"], response_model=CallbackResponse, tags=["Payments"])
async def order_payment_error(
    response: Response,
    pending_order_id: Optional[str] = Cookie(None),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> CallbackResponse:
    return await _abandon(PayableKind.ORDER, pending_order_id, "Payment failed", response, db, gateway)


@app.api_route("/payments/orders/cancel", methods=["GET", "POST"], response_model=CallbackResponse, tags=["Payments"])
async def order_payment_cancel(
    response: Response,
    pending_order_id: Optional[str] = Cookie(None),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> CallbackResponse:
    return await _abandon(PayableKind.ORDER, pending_order_id, "Payment cancelled", response, db, gateway)


@app.api_route("/payments/reservations/error", methods=["GET", "POST"], response_model=CallbackResponse, tags=["Payments"])
async def reservation_payment_error(
    response: Response,
    pending_reservation_id: Optional[str] = Cookie(None),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> CallbackResponse:
    return await _abandon(
        PayableKind.RESERVATION, pending_reservation_id, "Payment failed", response, db, gateway
    )


@app.api_route("/payments/reservations/cancel", methods=["GET", "POST"], response_model=CallbackResponse, tags=["Payments"])
async def reservation_payment_cancel(
    response: Response,
    pending_reservation_id: Optional[str] = Cookie(None),
    db: AsyncSession = Depends(get_db),
    gateway: BasePaymentGateway = Depends(get_payment_gateway),
) -> CallbackResponse:
    return await _abandon(
        PayableKind.RESERVATION, pending_reservation_id, "Payment cancelled", response, db, gateway
    )


# =============================================================================
# STAFF ENDPOINTS
# =============================================================================

@app.patch("/api/admin/orders/{order_id}/status", response_model=OrderResponse, tags=["Admin"])
async def admin_update_order_status(
    order_id: int,
    body: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    await admin.update_order_status(db, order_id, body.status)
    return await get_order(order_id, db)


@app.delete("/api/admin/orders/{order_id}", tags=["Admin"])
async def admin_delete_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await admin.delete_order(db, order_id)
    return {"success": True, "message": f"Order #{order_id} deleted"}


@app.post("/api/admin/reservations", response_model=ReservationResponse, tags=["Admin"])
async def admin_create_reservation(
    body: AdminReservationCreate,
    db: AsyncSession = Depends(get_db),
) -> ReservationResponse:
    reservation = await admin.create_reservation(db, body, settings)
    return ReservationResponse.model_validate(reservation)


@app.patch("/api/admin/reservations/{reservation_id}/status", response_model=ReservationResponse, tags=["Admin"])
async def admin_update_reservation_status(
    reservation_id: int,
    body: ReservationStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> ReservationResponse:
    reservation = await admin.update_reservation_status(
        db, reservation_id, body.status, reason=body.reason, settings=settings
    )
    return ReservationResponse.model_validate(reservation)


@app.delete("/api/admin/reservations/{reservation_id}", tags=["Admin"])
async def admin_delete_reservation(
    reservation_id: int,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await admin.delete_reservation(db, reservation_id)
    return {"success": True, "message": f"Reservation #{reservation_id} deleted"}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Translate domain errors into their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.kind} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )

