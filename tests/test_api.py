from datetime import date, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from app.database import get_db
from app.main import app
from app.models import Discount, DiscountType, MenuItem, Order, OrderStatus, PaymentStatus, Reservation
from app.services.payment import get_payment_gateway
from tests.conftest import add_all, fetch, make_order

NEXT_WEEK = (date.today() + timedelta(days=7)).isoformat()


@pytest.fixture
async def client(session_factory, gateway):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


def checkout_body(menu_item_id, quantity=1, **fields) -> dict:
    body = {
        "order_type": "takeaway",
        "customer": {"name": "Budi Santoso", "email": "budi@example.com", "phone": "081234567890"},
        "items": [{"menu_item_id": menu_item_id, "quantity": quantity}],
    }
    body.update(fields)
    return body


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["health"] == "/health"


# =============================================================================
# CHECKOUT & REDIRECTS
# =============================================================================

async def test_checkout_returns_token_and_remembers_order(client, menu):
    response = await client.post("/api/checkout", json=checkout_body(menu[0].id, 2))

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["token"].startswith("snap_mock_")
    assert data["total_amount"] == 20000
    assert response.cookies["pending_order_id"] == str(data["order_id"])


async def test_cancel_redirect_cancels_remembered_order(client, session_factory, menu):
    created = (await client.post("/api/checkout", json=checkout_body(menu[0].id))).json()

    response = await client.get("/payments/orders/cancel")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "failed"
    assert data["reference"] == f"ORDER-{created['order_id']}"
    assert (await fetch(session_factory, Order, created["order_id"])).status == OrderStatus.CANCELLED


async def test_error_redirect_without_cookie_is_noop(client):
    response = await client.post("/payments/orders/error")

    assert response.status_code == 200
    assert response.json()["reference"] is None


async def test_checkout_validation_errors(client, menu):
    response = await client.post("/api/checkout", json=checkout_body(menu[0].id, items=[]))
    assert response.status_code == 422

    response = await client.post("/api/checkout", json=checkout_body(999))
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"

    response = await client.post("/api/checkout", json=checkout_body(menu[2].id))
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


async def test_gateway_refusal_is_502_and_leaves_nothing(session_factory, failing_gateway, menu):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: failing_gateway
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            response = await client.post("/api/checkout", json=checkout_body(menu[0].id))
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 502
    assert response.json()["error"] == "gateway_error"
    assert "pending_order_id" not in response.cookies


# =============================================================================
# NOTIFICATIONS
# =============================================================================

async def test_notification_settles_order_once(client, session_factory, gateway, menu):
    order = await make_order(session_factory, [menu[0]], [3])
    payload = gateway.build_notification(f"ORDER-{order.id}", "settlement", 30000, transaction_id="TX-API")

    first = await client.post("/payments/notification", json=payload)
    second = await client.post("/payments/notification", json=payload)

    assert first.status_code == 200
    assert first.json()["target_status"] == "processing"
    assert first.json()["applied"] is True
    assert second.json()["applied"] is False
    assert (await fetch(session_factory, MenuItem, menu[0].id)).stock_quantity == 7


async def test_finish_redirect_query_cannot_mark_order_paid(client, session_factory, menu):
    order = await make_order(session_factory, [menu[0]], [4])

    response = await client.get(
        "/payments/orders/finish",
        params={
            "order_id": f"ORDER-{order.id}",
            "transaction_status": "settlement",
            "transaction_id": "TX-FORGED",
            "status_code": "200",
        },
    )

    assert response.status_code == 200
    assert response.json()["applied"] is False
    assert response.json()["target_status"] == "pending"
    stored = await fetch(session_factory, Order, order.id)
    assert stored.status == OrderStatus.PENDING
    assert stored.payment_status == PaymentStatus.PENDING
    assert (await fetch(session_factory, MenuItem, menu[0].id)).stock_quantity == 10


async def test_finish_redirect_settles_from_gateway_status(client, session_factory, gateway, menu):
    order = await make_order(session_factory, [menu[0]], [1])
    gateway.build_notification(f"ORDER-{order.id}", "capture", 10000, transaction_id="TX-FINISH")

    response = await client.get(
        "/payments/orders/finish",
        params={"order_id": f"ORDER-{order.id}", "status_code": "200", "transaction_status": "capture"},
    )

    assert response.status_code == 200
    assert response.json()["applied"] is True
    assert (await fetch(session_factory, Order, order.id)).status == OrderStatus.PROCESSING


async def test_notification_rejections(client, gateway, menu, session_factory):
    order = await make_order(session_factory, [menu[0]], [1])
    payload = gateway.build_notification(f"ORDER-{order.id}", "settlement", 10000)

    tampered = dict(payload, gross_amount="1.00")
    response = await client.post("/payments/notification", json=tampered)
    assert response.status_code == 403
    assert response.json()["error"] == "invalid_signature"

    response = await client.post("/payments/notification", json={"transaction_status": "settlement"})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"

    response = await client.post(
        "/payments/notification", content=b"not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 422

    unknown = gateway.build_notification("ORDER-999", "settlement", 10000)
    response = await client.post("/payments/notification", json=unknown)
    assert response.status_code == 404

    assert (await fetch(session_factory, Order, order.id)).status == OrderStatus.PENDING


# =============================================================================
# BOOKINGS
# =============================================================================

async def test_availability_and_booking(client, session_factory, gateway, tables):
    response = await client.get(
        "/api/tables/available", params={"date": NEXT_WEEK, "time": "19:00", "party_size": 4}
    )
    assert response.status_code == 200
    availability = response.json()
    assert availability["available"] is True
    assert [t["table_number"] for t in availability["tables"]] == [2, 3]

    response = await client.post(
        "/api/bookings",
        json={
            "customer": {"name": "Siti Wijaya"},
            "date": NEXT_WEEK,
            "time": "19:00",
            "party_size": 4,
        },
    )
    assert response.status_code == 200
    booking = response.json()
    assert booking["table_number"] == 2
    assert booking["booking_fee"] == 100000
    assert response.cookies["pending_reservation_id"] == str(booking["reservation_id"])

    payload = gateway.build_notification(f"BOOKING-{booking['reservation_id']}", "settlement", 100000)
    response = await client.post("/payments/notification", json=payload)
    assert response.json()["target_status"] == "confirmed"

    response = await client.get(f"/api/reservations/{booking['reservation_id']}")
    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"


async def test_booking_too_large_party_for_table_conflicts(client, tables):
    response = await client.post(
        "/api/bookings",
        json={
            "customer": {"name": "Siti Wijaya"},
            "date": NEXT_WEEK,
            "time": "19:00",
            "party_size": 5,
            "table_id": tables[1].id,
        },
    )
    assert response.status_code == 409


# =============================================================================
# DISCOUNTS, READS AND STAFF
# =============================================================================

async def test_discount_validation_endpoint(client, session_factory):
    await add_all(
        session_factory,
        Discount(
            code="HEMAT",
            discount_type=DiscountType.FIXED,
            discount_value=15000,
            start_date=date.today() - timedelta(days=1),
            end_date=date.today() + timedelta(days=1),
            is_active=True,
        ),
    )

    response = await client.post("/api/discounts/validate", json={"code": "HEMAT"})
    assert response.status_code == 200
    assert response.json()["discount_type"] == "fixed"

    response = await client.post("/api/discounts/validate", json={"code": "NOPE"})
    assert response.status_code == 422
    assert response.json()["detail"] == "Invalid discount code."


async def test_get_order(client, session_factory, menu):
    order = await make_order(session_factory, menu[:2], [1, 2])

    response = await client.get(f"/api/orders/{order.id}")
    assert response.status_code == 200
    data = response.json()
    assert data["total_amount"] == 20000
    assert [item["subtotal"] for item in data["items"]] == [10000, 10000]

    assert (await client.get("/api/orders/999")).status_code == 404


async def test_admin_order_and_reservation_endpoints(client, session_factory, menu, tables):
    order = await make_order(session_factory, [menu[0]], [1], status=OrderStatus.PROCESSING)

    response = await client.patch(f"/api/admin/orders/{order.id}/status", json={"status": "completed"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.delete(f"/api/admin/orders/{order.id}")
    assert response.status_code == 409

    response = await client.post(
        "/api/admin/reservations",
        json={
            "table_id": tables[0].id,
            "customer_name": "Walk-in Guest",
            "reservation_date": NEXT_WEEK,
            "reservation_time": "12:00",
            "number_of_guests": 2,
        },
    )
    assert response.status_code == 200
    reservation_id = response.json()["id"]

    response = await client.patch(
        f"/api/admin/reservations/{reservation_id}/status", json={"status": "cancelled", "reason": "No card"}
    )
    assert response.status_code == 200
    assert response.json()["cancellation_reason"] == "No card"

    response = await client.delete(f"/api/admin/reservations/{reservation_id}")
    assert response.status_code == 200
    assert await fetch(session_factory, Reservation, reservation_id) is None
