import base64
import hashlib
import json

import httpx
import pytest

from app.core.config import Settings
from app.core.exceptions import GatewayError
from app.services.payment.base import CallbackUrls, Customer, LineItem
from app.services.payment.midtrans import (
    PRODUCTION_SNAP_URL,
    SANDBOX_SNAP_URL,
    MidtransPaymentGateway,
)

SERVER_KEY = "SB-Mid-server-test"

CALLBACKS = CallbackUrls(
    finish="http://testserver/payments/orders/finish",
    error="http://testserver/payments/orders/error",
    cancel="http://testserver/payments/orders/cancel",
)


def midtrans_settings(**overrides) -> Settings:
    values = {"env_mode": "staging", "midtrans_server_key": SERVER_KEY}
    values.update(overrides)
    return Settings(**values)


def gateway_answering(handler, **overrides) -> MidtransPaymentGateway:
    return MidtransPaymentGateway(midtrans_settings(**overrides), transport=httpx.MockTransport(handler))


async def request_token(gateway):
    return await gateway.create_transaction(
        reference="ORDER-7",
        gross_amount=18000,
        line_items=[
            LineItem("1", 10000, 2, "Nasi Goreng"),
            LineItem("DISCOUNT", -2000, 1, "Discount WELCOME10"),
        ],
        customer=Customer("Budi", email="budi@example.com"),
        callbacks=CALLBACKS,
    )


def test_missing_server_key_is_rejected():
    with pytest.raises(ValueError, match="MIDTRANS_SERVER_KEY"):
        MidtransPaymentGateway(Settings(env_mode="staging", midtrans_server_key=None))


async def test_token_request_payload_and_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["override"] = request.headers.get("x-override-notification")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"token": "snap-token-1", "redirect_url": "https://pay/1"})

    gateway = gateway_answering(handler, midtrans_notification_url="http://hooks/notify")
    result = await request_token(gateway)

    assert result.success is True
    assert result.token == "snap-token-1"
    assert result.redirect_url == "https://pay/1"
    assert seen["url"] == SANDBOX_SNAP_URL
    assert seen["auth"] == "Basic " + base64.b64encode(f"{SERVER_KEY}:".encode()).decode()
    assert seen["override"] == "http://hooks/notify"
    assert seen["body"]["transaction_details"] == {"order_id": "ORDER-7", "gross_amount": 18000}
    assert seen["body"]["item_details"][1]["price"] == -2000
    assert seen["body"]["callbacks"]["finish"] == CALLBACKS.finish
    assert "gopay" in seen["body"]["enabled_payments"]


async def test_production_endpoint_is_selected():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(201, json={"token": "t"})

    await request_token(gateway_answering(handler, midtrans_is_production=True))

    assert seen["url"] == PRODUCTION_SNAP_URL


async def test_api_refusal_becomes_failed_result():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error_messages": ["transaction_details.gross_amount is not equal"]})

    result = await request_token(gateway_answering(handler))

    assert result.success is False
    assert result.error_code == "400"
    assert "gross_amount" in result.error_message


async def test_connection_error_becomes_failed_result():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await request_token(gateway_answering(handler))

    assert result.success is False
    assert result.error_code == "connection_error"


def test_notification_signature():
    gateway = MidtransPaymentGateway(midtrans_settings())
    payload = {"order_id": "ORDER-7", "status_code": "200", "gross_amount": "18000.00"}
    payload["signature_key"] = hashlib.sha512(f"ORDER-720018000.00{SERVER_KEY}".encode()).hexdigest()

    assert gateway.verify_notification(payload) is True
    assert gateway.verify_notification(dict(payload, gross_amount="1.00")) is False
    assert gateway.verify_notification({"order_id": "ORDER-7"}) is False


@pytest.mark.parametrize("status_code, healthy", [(400, True), (401, False), (503, False)])
async def test_health_check(status_code, healthy):
    gateway = gateway_answering(lambda request: httpx.Response(status_code, json={}))

    assert await gateway.health_check() is healthy


async def test_transaction_status_lookup():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        return httpx.Response(
            200,
            json={
                "status_code": "200",
                "order_id": "ORDER-7",
                "transaction_id": "b7c3f1d2",
                "transaction_status": "settlement",
                "gross_amount": "18000.00",
                "payment_type": "gopay",
            },
        )

    status = await gateway_answering(handler).get_transaction_status("ORDER-7")

    assert seen == {"method": "GET", "url": "https://api.sandbox.midtrans.com/v2/ORDER-7/status"}
    assert status["transaction_status"] == "settlement"
    assert status["transaction_id"] == "b7c3f1d2"


async def test_unknown_transaction_status_is_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status_code": "404", "status_message": "Transaction doesn't exist."})

    assert await gateway_answering(handler).get_transaction_status("ORDER-8") is None


@pytest.mark.parametrize("failure", ["connection", "server_error"])
async def test_status_lookup_failure_raises_gateway_error(failure):
    def handler(request: httpx.Request) -> httpx.Response:
        if failure == "connection":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(500, json={"status_message": "internal error"})

    with pytest.raises(GatewayError):
        await gateway_answering(handler).get_transaction_status("ORDER-7")
