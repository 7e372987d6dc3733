"""
Midtrans Snap Gateway Implementation

Production client for the Midtrans Snap API, used when ENV_MODE=staging
(sandbox) or ENV_MODE=production.

Requirements:
    - MIDTRANS_SERVER_KEY must be set in environment
    - MIDTRANS_IS_PRODUCTION selects the production endpoint

Security Notes:
    - The server key is sent as HTTP Basic username with an empty password
    - Notifications are authenticated with
      sha512(order_id + status_code + gross_amount + server_key)

API Documentation:
    https://docs.midtrans.com/reference/backend-integration
"""

import hashlib
import hmac
import logging
from datetime import datetime
from typing import Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.exceptions import GatewayError
from app.services.payment.base import (
    BasePaymentGateway,
    CallbackUrls,
    Customer,
    LineItem,
    TransactionResult,
)

logger = logging.getLogger(__name__)

SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
PRODUCTION_SNAP_URL = "https://app.midtrans.com/snap/v1/transactions"
SANDBOX_API_URL = "https://api.sandbox.midtrans.com/v2"
PRODUCTION_API_URL = "https://api.midtrans.com/v2"


class MidtransPaymentGateway(BasePaymentGateway):
    """
    Midtrans Snap client.

    The client is built once from Settings and shared; it holds no
    per-request state, so concurrent requests can use the same instance.

    Example:
        >>> gateway = MidtransPaymentGateway()
        >>> result = await gateway.create_transaction(...)
        >>> result.token
        '66e4fa55-fdac-4ef9-91b5-733b97d1b862'
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the Snap client.

        Raises:
            ValueError: If MIDTRANS_SERVER_KEY is not configured
        """
        settings = settings or get_settings()

        if not settings.midtrans_server_key:
            raise ValueError(
                "MIDTRANS_SERVER_KEY is required outside development mode. "
                "Set it in your .env file or environment variables."
            )

        self._server_key = settings.midtrans_server_key
        self._snap_url = PRODUCTION_SNAP_URL if settings.midtrans_is_production else SANDBOX_SNAP_URL
        self._api_url = PRODUCTION_API_URL if settings.midtrans_is_production else SANDBOX_API_URL
        self._enabled_payments = settings.enabled_payments_list
        self._notification_url = settings.midtrans_notification_url
        self._timeout = settings.midtrans_timeout_seconds
        self._transport = transport

        logger.info(
            f"MidtransPaymentGateway initialized "
            f"(production={settings.midtrans_is_production})"
        )

    @property
    def provider_name(self) -> str:
        return "midtrans"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self._notification_url:
            headers["X-Override-Notification"] = self._notification_url
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(self._server_key, ""),
            timeout=self._timeout,
            transport=self._transport,
        )

    async def create_transaction(
        self,
        reference: str,
        gross_amount: int,
        line_items: list[LineItem],
        customer: Customer,
        callbacks: CallbackUrls,
    ) -> TransactionResult:
        """Request a Snap token. Transport and API failures become a failed result."""
        start_time = datetime.now()
        params = {
            "transaction_details": {
                "order_id": reference,
                "gross_amount": int(gross_amount),
            },
            "customer_details": customer.to_dict(),
            "item_details": [item.to_dict() for item in line_items],
            "enabled_payments": self._enabled_payments,
            "callbacks": callbacks.to_dict(),
        }

        logger.info(f"Midtrans: Requesting Snap token for {reference} ({gross_amount})")
        logger.debug(f"Midtrans parameters: {params}")

        try:
            async with self._client() as client:
                response = await client.post(self._snap_url, json=params, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Midtrans: Connection error for {reference}: {e}")
            return TransactionResult(
                success=False,
                reference=reference,
                error_code="connection_error",
                error_message=f"Could not reach the payment gateway: {e}",
            )

        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 201 or "token" not in body:
            messages = body.get("error_messages") or [response.text[:200]]
            logger.error(
                f"Midtrans: Token request failed for {reference} - "
                f"HTTP {response.status_code}: {messages}"
            )
            return TransactionResult(
                success=False,
                reference=reference,
                error_code=str(response.status_code),
                error_message="; ".join(str(m) for m in messages),
                response_time_ms=elapsed_ms,
            )

        logger.info(f"Midtrans: Snap token issued for {reference}")

        return TransactionResult(
            success=True,
            token=body["token"],
            redirect_url=body.get("redirect_url"),
            reference=reference,
            response_time_ms=elapsed_ms,
        )

    def verify_notification(self, payload: dict) -> bool:
        signature = payload.get("signature_key")
        if not signature:
            return False
        raw = (
            f"{payload.get('order_id', '')}"
            f"{payload.get('status_code', '')}"
            f"{payload.get('gross_amount', '')}"
            f"{self._server_key}"
        )
        expected = hashlib.sha512(raw.encode("utf-8")).hexdigest()
        return hmac.compare_digest(expected, str(signature))

    async def get_transaction_status(self, reference: str) -> Optional[dict]:
        """
        Fetch the authoritative transaction state with GET /v2/{order_id}/status.

        The gateway answers an unknown order with status_code "404" in the
        body, which is reported as None.
        """
        url = f"{self._api_url}/{reference}/status"
        logger.info(f"Midtrans: Fetching status for {reference}")

        try:
            async with self._client() as client:
                response = await client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Midtrans: Status request failed for {reference}: {e}")
            raise GatewayError(f"Could not reach the payment gateway: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code == 404 or str(body.get("status_code")) == "404":
            logger.info(f"Midtrans: No transaction for {reference}")
            return None
        if response.status_code != 200 or not body.get("transaction_status"):
            logger.error(
                f"Midtrans: Status lookup for {reference} failed - "
                f"HTTP {response.status_code}: {body.get('status_message') or response.text[:200]}"
            )
            raise GatewayError(
                "The payment gateway did not return a transaction status.",
                detail={"reference": reference, "http_status": response.status_code},
            )

        logger.info(f"Midtrans: {reference} is {body['transaction_status']}")
        return body

    async def health_check(self) -> bool:
        """
        Check that the Snap endpoint is reachable with our key.

        An empty body gets a 400 validation answer from a healthy gateway;
        401 means the key is wrong and 5xx means the gateway is down.
        """
        try:
            async with self._client() as client:
                response = await client.post(self._snap_url, json={}, headers=self._headers())
            return response.status_code not in (401, 403) and response.status_code < 500
        except httpx.HTTPError as e:
            logger.error(f"Midtrans health check failed: {e}")
            return False
