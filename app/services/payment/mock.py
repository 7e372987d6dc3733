"""
Mock Payment Gateway Implementation

Simulates Snap-like token issuance without making real API calls.
Used in development mode (ENV_MODE=development) and in tests to:
    - Exercise the full checkout flow locally
    - Drive the callback endpoints with simulated notifications
    - Reproduce gateway refusals on demand

Behavior:
    - Simulates response times (configurable, zero in tests)
    - Randomly refuses a share of token requests (failure_rate)
    - Generates Snap-like tokens and transaction ids
    - Signs notifications the same way the real gateway does
    - Remembers the notifications it emits and answers status lookups
      from them, so a reference it never saw has no transaction
"""

import asyncio
import hashlib
import random
import uuid
import logging
from typing import Optional

from app.services.payment.base import (
    BasePaymentGateway,
    CallbackUrls,
    Customer,
    LineItem,
    TransactionResult,
)

logger = logging.getLogger(__name__)


class MockPaymentGateway(BasePaymentGateway):
    """
    Mock implementation of the payment gateway.

    Attributes:
        failure_rate: Probability of a simulated refusal (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        server_key: Key used to sign simulated notifications

    Example:
        >>> gateway = MockPaymentGateway(failure_rate=0.0)
        >>> result = await gateway.create_transaction(...)
        >>> result.token.startswith("snap_mock_")
        True
    """

    # status_code the gateway sends with each transaction_status
    STATUS_CODES = {
        "capture": "200",
        "settlement": "200",
        "pending": "201",
        "deny": "202",
        "cancel": "202",
        "expire": "202",
    }

    DECLINE_REASONS = [
        ("400", "transaction_details.gross_amount is not equal to the sum of item_details"),
        ("401", "Access denied due to unauthorized transaction, please check client or server key"),
        ("500", "Sorry, we encountered internal server error. We will fix this soon."),
        ("503", "Service unavailable, please try again later"),
    ]

    def __init__(
        self,
        failure_rate: float = 0.05,
        min_latency: float = 0.1,
        max_latency: float = 0.4,
        server_key: str = "mock-server-key",
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.server_key = server_key
        self.issued: dict[str, TransactionResult] = {}
        self.transactions: dict[str, dict] = {}

        logger.info(
            f"MockPaymentGateway initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    async def _simulate_latency(self) -> float:
        """Simulate network latency, returns milliseconds."""
        latency = random.uniform(self.min_latency, self.max_latency)
        if latency > 0:
            await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def create_transaction(
        self,
        reference: str,
        gross_amount: int,
        line_items: list[LineItem],
        customer: Customer,
        callbacks: CallbackUrls,
    ) -> TransactionResult:
        """
        Simulate a Snap token request.

        Applies the same amount check the real gateway does: gross_amount
        must be positive and equal to the sum of the item breakdown.
        """
        logger.debug(f"Mock: Token request for {reference} - {gross_amount}")

        items_total = sum(item.price * item.quantity for item in line_items)
        if gross_amount <= 0 or items_total != gross_amount:
            return TransactionResult(
                success=False,
                reference=reference,
                error_code="400",
                error_message=(
                    "transaction_details.gross_amount is not equal to the sum of item_details"
                    if gross_amount > 0 else "transaction_details.gross_amount must be positive"
                ),
            )

        latency_ms = await self._simulate_latency()

        if self._should_fail():
            error_code, error_message = random.choice(self.DECLINE_REASONS)
            logger.debug(f"Mock: Token request refused - {error_code}")
            return TransactionResult(
                success=False,
                reference=reference,
                error_code=error_code,
                error_message=error_message,
                response_time_ms=latency_ms,
            )

        token = f"snap_mock_{uuid.uuid4().hex[:24]}"
        result = TransactionResult(
            success=True,
            token=token,
            redirect_url=f"https://mock.gateway.local/snap/v2/vtweb/{token}",
            reference=reference,
            response_time_ms=latency_ms,
            metadata={
                "gross_amount": gross_amount,
                "customer": customer.to_dict(),
                "callbacks": callbacks.to_dict(),
                "mock": True,
            },
        )
        self.issued[reference] = result

        logger.info(f"Mock: Token issued for {reference} - {gross_amount}")
        return result

    def sign(self, order_id: str, status_code: str, gross_amount: str) -> str:
        """Compute the signature the gateway would attach to a notification."""
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(raw.encode("utf-8")).hexdigest()

    def build_notification(
        self,
        reference: str,
        transaction_status: str,
        gross_amount: float,
        transaction_id: Optional[str] = None,
        payment_type: str = "bank_transfer",
        fraud_status: Optional[str] = None,
    ) -> dict:
        """
        Produce a signed notification payload, for simulations and tests.

        The transaction is remembered as the gateway's current state for
        the reference, except that a late "pending" never replaces a
        status the transaction already moved past.
        """
        if transaction_status == "capture" and fraud_status == "challenge":
            status_code = "201"
        else:
            status_code = self.STATUS_CODES.get(transaction_status, "201")
        amount = f"{gross_amount:.2f}"
        payload = {
            "order_id": reference,
            "transaction_id": transaction_id or str(uuid.uuid4()),
            "transaction_status": transaction_status,
            "gross_amount": amount,
            "payment_type": payment_type,
            "status_code": status_code,
            "signature_key": self.sign(reference, status_code, amount),
        }
        if fraud_status:
            payload["fraud_status"] = fraud_status

        current = self.transactions.get(reference)
        if not (current and current["transaction_status"] != "pending" and transaction_status == "pending"):
            self.transactions[reference] = {k: v for k, v in payload.items() if k != "signature_key"}
        return payload

    def verify_notification(self, payload: dict) -> bool:
        signature = payload.get("signature_key")
        if not signature:
            logger.warning("Mock: Notification without signature_key")
            return False
        expected = self.sign(
            str(payload.get("order_id", "")),
            str(payload.get("status_code", "")),
            str(payload.get("gross_amount", "")),
        )
        return signature == expected

    async def get_transaction_status(self, reference: str) -> Optional[dict]:
        await self._simulate_latency()
        status = self.transactions.get(reference)
        if status is None:
            logger.debug(f"Mock: No transaction for {reference}")
            return None
        return dict(status)

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        logger.debug("Mock: Health check passed")
        return True
