"""
Payment Gateway Abstract Base Class

Defines the interface contract for all payment gateway clients.
Both MockPaymentGateway and MidtransPaymentGateway implement these methods,
so the checkout orchestrator and the callback reconciler behave identically
regardless of which client is active.

Design Pattern: Strategy Pattern
    - A client is constructed once with its configuration and injected
    - Tests and local development run against the mock client
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class LineItem:
    """One entry of the gateway's item breakdown. Prices are whole currency units."""
    id: str
    price: int
    quantity: int
    name: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "price": self.price,
            "quantity": self.quantity,
            "name": self.name[:50],
        }


@dataclass
class Customer:
    first_name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"first_name": self.first_name}
        if self.email:
            data["email"] = self.email
        if self.phone:
            data["phone"] = self.phone
        return data


@dataclass
class CallbackUrls:
    """Where the payer's browser is sent after the payment popup closes."""
    finish: str
    error: str
    cancel: str

    def to_dict(self) -> dict:
        return {"finish": self.finish, "error": self.error, "cancel": self.cancel}


@dataclass
class TransactionResult:
    """
    Standardized result from a token request.

    Attributes:
        success: Whether the gateway issued a token
        token: Opaque checkout session handle for the payer
        redirect_url: Hosted payment page, if the gateway provides one
        reference: External order reference the token was issued for
        error_message: Error description if the request failed
        error_code: Machine-readable error code
        response_time_ms: Time taken by the gateway
    """
    success: bool
    token: Optional[str] = None
    redirect_url: Optional[str] = None
    reference: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "token": self.token,
            "redirect_url": self.redirect_url,
            "reference": self.reference,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "response_time_ms": self.response_time_ms,
        }


class BasePaymentGateway(ABC):
    """
    Abstract base class for payment gateway clients.

    Example:
        >>> gateway = get_payment_gateway()
        >>> result = await gateway.create_transaction(
        ...     reference="ORDER-12",
        ...     gross_amount=20000,
        ...     line_items=[LineItem("1", 10000, 2, "Es Teh")],
        ...     customer=Customer("Budi"),
        ...     callbacks=urls,
        ... )
        >>> if result.success:
        ...     print(result.token)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the gateway (e.g., "mock", "midtrans")."""
        pass

    @abstractmethod
    async def create_transaction(
        self,
        reference: str,
        gross_amount: int,
        line_items: list[LineItem],
        customer: Customer,
        callbacks: CallbackUrls,
    ) -> TransactionResult:
        """
        Request a checkout token for an external order reference.

        Args:
            reference: Idempotent external id, e.g. "ORDER-12" or "BOOKING-3"
            gross_amount: Amount to charge; must equal the sum of line items
            line_items: Item breakdown, including any negative discount line
            customer: Payer contact details
            callbacks: finish/error/cancel redirect URLs

        Returns:
            TransactionResult: never raises for gateway-side refusals
        """
        pass

    @abstractmethod
    def verify_notification(self, payload: dict) -> bool:
        """
        Check that a server notification was signed by the gateway.

        Args:
            payload: Parsed notification body

        Returns:
            bool: True if the signature matches
        """
        pass

    @abstractmethod
    async def get_transaction_status(self, reference: str) -> Optional[dict]:
        """
        Ask the gateway for the current state of a transaction.

        Args:
            reference: External order reference, e.g. "ORDER-12"

        Returns:
            dict: Status payload in the same shape as a notification
                (order_id, transaction_id, transaction_status, status_code,
                gross_amount, fraud_status, payment_type), or None if the
                gateway has no transaction for the reference

        Raises:
            GatewayError: The gateway could not be asked
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the gateway.

        Returns:
            bool: True if the gateway is reachable and configured
        """
        pass
