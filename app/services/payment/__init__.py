"""
Payment Gateway Factory

Provides a single entry point for obtaining the gateway client. The client
is constructed once with its configuration and injected into the checkout
orchestrator and the callback reconciler.

Usage:
    from app.services.payment import get_payment_gateway

    # Returns MockPaymentGateway or MidtransPaymentGateway based on ENV_MODE
    gateway = get_payment_gateway()

Environment Switching:
    - ENV_MODE=development → MockPaymentGateway (no API calls)
    - ENV_MODE=staging → MidtransPaymentGateway (sandbox keys)
    - ENV_MODE=production → MidtransPaymentGateway (production keys)
"""

import logging
from functools import lru_cache

from app.core.config import get_settings
from app.services.payment.base import (
    BasePaymentGateway,
    CallbackUrls,
    Customer,
    LineItem,
    TransactionResult,
)
from app.services.payment.mock import MockPaymentGateway
from app.services.payment.midtrans import MidtransPaymentGateway

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_gateway() -> BasePaymentGateway:
    """
    Get the configured gateway client.

    The instance is cached so every request shares one client.

    Raises:
        ValueError: If staging/production but the server key is not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Gateway: Using MockPaymentGateway (development mode)")
        return MockPaymentGateway(
            failure_rate=0.05,  # 5% simulated refusals
            min_latency=0.1,
            max_latency=0.4,
            server_key=settings.midtrans_server_key or "mock-server-key",
        )

    logger.info(
        f"Payment Gateway: Using MidtransPaymentGateway "
        f"({settings.env_mode.value} mode)"
    )
    return MidtransPaymentGateway(settings)


def reset_payment_gateway() -> None:
    """
    Clear the cached gateway instance.

    The next call to get_payment_gateway() builds a new client.
    """
    get_payment_gateway.cache_clear()
    logger.debug("Payment gateway cache cleared")


__all__ = [
    "get_payment_gateway",
    "reset_payment_gateway",
    "BasePaymentGateway",
    "CallbackUrls",
    "Customer",
    "LineItem",
    "TransactionResult",
    "MockPaymentGateway",
    "MidtransPaymentGateway",
]
