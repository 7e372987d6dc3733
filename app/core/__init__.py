"""
Core module initialization.
Exports configuration and the service error taxonomy.
"""

from app.core.config import get_settings, Settings, EnvironmentMode
from app.core.exceptions import (
    ServiceError,
    ValidationError,
    NotFoundError,
    ConflictError,
    GatewayError,
    SignatureError,
    ReconciliationError,
    LookupFailedError,
)

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "GatewayError",
    "SignatureError",
    "ReconciliationError",
    "LookupFailedError",
]
