"""
Service Error Taxonomy

Every failure raised by the checkout, booking and reconciliation services is
a ServiceError carrying a machine-readable kind and a human message, so the
HTTP layer can translate it once and the UI can localize it.
"""

from typing import Optional


class ServiceError(Exception):
    """Base class for all domain errors."""

    kind = "service_error"
    status_code = 500

    def __init__(self, message: str, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        body = {
            "success": False,
            "error": self.kind,
            "detail": self.message,
        }
        if self.detail:
            body["context"] = self.detail
        return body


class ValidationError(ServiceError):
    """Bad input: malformed date, empty cart, outside opening hours."""

    kind = "validation_error"
    status_code = 422


class NotFoundError(ServiceError):
    """Unknown order, reservation, table or menu item reference."""

    kind = "not_found"
    status_code = 404


class ConflictError(ServiceError):
    """Table no longer available, capacity exceeded, stock exhausted."""

    kind = "conflict"
    status_code = 409


class GatewayError(ServiceError):
    """The payment gateway refused or failed to issue a transaction token."""

    kind = "gateway_error"
    status_code = 502


class SignatureError(ServiceError):
    """A server notification failed signature verification."""

    kind = "invalid_signature"
    status_code = 403


class ReconciliationError(ServiceError):
    """Storage failure while applying a gateway notification; safe to retry."""

    kind = "reconciliation_error"
    status_code = 500


class LookupFailedError(ServiceError):
    """Storage failure during a read-only lookup."""

    kind = "lookup_failed"
    status_code = 503
