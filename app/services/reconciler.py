"""
Payment Callback Reconciler

Consumes gateway notifications and moves Payment, Order/Reservation, Table
and stock state together.

Entry points:
    - handle_notification(..., source=SERVER): server-to-server callback,
      authoritative, may be delayed, duplicated or out of order
    - handle_notification(..., source=FINISH_REDIRECT): browser redirect
      after the popup closes; its query string is unauthenticated, so only
      the reference is taken from it and the transaction state is fetched
      from the gateway
    - cancel_from_session(): error/cancel redirects that only know the id
      the storefront remembered for the payer

Each notification is applied as one unit of work: the Payment upsert and
the payable transition commit together or not at all.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    GatewayError,
    NotFoundError,
    ReconciliationError,
    SignatureError,
    ValidationError,
)
from app.models import PayableKind, Payment, PaymentStatus
from app.schemas import GatewayNotification
from app.services.payables import Payable, load_payable, parse_reference
from app.services.payment.base import BasePaymentGateway

logger = logging.getLogger(__name__)


class TransactionBucket(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
    UNKNOWN = "unknown"


class NotificationSource(str, enum.Enum):
    SERVER = "server"
    FINISH_REDIRECT = "finish_redirect"


SUCCESS_STATUSES = frozenset({"capture", "settlement"})
FAILURE_STATUSES = frozenset({"cancel", "deny", "expire"})
PENDING_STATUSES = frozenset({"pending"})

# Raw gateway status -> normalized Payment.status
PAYMENT_STATUS_MAP = {
    "capture": PaymentStatus.SUCCESS,
    "settlement": PaymentStatus.SUCCESS,
    "pending": PaymentStatus.PENDING,
    "deny": PaymentStatus.FAILED,
    "cancel": PaymentStatus.FAILED,
    "failure": PaymentStatus.FAILED,
    "expire": PaymentStatus.EXPIRED,
    "refund": PaymentStatus.REFUNDED,
    "partial_refund": PaymentStatus.REFUNDED,
}

FINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.SUCCESS,
    PaymentStatus.FAILED,
    PaymentStatus.EXPIRED,
    PaymentStatus.REFUNDED,
})

# status_code the gateway signs alongside each transaction_status
EXPECTED_STATUS_CODES = {
    "capture": frozenset({"200", "201"}),
    "settlement": frozenset({"200"}),
    "pending": frozenset({"201"}),
    "deny": frozenset({"202"}),
    "cancel": frozenset({"200", "202"}),
    "expire": frozenset({"202", "407"}),
}


def classify(transaction_status: str, fraud_status: Optional[str] = None) -> TransactionBucket:
    """Three-way split of gateway statuses; anything else is UNKNOWN."""
    status = transaction_status.strip().lower()
    if status == "capture" and (fraud_status or "").lower() == "challenge":
        # Card captured but held for fraud review
        return TransactionBucket.PENDING
    if status in SUCCESS_STATUSES:
        return TransactionBucket.SUCCESS
    if status in FAILURE_STATUSES:
        return TransactionBucket.FAILURE
    if status in PENDING_STATUSES:
        return TransactionBucket.PENDING
    return TransactionBucket.UNKNOWN


def status_code_matches(notification: GatewayNotification) -> bool:
    """
    The signature covers status_code but not transaction_status, so the
    two must agree. A success additionally needs status_code 200.
    """
    status = (notification.transaction_status or "").strip().lower()
    expected = EXPECTED_STATUS_CODES.get(status)
    if expected is None:
        return True
    if notification.status_code not in expected:
        return False
    bucket = classify(status, notification.fraud_status)
    return bucket != TransactionBucket.SUCCESS or notification.status_code == "200"


@dataclass
class ReconcileOutcome:
    """What a notification did. applied is False for replays and no-ops."""
    reference: str
    kind: PayableKind
    target_id: int
    bucket: TransactionBucket
    target_status: str
    payment_id: Optional[int] = None
    applied: bool = False


class PaymentReconciler:
    """
    Applies gateway facts to the ledger.

    Example:
        >>> reconciler = PaymentReconciler(db, gateway)
        >>> outcome = await reconciler.handle_notification(payload)
        >>> outcome.target_status
        'processing'
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: BasePaymentGateway,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()

    async def handle_notification(
        self,
        notification: GatewayNotification,
        source: NotificationSource = NotificationSource.SERVER,
    ) -> ReconcileOutcome:
        """
        Validate, authenticate and reconcile.

        Server notifications are checked against their signature and must
        carry a transaction_status that agrees with the signed status_code.
        Finish redirects only contribute the reference; the state applied
        is whatever the gateway reports for it.

        Raises:
            ValidationError: reference, status or transaction id missing
            SignatureError: server notification with a bad signature
            NotFoundError: reference does not resolve
            GatewayError: the gateway status lookup failed
            ReconciliationError: storage failure, nothing was persisted
        """
        logger.info(
            f"Notification ({source.value}): order_id={notification.order_id} "
            f"status={notification.transaction_status} tx={notification.transaction_id}"
        )

        if source == NotificationSource.FINISH_REDIRECT:
            if not notification.order_id:
                raise ValidationError("Invalid redirect: order_id is required.")
            return await self.reconcile_from_gateway(notification.order_id)

        if not notification.order_id or not notification.transaction_status:
            logger.error(
                f"Missing required notification data: order_id={notification.order_id} "
                f"status={notification.transaction_status}"
            )
            raise ValidationError("Invalid notification data: order_id and transaction_status are required.")
        if not notification.transaction_id:
            raise ValidationError("Invalid notification data: transaction_id is required.")

        if not status_code_matches(notification):
            logger.warning(
                f"Rejected notification for {notification.order_id}: "
                f"{notification.transaction_status!r} sent with status_code {notification.status_code}"
            )
            raise SignatureError("Notification status does not match its signed status code.")

        if (
            self.settings.verify_notification_signature
            and not self.gateway.verify_notification(notification.model_dump())
        ):
            logger.warning(f"Rejected notification for {notification.order_id}: bad signature")
            raise SignatureError("Notification signature does not match.")

        return await self.reconcile(notification)

    async def reconcile_from_gateway(self, reference: str) -> ReconcileOutcome:
        """
        Reconcile a reference from the gateway's own view of its transaction.

        A reference the gateway has no transaction for is left untouched.
        """
        payable_type, record_id = parse_reference(reference)
        status = await self.gateway.get_transaction_status(reference)

        if status is None:
            payable = await load_payable(self.db, payable_type.kind, record_id)
            logger.warning(f"{payable.reference}: redirect without a gateway transaction ignored")
            return ReconcileOutcome(
                reference=payable.reference,
                kind=payable.kind,
                target_id=payable.id,
                bucket=TransactionBucket.UNKNOWN,
                target_status=payable.status.value,
                payment_id=payable.record.payment_id,
            )

        notification = GatewayNotification(**{**status, "order_id": reference})
        if not notification.transaction_status or not notification.transaction_id:
            raise GatewayError(
                "The payment gateway returned an incomplete transaction status.",
                detail={"reference": reference},
            )
        return await self.reconcile(notification)

    async def reconcile(self, notification: GatewayNotification) -> ReconcileOutcome:
        payable_type, record_id = parse_reference(notification.order_id)
        bucket = classify(notification.transaction_status, notification.fraud_status)

        try:
            payable = await load_payable(self.db, payable_type.kind, record_id)
            payment = await self._upsert_payment(payable, notification)
            payable.link_payment(payment)
            applied = await self._apply(payable, bucket, notification)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.exception(f"Reconciliation of {notification.order_id} rolled back: {e}")
            raise ReconciliationError(
                "Could not apply the payment notification; it is safe to retry.",
                detail={"reference": notification.order_id},
            ) from e

        logger.info(
            f"{payable.reference}: bucket={bucket.value} applied={applied} "
            f"status={payable.status.value} payment_id={payment.id}"
        )
        return ReconcileOutcome(
            reference=payable.reference,
            kind=payable.kind,
            target_id=payable.id,
            bucket=bucket,
            target_status=payable.status.value,
            payment_id=payment.id,
            applied=applied,
        )

    async def _apply(
        self,
        payable: Payable,
        bucket: TransactionBucket,
        notification: GatewayNotification,
    ) -> bool:
        if bucket == TransactionBucket.SUCCESS:
            applied = await payable.on_success(self.db)
            if not applied and not payable.is_pending and payable.status != payable.success_status:
                logger.warning(
                    f"{payable.reference}: payment {notification.transaction_id} settled but the "
                    f"{payable.kind.value} is already {payable.status.value}; manual refund needed"
                )
            return applied
        if bucket == TransactionBucket.FAILURE:
            return await payable.on_failure(
                self.db, reason=f"Payment {notification.transaction_status}"
            )
        if bucket == TransactionBucket.PENDING:
            await payable.on_pending(self.db)
            return False

        logger.warning(
            f"{payable.reference}: unknown transaction_status "
            f"{notification.transaction_status!r} recorded without transition"
        )
        return False

    async def _upsert_payment(self, payable: Payable, notification: GatewayNotification) -> Payment:
        """Insert or update the Payment row keyed by transaction_id."""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.transaction_id == notification.transaction_id)
            .with_for_update()
        )
        payment = result.scalar_one_or_none()

        raw_status = notification.transaction_status.strip().lower()
        normalized = PAYMENT_STATUS_MAP.get(raw_status)
        amount = _parse_amount(notification.gross_amount, default=payable.expected_amount)

        if payment is None:
            payment = Payment(
                transaction_id=notification.transaction_id,
                reference=payable.reference,
                payable_kind=payable.kind,
                payable_id=payable.id,
                status=normalized or PaymentStatus.PENDING,
            )
            self.db.add(payment)
            logger.info(f"Payment {notification.transaction_id} created for {payable.reference}")
        elif normalized is not None and not (
            payment.status in FINAL_PAYMENT_STATUSES and normalized == PaymentStatus.PENDING
        ):
            payment.status = normalized
        elif normalized is not None:
            logger.info(
                f"Payment {notification.transaction_id}: late '{raw_status}' ignored, "
                f"already {payment.status.value}"
            )

        payment.amount = amount
        payment.payment_method = notification.payment_type or payment.payment_method or "unknown"
        payment.transaction_status = raw_status
        payment.fraud_status = notification.fraud_status

        await self.db.flush()
        return payment

    async def cancel_from_session(
        self,
        kind: PayableKind,
        local_id: Optional[str],
        reason: str,
    ) -> Optional[ReconcileOutcome]:
        """
        Error/cancel redirect: cancel the remembered payable if still pending.

        Returns None when nothing was remembered or the record is gone.
        """
        if not local_id or not str(local_id).isdigit():
            logger.info(f"{kind.value} {reason.lower()} redirect without a remembered id")
            return None

        try:
            payable = await load_payable(self.db, kind, int(local_id))
        except NotFoundError:
            logger.info(f"{kind.value} #{local_id} from session no longer exists")
            return None

        try:
            applied = await payable.on_failure(self.db, reason=reason)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.exception(f"Cancelling {payable.reference} rolled back: {e}")
            raise ReconciliationError("Could not cancel the pending payment.") from e

        return ReconcileOutcome(
            reference=payable.reference,
            kind=payable.kind,
            target_id=payable.id,
            bucket=TransactionBucket.FAILURE,
            target_status=payable.status.value,
            payment_id=payable.record.payment_id,
            applied=applied,
        )


def _parse_amount(raw: Optional[str], default: float) -> float:
    if raw in (None, ""):
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)
