"""
Payment service: idempotent charges and refunds with a full audit trail.

Flow of a charge:
1. Return the existing payment for this idempotency key, if any
2. Create the payment record (PENDING) and commit it
3. Mark PROCESSING and call the gateway with the same idempotency key
4. Record SUCCEEDED or FAILED, audit events and outbox event, commit

A transient gateway failure leaves the payment PROCESSING. Retrying with the
same key asks the gateway again, and the gateway's own idempotency makes
that safe.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.core.errors import (
    ConflictError,
    DomainValidationError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentError,
    TransientError,
)
from commerce.core.outbox import write_outbox_event
from commerce.database.models import Payment, PaymentEvent
from commerce.integrations.stripe_gateway import GatewayError, StripeGateway
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PENDING = "pending"
PROCESSING = "processing"
SUCCEEDED = "succeeded"
FAILED = "failed"
PARTIALLY_REFUNDED = "partially_refunded"
REFUNDED = "refunded"

REFUNDABLE = (SUCCEEDED, PARTIALLY_REFUNDED)
MINIMUM_CHARGE_CENTS = 50  # Stripe minimum

IdLike = Union[str, uuid.UUID]


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": str(payment.id),
        "order_id": str(payment.order_id),
        "user_id": str(payment.user_id),
        "amount_cents": payment.amount_cents,
        "refunded_cents": payment.refunded_cents,
        "currency": payment.currency,
        "status": payment.status,
        "gateway_reference": payment.gateway_reference,
        "error_message": payment.error_message,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


class PaymentService:
    """Charges and refunds through the payment gateway."""

    def __init__(self, gateway: StripeGateway):
        self.gateway = gateway
        logger.info("payment_service_initialized")

    @staticmethod
    def _validate_charge(amount_cents: int, currency: str, payment_method: str) -> None:
        if amount_cents < MINIMUM_CHARGE_CENTS:
            raise DomainValidationError(
                f"Amount must be at least {MINIMUM_CHARGE_CENTS} cents",
                details={"amount_cents": amount_cents},
            )
        if len(currency or "") != 3:
            raise DomainValidationError("Currency must be 3-letter code")
        if not (payment_method or "").strip():
            raise DomainValidationError("Payment method is required")

    @staticmethod
    def _record_event(
        db: AsyncSession,
        payment: Payment,
        event_type: str,
        event_data: Dict[str, Any],
    ) -> None:
        correlation_id = structlog.contextvars.get_contextvars().get("request_id")
        try:
            correlation = uuid.UUID(str(correlation_id))
        except ValueError:
            correlation = payment.id
        db.add(
            PaymentEvent(
                payment_id=payment.id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation,
                created_at=datetime.utcnow(),
            )
        )

    @staticmethod
    def _outbox(db: AsyncSession, payment: Payment, event_type: str, **extra: Any) -> None:
        write_outbox_event(
            db,
            aggregate_type="payment",
            aggregate_id=payment.id,
            event_type=event_type,
            payload={**payment_to_dict(payment), **extra},
        )

    async def get_by_key(self, db: AsyncSession, idempotency_key: str) -> Optional[Payment]:
        result = await db.execute(
            select(Payment)
            .where(Payment.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def charge(
        self,
        db: AsyncSession,
        order_id: IdLike,
        user_id: IdLike,
        amount_cents: int,
        currency: str,
        payment_method: str,
        idempotency_key: str,
    ) -> Payment:
        """
        Charge a customer exactly once per idempotency key.

        Raises:
            DomainValidationError: Invalid amount, currency or method
            PaymentDeclinedError: The gateway refused the charge (payment stored FAILED)
            TransientError: The gateway could not be reached; safe to retry
        """
        self._validate_charge(amount_cents, currency, payment_method)

        payment = await self.get_by_key(db, idempotency_key)
        if payment is not None:
            logger.info(
                "payment_idempotent_replay",
                payment_id=str(payment.id),
                status=payment.status,
            )
            if payment.status == FAILED:
                raise PaymentDeclinedError(
                    payment.error_message or "Payment was declined",
                    details={"payment_id": str(payment.id)},
                )
            if payment.status not in (PENDING, PROCESSING):
                return payment
        else:
            payment = Payment(
                id=uuid.uuid4(),
                idempotency_key=idempotency_key,
                order_id=uuid.UUID(str(order_id)),
                user_id=uuid.UUID(str(user_id)),
                amount_cents=amount_cents,
                refunded_cents=0,
                currency=currency.upper(),
                payment_method=payment_method,
                status=PENDING,
                created_at=datetime.utcnow(),
                updated_at=datetime.utcnow(),
            )
            db.add(payment)
            self._record_event(
                db, payment, "payment.created", {"amount_cents": amount_cents, "currency": currency}
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise TransientError(
                    "A charge with this idempotency key is being created",
                    details={"idempotency_key": idempotency_key},
                )
            logger.info("payment_record_created", payment_id=str(payment.id), order_id=str(order_id))

        return await self._settle(db, payment)

    async def _settle(self, db: AsyncSession, payment: Payment) -> Payment:
        """Ask the gateway for the outcome of a PENDING/PROCESSING payment."""
        payment.status = PROCESSING
        payment.updated_at = datetime.utcnow()
        self._record_event(db, payment, "payment.processing", {"status": PROCESSING})
        await db.commit()

        try:
            charge = await self.gateway.charge(
                amount_cents=payment.amount_cents,
                currency=payment.currency,
                payment_method=payment.payment_method or "",
                idempotency_key=payment.idempotency_key,
                metadata={
                    "payment_id": str(payment.id),
                    "order_id": str(payment.order_id),
                    "user_id": str(payment.user_id),
                },
            )
        except GatewayError as e:
            if e.retryable:
                self._record_event(
                    db,
                    payment,
                    "payment.gateway_error",
                    {"error": str(e), "error_type": e.error_type.value},
                )
                await db.commit()
                logger.warning("payment_gateway_unavailable", payment_id=str(payment.id), error=str(e))
                raise TransientError(
                    f"Payment gateway unavailable: {e}", details={"payment_id": str(payment.id)}
                ) from e
            return await self._fail(db, payment, str(e), e.decline_code)

        if not charge.succeeded:
            return await self._fail(db, payment, f"Payment requires {charge.status}", charge.status)

        payment.status = SUCCEEDED
        payment.gateway_reference = charge.reference
        payment.updated_at = datetime.utcnow()
        self._record_event(
            db, payment, "payment.succeeded", {"gateway_reference": charge.reference}
        )
        self._outbox(db, payment, "payment.succeeded")
        await db.commit()

        metrics.record_payment(SUCCEEDED, payment.currency, payment.amount_cents)
        logger.info(
            "payment_succeeded",
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
            gateway_reference=charge.reference,
        )
        return payment

    async def _fail(
        self, db: AsyncSession, payment: Payment, message: str, decline_code: Optional[str]
    ) -> Payment:
        payment.status = FAILED
        payment.error_message = message
        payment.updated_at = datetime.utcnow()
        self._record_event(
            db, payment, "payment.failed", {"error": message, "decline_code": decline_code}
        )
        self._outbox(db, payment, "payment.failed", decline_code=decline_code)
        await db.commit()

        metrics.record_payment(FAILED, payment.currency, payment.amount_cents)
        logger.warning("payment_declined", payment_id=str(payment.id), error=message)
        raise PaymentDeclinedError(
            f"Payment declined: {message}",
            details={"payment_id": str(payment.id), "decline_code": decline_code},
        )

    async def refund(
        self,
        db: AsyncSession,
        payment_id: IdLike,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Payment:
        """
        Refund part or all of the remaining captured amount.

        Raises:
            ConflictError: Payment is not in a refundable state
            DomainValidationError: Amount is not positive or exceeds what remains
            PaymentError: The gateway refused the refund
            TransientError: The gateway could not be reached
        """
        payment = await self.get_payment(db, payment_id)
        if payment.status not in REFUNDABLE:
            raise ConflictError(
                "Payment cannot be refunded", details={"status": payment.status}
            )
        remaining = payment.amount_cents - payment.refunded_cents
        amount = remaining if amount_cents is None else amount_cents
        if amount <= 0 or amount > remaining:
            raise DomainValidationError(
                "Refund amount must be positive and within the captured amount",
                details={"requested": amount, "refundable": remaining},
            )

        # Stable across retries of the same refund, distinct for the next one
        gateway_key = f"refund:{payment.id}:{payment.refunded_cents}:{amount}"
        try:
            refund = await self.gateway.refund(
                reference=payment.gateway_reference,
                amount_cents=amount,
                idempotency_key=gateway_key,
                reason=reason,
            )
        except GatewayError as e:
            self._record_event(db, payment, "refund.failed", {"error": str(e), "amount_cents": amount})
            await db.commit()
            if e.retryable:
                raise TransientError(f"Payment gateway unavailable: {e}") from e
            raise PaymentError(f"Refund failed: {e}", details={"payment_id": str(payment.id)}) from e

        payment.refunded_cents += amount
        payment.status = REFUNDED if payment.refunded_cents == payment.amount_cents else PARTIALLY_REFUNDED
        payment.updated_at = datetime.utcnow()
        self._record_event(
            db,
            payment,
            "payment.refunded",
            {"amount_cents": amount, "refund_reference": refund.reference, "reason": reason},
        )
        self._outbox(db, payment, "payment.refunded", refund_amount_cents=amount, reason=reason)
        await db.commit()

        metrics.record_payment(payment.status, payment.currency, amount)
        logger.info(
            "payment_refunded",
            payment_id=str(payment.id),
            amount_cents=amount,
            status=payment.status,
        )
        return payment

    async def refund_order_payment(
        self, db: AsyncSession, order_id: IdLike, reason: Optional[str] = None
    ) -> Optional[Payment]:
        """
        Refund whatever is still captured for an order.

        A payment left PROCESSING is settled with the gateway first. Safe to
        call repeatedly; returns None when nothing was charged.
        """
        payment = await self.get_for_order(db, order_id)
        if payment is None:
            return None
        if payment.status in (PENDING, PROCESSING):
            try:
                payment = await self._settle(db, payment)
            except PaymentDeclinedError:
                return payment
        if payment.status not in REFUNDABLE:
            return payment
        return await self.refund(db, payment.id, reason=reason)

    async def get_payment(self, db: AsyncSession, payment_id: IdLike) -> Payment:
        payment = await db.get(Payment, uuid.UUID(str(payment_id)), populate_existing=True)
        if payment is None:
            raise NotFoundError("Payment not found", details={"payment_id": str(payment_id)})
        return payment

    async def get_for_order(self, db: AsyncSession, order_id: IdLike) -> Optional[Payment]:
        """Latest payment of an order, if any."""
        result = await db.execute(
            select(Payment)
            .where(Payment.order_id == uuid.UUID(str(order_id)))
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
