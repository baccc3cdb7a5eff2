"""
Stripe payment gateway with retry logic and error classification.

Implements:
- Exponential backoff for transient and rate-limit errors
- Circuit breaker pattern
- Idempotent charges and refunds (Stripe idempotency keys)

Charges are created and confirmed in a single call, so a charge either
succeeds or fails before the checkout saga moves on.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from commerce.config import Settings, get_settings
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Classified gateway failure."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        decline_code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.decline_code = decline_code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != GatewayErrorType.PERMANENT


@dataclass
class GatewayCharge:
    """Result of a confirmed charge."""

    reference: str
    status: str
    amount_cents: int
    currency: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass
class GatewayRefund:
    reference: str
    status: str
    amount_cents: int


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when the failure count exceeds a threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = func(*args, **kwargs)
        except stripe.CardError:
            # A declined card says nothing about gateway health
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class StripeGateway:
    """
    Stripe wrapper used by the payment service.

    Stripe's client is synchronous; calls run in a worker thread.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        if isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
            return GatewayErrorType.PERMANENT
        if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        # Unknown errors are treated as transient
        return GatewayErrorType.TRANSIENT

    def _to_gateway_error(self, error: stripe.StripeError) -> GatewayError:
        error_type = self._classify_error(error)
        decline_code = getattr(error, "code", None)
        metrics.record_gateway_error(error_type.value)
        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=decline_code,
            error_message=str(error),
        )
        return GatewayError(
            message=getattr(error, "user_message", None) or str(error),
            error_type=error_type,
            decline_code=decline_code,
            original_error=error,
        )

    async def _call(self, func: Any) -> Any:
        try:
            return await asyncio.to_thread(self.circuit_breaker.call, func)
        except stripe.StripeError as e:
            raise self._to_gateway_error(e) from e

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayCharge:
        """
        Create and confirm a PaymentIntent.

        Raises:
            GatewayError: Classified failure (declines are PERMANENT)
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                payment_method=payment_method,
                confirm=True,
                idempotency_key=idempotency_key,
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            )

        intent = await self._call(_create)
        logger.info("payment_intent_created", payment_intent_id=intent.id, status=intent.status)
        return GatewayCharge(
            reference=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency.upper(),
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def refund(
        self,
        reference: str,
        amount_cents: int,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> GatewayRefund:
        """Refund part or all of a charge."""
        logger.info("creating_refund", payment_intent_id=reference, amount_cents=amount_cents)

        def _create_refund() -> stripe.Refund:
            kwargs: Dict[str, Any] = {
                "payment_intent": reference,
                "amount": amount_cents,
                "idempotency_key": idempotency_key,
            }
            if reason in STRIPE_REFUND_REASONS:
                kwargs["reason"] = reason
            elif reason:
                kwargs["metadata"] = {"reason": reason}
            return stripe.Refund.create(**kwargs)

        refund = await self._call(_create_refund)
        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return GatewayRefund(reference=refund.id, status=refund.status, amount_cents=refund.amount)
