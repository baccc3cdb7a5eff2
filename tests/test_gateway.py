"""Tests for the Stripe gateway wrapper and its circuit breaker."""
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe
from tenacity import wait_none

from commerce.integrations.stripe_gateway import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
    StripeGateway,
)


def _boom():
    raise stripe.APIConnectionError("connection refused")


@pytest.mark.unit
class TestCircuitBreaker:
    """Open, half-open and closed transitions."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)

        for _ in range(2):
            with pytest.raises(stripe.APIConnectionError):
                breaker.call(_boom)

        assert breaker.state == "open"
        with pytest.raises(GatewayError) as exc_info:
            breaker.call(lambda: "never called")
        assert exc_info.value.error_type == GatewayErrorType.TRANSIENT

    def test_half_open_then_closed(self):
        breaker = CircuitBreaker(failure_threshold=1, timeout=60, success_threshold=2)
        with pytest.raises(stripe.APIConnectionError):
            breaker.call(_boom)
        breaker.last_failure_time -= 120

        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "half_open"
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "closed"

    def test_failure_while_half_open_reopens(self):
        breaker = CircuitBreaker(failure_threshold=3, timeout=60)
        breaker.state = "open"
        breaker.last_failure_time = 1.0

        with pytest.raises(stripe.APIConnectionError):
            breaker.call(_boom)

        assert breaker.state == "open"

    def test_card_declines_do_not_count(self):
        breaker = CircuitBreaker(failure_threshold=1)

        def decline():
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        with pytest.raises(stripe.CardError):
            breaker.call(decline)

        assert breaker.state == "closed"
        assert breaker.failure_count == 0


@pytest.mark.unit
class TestStripeGateway:
    """Error classification and retries around the Stripe client."""

    @pytest.fixture
    def no_wait(self, monkeypatch):
        monkeypatch.setattr(StripeGateway.charge.retry, "wait", wait_none())

    @pytest.mark.asyncio
    async def test_successful_charge(self, test_settings, monkeypatch):
        create = MagicMock(
            return_value=SimpleNamespace(id="pi_123", status="succeeded", amount=2500, currency="usd")
        )
        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        charge = await StripeGateway(test_settings).charge(2500, "USD", "pm_card_visa", "order:1:charge")

        assert charge.succeeded
        assert charge.currency == "USD"
        kwargs = create.call_args.kwargs
        assert kwargs["idempotency_key"] == "order:1:charge"
        assert kwargs["currency"] == "usd"
        assert kwargs["confirm"] is True

    @pytest.mark.asyncio
    async def test_decline_is_permanent_and_not_retried(self, test_settings, monkeypatch):
        create = MagicMock(side_effect=stripe.CardError("Your card was declined.", None, "card_declined"))
        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        with pytest.raises(GatewayError) as exc_info:
            await StripeGateway(test_settings).charge(2500, "USD", "pm_card_visa", "order:1:charge")

        assert exc_info.value.error_type == GatewayErrorType.PERMANENT
        assert exc_info.value.decline_code == "card_declined"
        assert create.call_count == 1

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, test_settings, monkeypatch, no_wait):
        create = MagicMock(
            side_effect=[
                stripe.APIConnectionError("connection reset"),
                SimpleNamespace(id="pi_123", status="succeeded", amount=2500, currency="usd"),
            ]
        )
        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        charge = await StripeGateway(test_settings).charge(2500, "USD", "pm_card_visa", "order:1:charge")

        assert charge.reference == "pi_123"
        assert create.call_count == 2
        keys = {call.kwargs["idempotency_key"] for call in create.call_args_list}
        assert keys == {"order:1:charge"}

    @pytest.mark.asyncio
    async def test_refund_reason_mapping(self, test_settings, monkeypatch):
        create = MagicMock(return_value=SimpleNamespace(id="re_1", status="succeeded", amount=500))
        monkeypatch.setattr(stripe.Refund, "create", create)
        gateway = StripeGateway(test_settings)

        await gateway.refund("pi_123", 500, "refund-1", reason="duplicate")
        assert create.call_args.kwargs["reason"] == "duplicate"

        refund = await gateway.refund("pi_123", 500, "refund-2", reason="cancelled by customer")
        assert "reason" not in create.call_args.kwargs
        assert create.call_args.kwargs["metadata"] == {"reason": "cancelled by customer"}
        assert refund.amount_cents == 500
