"""
Checkout: turns a cart into a paid order with the `checkout` saga.

    create_order ──► reserve_inventory ──► process_payment ──► confirm_order
    (cancel order)   (release/restock)     (refund payment)    (no compensation)

Each step is a local transaction in its own session. The whole checkout is
guarded by an idempotency key and a per-user distributed lock.
"""
import uuid
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce.config import Settings, get_settings
from commerce.core.errors import CheckoutFailedError, DomainValidationError
from commerce.core.idempotency import IdempotencyManager
from commerce.core.locking import LockManager
from commerce.core.saga import SagaDefinition, SagaOrchestrator
from commerce.services.cart import CartService
from commerce.services.inventory import InventoryService
from commerce.services.orders import OrderService, order_to_dict
from commerce.services.payments import PaymentService
from commerce.services.shipping import ShippingService, validate_address

logger = structlog.get_logger(__name__)

SAGA_NAME = "checkout"
IDEMPOTENCY_SCOPE = "checkout"

IdLike = Union[str, uuid.UUID]


class CheckoutService:
    """Coordinates cart, order, inventory and payment services for checkout."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: SagaOrchestrator,
        idempotency: IdempotencyManager,
        locks: LockManager,
        cart: CartService,
        orders: OrderService,
        inventory: InventoryService,
        payments: PaymentService,
        shipping: ShippingService,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.idempotency = idempotency
        self.locks = locks
        self.cart = cart
        self.orders = orders
        self.inventory = inventory
        self.payments = payments
        self.shipping = shipping
        self.settings = settings or get_settings()
        definition = self.orchestrator.register(self._build_definition())
        # the lock must outlive the slowest possible saga run
        self.lock_ttl_seconds = max(
            self.settings.redis_lock_timeout, definition.max_duration_seconds() + 5
        )

    def _build_definition(self) -> SagaDefinition:
        definition = SagaDefinition(
            SAGA_NAME,
            default_timeout_seconds=self.settings.saga_step_timeout_seconds,
            default_max_attempts=self.settings.saga_max_attempts,
            retry_base_delay=self.settings.saga_retry_base_delay,
        )
        return (
            definition.add_step("create_order", self._create_order, self._cancel_order)
            .add_step("reserve_inventory", self._reserve_inventory, self._release_inventory)
            .add_step("process_payment", self._process_payment, self._refund_payment)
            .add_step("confirm_order", self._confirm_order)
        )

    # --- saga steps -----------------------------------------------------------

    async def _create_order(self, context: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as db:
            order = await self.orders.create_pending_order(
                db,
                order_id=context["order_id"],
                user_id=context["user_id"],
                lines=context["lines"],
                shipping_address=context["shipping_address"],
                shipping_cents=context["shipping_cents"],
                currency=context["currency"],
            )
            return {"order_id": str(order.id), "total_cents": order.total_cents}

    async def _cancel_order(self, context: Dict[str, Any], result: Any) -> None:
        async with self.session_factory() as db:
            await self.orders.cancel_pending(db, context["order_id"], reason="checkout failed")

    async def _reserve_inventory(self, context: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as db:
            reservations = await self.inventory.reserve(db, context["order_id"], context["lines"])
            return {"reservation_ids": [str(r.id) for r in reservations]}

    async def _release_inventory(self, context: Dict[str, Any], result: Any) -> None:
        async with self.session_factory() as db:
            await self.inventory.undo(db, context["order_id"])

    async def _process_payment(self, context: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as db:
            payment = await self.payments.charge(
                db,
                order_id=context["order_id"],
                user_id=context["user_id"],
                amount_cents=context["total_cents"],
                currency=context["currency"],
                payment_method=context["payment_method"],
                idempotency_key=f"order:{context['order_id']}:charge",
            )
            return {"payment_id": str(payment.id), "status": payment.status}

    async def _refund_payment(self, context: Dict[str, Any], result: Any) -> None:
        async with self.session_factory() as db:
            await self.payments.refund_order_payment(
                db, context["order_id"], reason="requested_by_customer"
            )

    async def _confirm_order(self, context: Dict[str, Any]) -> Dict[str, Any]:
        payment_id = context["process_payment_result"]["payment_id"]
        async with self.session_factory() as db:
            await self.inventory.commit(db, context["order_id"])
            order = await self.orders.mark_paid(db, context["order_id"], payment_id)
            await self.cart.clear(
                db, context["user_id"], product_ids=[line["product_id"] for line in context["lines"]]
            )
            return {"status": order.status}

    # --- entry point ------------------------------------------------------------

    async def _build_context(self, db: AsyncSession, user_id: IdLike, address: Dict[str, Any], payment_method: str) -> Dict[str, Any]:
        cart = await self.cart.get_cart(db, user_id)
        if not cart["items"]:
            raise DomainValidationError("Cart is empty")
        inactive = [line["sku"] for line in cart["items"] if not line["is_active"]]
        if inactive:
            raise DomainValidationError(
                "Cart contains products that are no longer sold",
                details={"skus": inactive},
            )

        quote = self.shipping.quote(cart["items"], address)
        lines = [
            {
                "product_id": line["product_id"],
                "sku": line["sku"],
                "name": line["name"],
                "unit_price_cents": line["unit_price_cents"],
                "quantity": line["quantity"],
                "weight_grams": line["weight_grams"],
            }
            for line in cart["items"]
        ]
        return {
            "order_id": str(uuid.uuid4()),
            "user_id": str(user_id),
            "lines": lines,
            "shipping_address": address,
            "shipping_cents": quote["cost_cents"],
            "subtotal_cents": cart["subtotal_cents"],
            "total_cents": cart["subtotal_cents"] + quote["cost_cents"],
            "currency": cart["currency"],
            "payment_method": payment_method,
        }

    async def checkout(
        self,
        user_id: IdLike,
        shipping_address: Dict[str, Any],
        payment_method: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """
        Place an order for the user's cart.

        Returns the paid order. A retry with the same idempotency key and body
        returns the same order without charging again.

        Raises:
            DomainValidationError: Empty cart, bad address or payment method
            IdempotencyConflictError: Key reused with a different body
            RequestInProgressError: Same checkout (or another one for the user) running
            CheckoutFailedError: A saga step failed; earlier steps were compensated
        """
        address = validate_address(shipping_address)
        if not (payment_method or "").strip():
            raise DomainValidationError("Payment method is required")

        request = {"shipping_address": address, "payment_method": payment_method}
        key = self.idempotency.build_key(IDEMPOTENCY_SCOPE, user_id, idempotency_key)

        async with self.session_factory() as db:
            replay = await self.idempotency.begin(
                db, IDEMPOTENCY_SCOPE, user_id, idempotency_key, request
            )
        if replay is not None:
            logger.info("checkout_replayed", user_id=str(user_id), order_id=replay.get("id"))
            return replay

        try:
            async with self.locks.lock(f"checkout:{user_id}", ttl_seconds=self.lock_ttl_seconds):
                response = await self._run(user_id, address, payment_method)
        except Exception:
            async with self.session_factory() as db:
                await self.idempotency.abandon(db, key)
            raise

        async with self.session_factory() as db:
            await self.idempotency.complete(db, key, response)
        return response

    async def _run(self, user_id: IdLike, address: Dict[str, Any], payment_method: str) -> Dict[str, Any]:
        async with self.session_factory() as db:
            context = await self._build_context(db, user_id, address, payment_method)

        logger.info(
            "checkout_started",
            user_id=str(user_id),
            order_id=context["order_id"],
            total_cents=context["total_cents"],
        )
        result = await self.orchestrator.run(SAGA_NAME, context)

        if not result.succeeded:
            logger.warning(
                "checkout_failed",
                order_id=context["order_id"],
                failed_step=result.failed_step,
                saga_state=result.state.value,
                error=result.error,
            )
            raise CheckoutFailedError(
                f"Checkout failed at {result.failed_step}: {result.error}",
                order_id=context["order_id"],
                failed_step=result.failed_step,
                cause=result.cause,
            )

        async with self.session_factory() as db:
            order = await self.orders.get_order(db, context["order_id"])
            response = order_to_dict(order)
        logger.info("checkout_completed", order_id=response["id"], total_cents=response["total_cents"])
        return response
