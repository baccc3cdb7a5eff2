"""
Cart, checkout, order, payment and shipping routes.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.dependencies import get_container, get_current_user, get_db, require_admin
from commerce.api.schemas import (
    AddCartItemRequest,
    CancelOrderRequest,
    CartResponse,
    CheckoutRequest,
    OrderResponse,
    PaymentResponse,
    RefundOrderRequest,
    RefundRequest,
    ShipmentResponse,
    ShipOrderRequest,
    ShippingQuoteRequest,
    ShippingQuoteResponse,
    StatusChangeResponse,
    UpdateCartItemRequest,
)
from commerce.container import ServiceContainer
from commerce.core.errors import DomainValidationError, NotFoundError
from commerce.database.models import OrderStatusChange, Shipment, User
from commerce.services.orders import order_to_dict
from commerce.services.payments import payment_to_dict

logger = structlog.get_logger(__name__)

cart_router = APIRouter(prefix="/cart", tags=["cart"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
shipping_router = APIRouter(prefix="/shipping", tags=["shipping"])


# --- cart ------------------------------------------------------------------------


@cart_router.get("", response_model=CartResponse, summary="Current cart")
async def get_cart(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await container.cart.get_cart(db, user.id)


@cart_router.post("/items", response_model=CartResponse, summary="Add a product to the cart")
async def add_cart_item(
    request: AddCartItemRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await container.cart.add_item(db, user.id, request.product_id, request.quantity)


@cart_router.patch("/items/{product_id}", response_model=CartResponse, summary="Change a line quantity")
async def update_cart_item(
    product_id: UUID,
    request: UpdateCartItemRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await container.cart.update_item(db, user.id, product_id, request.quantity)


@cart_router.delete("/items/{product_id}", response_model=CartResponse, summary="Remove a line")
async def remove_cart_item(
    product_id: UUID,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await container.cart.remove_item(db, user.id, product_id)


@cart_router.delete("", response_model=CartResponse, summary="Empty the cart")
async def clear_cart(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    await container.cart.clear(db, user.id)
    return await container.cart.get_cart(db, user.id)


# --- checkout and orders -------------------------------------------------------------


@order_router.post(
    "/checkout",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Check out the cart",
    description=(
        "Places an order for the cart: reserves stock, charges the payment method "
        "and confirms the order. Requires an Idempotency-Key header; retries with "
        "the same key and body return the same order without charging again."
    ),
)
async def checkout(
    request: CheckoutRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    if not idempotency_key:
        raise DomainValidationError("Idempotency-Key header is required")

    logger.info("api_checkout_request", user_id=str(user.id))
    order = await container.checkout.checkout(
        user.id,
        request.shipping_address.model_dump(exclude_none=True),
        request.payment_method,
        idempotency_key,
    )
    logger.info("api_checkout_success", order_id=order["id"], total_cents=order["total_cents"])
    return order


@order_router.get("", response_model=List[OrderResponse], summary="My orders")
async def list_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    try:
        orders = await container.orders.list_orders(
            db, user.id, status=status_filter, limit=limit, offset=offset
        )
    except ValueError:
        raise DomainValidationError("Unknown order status", details={"status": status_filter})
    return [order_to_dict(o) for o in orders]


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(
    order_id: UUID,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await container.orders.get_order(db, order_id, user.id, is_admin=user.is_admin)
    return order_to_dict(order)


@order_router.get(
    "/{order_id}/history", response_model=List[StatusChangeResponse], summary="Status history"
)
async def order_history(
    order_id: UUID,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> List[OrderStatusChange]:
    await container.orders.get_order(db, order_id, user.id, is_admin=user.is_admin)
    return await container.orders.status_history(db, order_id)


@order_router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel an order")
async def cancel_order(
    order_id: UUID,
    request: Optional[CancelOrderRequest] = None,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await container.orders.cancel_order(
        db,
        order_id,
        user.id,
        is_admin=user.is_admin,
        reason=request.reason if request else None,
    )
    return order_to_dict(order)


@order_router.post("/{order_id}/ship", response_model=OrderResponse, summary="Ship an order")
async def ship_order(
    order_id: UUID,
    request: ShipOrderRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return order_to_dict(await container.orders.ship_order(db, order_id, request.carrier))


@order_router.post("/{order_id}/deliver", response_model=OrderResponse, summary="Mark delivered")
async def deliver_order(
    order_id: UUID,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return order_to_dict(await container.orders.deliver_order(db, order_id))


@order_router.post(
    "/{order_id}/refund",
    response_model=OrderResponse,
    summary="Refund a delivered order",
    description="Admin only. Refunds the payment and optionally restocks the items.",
)
async def refund_order(
    order_id: UUID,
    request: RefundOrderRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await container.orders.refund_order(
        db, order_id, reason=request.reason, restock=request.restock
    )
    return order_to_dict(order)


@order_router.get("/{order_id}/shipment", response_model=ShipmentResponse, summary="Shipment tracking")
async def get_shipment(
    order_id: UUID,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Shipment:
    await container.orders.get_order(db, order_id, user.id, is_admin=user.is_admin)
    return await container.shipping.get_for_order(db, order_id)


# --- payments --------------------------------------------------------------------


@payment_router.get("/{payment_id}", response_model=PaymentResponse, summary="Get payment status")
async def get_payment(
    payment_id: UUID,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    payment = await container.payments.get_payment(db, payment_id)
    if not user.is_admin and payment.user_id != user.id:
        raise NotFoundError("Payment not found", details={"payment_id": str(payment_id)})
    return payment_to_dict(payment)


@payment_router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    summary="Refund a payment",
    description="Admin only. Full or partial refund; the order status is not changed.",
)
async def refund_payment(
    payment_id: UUID,
    request: RefundRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    logger.info(
        "api_refund_payment_request",
        payment_id=str(payment_id),
        amount_cents=request.amount_cents,
        reason=request.reason,
    )
    payment = await container.payments.refund(
        db, payment_id, amount_cents=request.amount_cents, reason=request.reason
    )
    return payment_to_dict(payment)


# --- shipping ----------------------------------------------------------------------


@shipping_router.post("/quote", response_model=ShippingQuoteResponse, summary="Quote shipping for the cart")
async def quote_shipping(
    request: ShippingQuoteRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    cart = await container.cart.get_cart(db, user.id)
    return container.shipping.quote(cart["items"], request.address.model_dump(exclude_none=True))
