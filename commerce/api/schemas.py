"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- auth and users ------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request schema for creating an account."""

    email: str = Field(..., max_length=255, description="Login email")
    password: str = Field(..., min_length=8, max_length=128, description="Password (8+ characters)")
    full_name: str = Field(..., min_length=1, max_length=255, description="Display name")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"email": "ada@example.com", "password": "correct-horse", "full_name": "Ada Lovelace"}
            ]
        }
    }


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str = Field(..., description="JWT bearer token")
    token_type: str = Field(default="bearer")
    expires_in: int = Field(..., description="Token lifetime in seconds")


class UserResponse(ORMModel):
    id: UUID
    email: str
    full_name: str
    is_admin: bool
    created_at: datetime


# --- catalog and inventory -----------------------------------------------------


class CreateProductRequest(BaseModel):
    """Request schema for creating a product (admin)."""

    sku: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    category: str = Field(..., min_length=1, max_length=100)
    price_cents: int = Field(..., gt=0, description="Unit price in cents")
    description: str = Field(default="", max_length=5000)
    weight_grams: int = Field(default=0, ge=0)
    initial_stock: int = Field(default=0, ge=0)


class UpdateProductRequest(BaseModel):
    """Partial product update; omitted fields are unchanged."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    price_cents: Optional[int] = Field(default=None, gt=0)
    weight_grams: Optional[int] = Field(default=None, ge=0)


class ProductResponse(BaseModel):
    id: str
    sku: str
    name: str
    description: str
    category: str
    price_cents: int
    currency: str
    weight_grams: int
    is_active: bool
    version: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class StockResponse(BaseModel):
    product_id: str
    on_hand: int
    reserved: int
    available: int
    in_stock: bool


class SetStockRequest(BaseModel):
    on_hand: int = Field(..., ge=0, description="Absolute on-hand quantity")


class AdjustStockRequest(BaseModel):
    delta: int = Field(..., description="Units received (positive) or written off (negative)")


# --- cart ------------------------------------------------------------------------


class AddCartItemRequest(BaseModel):
    product_id: UUID
    quantity: int = Field(default=1, gt=0)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=0, description="New quantity; 0 removes the line")


class CartLineResponse(BaseModel):
    product_id: str
    sku: str
    name: str
    unit_price_cents: int
    quantity: int
    line_total_cents: int
    weight_grams: int
    is_active: bool


class CartResponse(BaseModel):
    user_id: str
    items: List[CartLineResponse]
    subtotal_cents: int
    item_count: int
    currency: str


# --- shipping ----------------------------------------------------------------------


class AddressModel(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    line1: str = Field(..., min_length=1, max_length=255)
    line2: Optional[str] = Field(default=None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    region: Optional[str] = Field(default=None, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2")

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        return v.upper()


class ShippingQuoteRequest(BaseModel):
    address: AddressModel


class ShippingQuoteResponse(BaseModel):
    zone: str
    billable_kg: int
    subtotal_cents: int
    cost_cents: int
    free_shipping: bool
    currency: str


class ShipOrderRequest(BaseModel):
    carrier: str = Field(..., description="UPS, FEDEX, DHL or USPS")


class ShipmentResponse(ORMModel):
    id: UUID
    order_id: UUID
    carrier: str
    tracking_number: str
    status: str
    cost_cents: int
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


# --- orders and checkout ---------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request schema for checkout; the Idempotency-Key header is required."""

    shipping_address: AddressModel
    payment_method: str = Field(..., min_length=1, max_length=255, description="Gateway payment method id")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "shipping_address": {
                        "name": "Ada Lovelace",
                        "line1": "12 St James's Square",
                        "city": "London",
                        "postal_code": "SW1Y 4JH",
                        "country": "GB",
                    },
                    "payment_method": "pm_card_visa",
                }
            ]
        }
    }


class OrderLineResponse(BaseModel):
    product_id: str
    sku: str
    name: str
    unit_price_cents: int
    quantity: int
    line_total_cents: int


class OrderResponse(BaseModel):
    id: str
    user_id: str
    status: str
    currency: str
    subtotal_cents: int
    shipping_cents: int
    total_cents: int
    shipping_address: Dict[str, Any]
    payment_id: Optional[str] = None
    items: List[OrderLineResponse]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    restock: bool = Field(default=False, description="Put the returned units back on hand")


class StatusChangeResponse(ORMModel):
    from_status: Optional[str] = None
    to_status: str
    reason: Optional[str] = None
    created_at: datetime


# --- payments -------------------------------------------------------------------


class PaymentResponse(BaseModel):
    id: str
    order_id: str
    user_id: str
    amount_cents: int
    refunded_cents: int
    currency: str
    status: str
    gateway_reference: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None


class RefundRequest(BaseModel):
    """Request schema for refunding a payment (admin)."""

    amount_cents: Optional[int] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )
    reason: Optional[str] = Field(
        default=None, description="Refund reason (requested_by_customer, duplicate, fraudulent)"
    )


# --- reviews ---------------------------------------------------------------------


class CreateReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(default="", max_length=200)
    body: str = Field(default="", max_length=5000)


class ReviewResponse(ORMModel):
    id: UUID
    product_id: UUID
    user_id: UUID
    rating: int
    title: str
    body: str
    created_at: datetime


class RatingSummaryResponse(BaseModel):
    product_id: str
    average: float
    count: int
    distribution: Dict[str, int]


# --- notifications and search -------------------------------------------------------


class NotificationResponse(ORMModel):
    id: UUID
    channel: str
    template: str
    payload: Dict[str, Any]
    status: str
    read: bool
    created_at: datetime
    sent_at: Optional[datetime] = None


class SearchHit(BaseModel):
    product_id: str
    sku: str
    name: str
    category: str
    price_cents: int
    in_stock: bool
    rating_avg: float
    rating_count: int
    score: float


class SearchResponse(BaseModel):
    query: str
    total: int
    hits: List[SearchHit]


# --- monitoring -------------------------------------------------------------------


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
