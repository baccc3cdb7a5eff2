"""Shared fakes and helpers for the test suite."""
import time
import uuid
from types import SimpleNamespace
from typing import Any, Dict, Optional

from commerce.container import ServiceContainer
from commerce.database.models import User

ADDRESS = {
    "name": "Ada Lovelace",
    "line1": "1 Main Street",
    "city": "Springfield",
    "postal_code": "12345",
    "country": "US",
}


class FakeRedis:
    """The subset of redis.asyncio.Redis the platform uses (decode_responses=True)."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self.store[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass


class FakeRedlock:
    """Single-node, in-memory stand-in for redlock.Redlock."""

    def __init__(self) -> None:
        self.held: Dict[str, float] = {}

    def lock(self, resource: str, ttl: int) -> Any:
        expires = self.held.get(resource)
        if expires is not None and expires > time.time():
            return False
        self.held[resource] = time.time() + ttl / 1000
        return SimpleNamespace(resource=resource, key=uuid.uuid4().hex, validity=ttl)

    def unlock(self, lock: Any) -> None:
        self.held.pop(lock.resource, None)


def auth_headers(container: ServiceContainer, user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {container.users.issue_token(user)}"}


def cart_lines(product: Any, quantity: int) -> list:
    """Priced order lines for one product, as checkout builds them."""
    return [
        {
            "product_id": str(product.id),
            "sku": product.sku,
            "name": product.name,
            "unit_price_cents": product.price_cents,
            "quantity": quantity,
            "weight_grams": product.weight_grams,
        }
    ]


async def place_order(
    container: ServiceContainer,
    db: Any,
    user: User,
    product: Any,
    quantity: int = 2,
    idempotency_key: str = "checkout-1",
) -> Dict[str, Any]:
    """Fill the user's cart and run a successful checkout."""
    await container.cart.add_item(db, user.id, product.id, quantity)
    return await container.checkout.checkout(user.id, ADDRESS, "pm_card_visa", idempotency_key)
