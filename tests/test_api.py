"""HTTP tests through the FastAPI app."""
import pytest

from tests.helpers import ADDRESS, auth_headers


@pytest.mark.integration
class TestAuthEndpoints:
    """Registration, login and the current user."""

    @pytest.mark.asyncio
    async def test_register_and_login(self, client):
        response = await client.post(
            "/auth/register",
            json={"email": "Ada@Example.com", "password": "correct-horse", "full_name": "Ada"},
        )
        assert response.status_code == 201
        assert response.json()["email"] == "ada@example.com"
        assert "password_hash" not in response.json()

        response = await client.post(
            "/auth/login", json={"email": "ada@example.com", "password": "correct-horse"}
        )
        assert response.status_code == 200
        token = response.json()["access_token"]

        response = await client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["full_name"] == "Ada"

    @pytest.mark.asyncio
    async def test_duplicate_registration_conflicts(self, client, customer):
        response = await client.post(
            "/auth/register",
            json={"email": "customer@example.com", "password": "another-pass", "full_name": "Copy"},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "ConflictError"

    @pytest.mark.asyncio
    async def test_wrong_password(self, client, customer):
        response = await client.post(
            "/auth/login", json={"email": "customer@example.com", "password": "wrong-pass"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_protected_route_requires_token(self, client):
        assert (await client.get("/users/me")).status_code == 401
        response = await client.get("/users/me", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401
        assert response.json()["error"] == "AuthenticationError"


@pytest.mark.integration
class TestCatalogEndpoints:
    """Public browsing and admin-only writes."""

    @pytest.mark.asyncio
    async def test_browse_products(self, client, product):
        response = await client.get("/products")
        assert response.status_code == 200
        assert [p["sku"] for p in response.json()] == ["MUG-001"]

        response = await client.get(f"/products/{product.id}")
        assert response.status_code == 200
        assert response.json()["price_cents"] == 1500

    @pytest.mark.asyncio
    async def test_unknown_product_is_404(self, client):
        response = await client.get("/products/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_only_admins_create_products(self, client, container, customer, admin):
        body = {"sku": "tea-1", "name": "Green Tea", "category": "drinks", "price_cents": 500}

        response = await client.post("/products", json=body, headers=auth_headers(container, customer))
        assert response.status_code == 403

        response = await client.post("/products", json=body, headers=auth_headers(container, admin))
        assert response.status_code == 201
        assert response.json()["sku"] == "TEA-1"

    @pytest.mark.asyncio
    async def test_invalid_product_body(self, client, container, admin):
        response = await client.post(
            "/products",
            json={"sku": "tea-1", "name": "Green Tea", "category": "drinks", "price_cents": 0},
            headers=auth_headers(container, admin),
        )

        assert response.status_code == 422


@pytest.mark.integration
class TestCheckoutEndpoints:
    """Cart and checkout over HTTP."""

    @pytest.mark.asyncio
    async def test_cart_to_order(self, client, container, customer, product, gateway):
        headers = auth_headers(container, customer)

        response = await client.post(
            "/cart/items", json={"product_id": str(product.id), "quantity": 2}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["subtotal_cents"] == 3000

        body = {"shipping_address": ADDRESS, "payment_method": "pm_card_visa"}
        response = await client.post(
            "/orders/checkout", json=body, headers={**headers, "Idempotency-Key": "web-checkout-1"}
        )
        assert response.status_code == 201
        order = response.json()
        assert order["status"] == "paid"
        assert order["total_cents"] == 3599

        # a retried request returns the same order
        response = await client.post(
            "/orders/checkout", json=body, headers={**headers, "Idempotency-Key": "web-checkout-1"}
        )
        assert response.status_code == 201
        assert response.json()["id"] == order["id"]
        assert gateway.charge.await_count == 1

        response = await client.get(f"/orders/{order['id']}", headers=headers)
        assert response.status_code == 200
        assert response.json()["items"][0]["quantity"] == 2

        response = await client.get(f"/orders/{order['id']}/history", headers=headers)
        assert [h["to_status"] for h in response.json()] == ["pending", "paid"]

    @pytest.mark.asyncio
    async def test_checkout_requires_idempotency_key(self, client, container, customer, product):
        headers = auth_headers(container, customer)
        await client.post("/cart/items", json={"product_id": str(product.id)}, headers=headers)

        response = await client.post(
            "/orders/checkout",
            json={"shipping_address": ADDRESS, "payment_method": "pm_card_visa"},
            headers=headers,
        )

        assert response.status_code == 422
        assert response.json()["error"] == "DomainValidationError"

    @pytest.mark.asyncio
    async def test_out_of_stock_checkout(self, client, container, customer, product):
        headers = auth_headers(container, customer)
        await client.post(
            "/cart/items", json={"product_id": str(product.id), "quantity": 11}, headers=headers
        )

        response = await client.post(
            "/orders/checkout",
            json={"shipping_address": ADDRESS, "payment_method": "pm_card_visa"},
            headers={**headers, "Idempotency-Key": "web-checkout-2"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "CheckoutFailedError"
        assert body["details"]["failed_step"] == "reserve_inventory"

    @pytest.mark.asyncio
    async def test_unknown_status_filter(self, client, container, customer):
        response = await client.get("/orders?status=lost", headers=auth_headers(container, customer))

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_shipping_quote_for_cart(self, client, container, customer, product):
        headers = auth_headers(container, customer)
        await client.post(
            "/cart/items", json={"product_id": str(product.id), "quantity": 2}, headers=headers
        )

        response = await client.post(
            "/shipping/quote", json={"address": {**ADDRESS, "country": "DE"}}, headers=headers
        )

        assert response.status_code == 200
        quote = response.json()
        assert quote["zone"] == "international"
        assert quote["cost_cents"] == 1999 + 450


@pytest.mark.integration
class TestSearchEndpoint:
    """Search served from the projection."""

    @pytest.mark.asyncio
    async def test_search(self, client, container, product):
        await container.outbox.drain()

        response = await client.get("/search", params={"q": "mug", "in_stock": "true"})

        assert response.status_code == 200
        assert response.json()["hits"][0]["sku"] == "MUG-001"


@pytest.mark.integration
class TestMonitoringEndpoints:
    """Health probes, metrics and request ids."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert set(response.json()["checks"]) == {"database", "redis"}

    @pytest.mark.asyncio
    async def test_readiness_fails_when_redis_is_down(self, client, fake_redis):
        fake_redis.fail = True

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["redis"]["status"] == "unhealthy"
        assert (await client.get("/health/live")).status_code == 200

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

        generated = (await client.get("/health/live")).headers["X-Request-ID"]
        assert len(generated) == 36

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        await client.get("/health/live")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
