"""Tests for reviews, notifications and the search projection."""
import json
import uuid

import httpx
import pytest

from commerce.core.errors import (
    ConflictError,
    DomainValidationError,
    NotFoundError,
    PermissionDeniedError,
)
from commerce.database.models import SearchDocument
from commerce.messaging.envelope import EventEnvelope
from commerce.services.notifications import NotificationService, WebhookNotificationSender
from commerce.services.search import score_document, tokenize
from tests.helpers import place_order


async def _deliver(container, db, customer, product):
    order = await place_order(container, db, customer, product, quantity=1)
    await container.orders.ship_order(db, order["id"], "ups")
    await container.orders.deliver_order(db, order["id"])
    return order


async def _search(container, **params):
    async with container.session_factory() as fresh:
        return await container.search.search(fresh, **params)


@pytest.mark.integration
class TestReviewService:
    """Verified-purchase reviews."""

    @pytest.mark.asyncio
    async def test_buyer_can_review_once(self, container, db, customer, product):
        customer_id, product_id = customer.id, product.id
        await _deliver(container, db, customer, product)

        review = await container.reviews.add_review(db, customer_id, product_id, 4, " Solid ", "Keeps coffee hot")

        assert review.title == "Solid"
        with pytest.raises(ConflictError):
            await container.reviews.add_review(db, customer_id, product_id, 5)

        summary = await container.reviews.rating_summary(db, product_id)
        assert summary["count"] == 1
        assert summary["average"] == 4.0
        assert summary["distribution"]["4"] == 1

    @pytest.mark.asyncio
    async def test_only_buyers_who_received_the_product_may_review(self, container, db, customer, product):
        customer_id, product_id = customer.id, product.id
        await place_order(container, db, customer, product, quantity=1)

        with pytest.raises(PermissionDeniedError):
            await container.reviews.add_review(db, customer_id, product_id, 5)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6])
    async def test_rating_range(self, container, db, customer, product, rating):
        with pytest.raises(DomainValidationError):
            await container.reviews.add_review(db, customer.id, product.id, rating)

    @pytest.mark.asyncio
    async def test_unknown_product(self, container, db, customer):
        with pytest.raises(NotFoundError):
            await container.reviews.add_review(db, customer.id, uuid.uuid4(), 5)

    @pytest.mark.asyncio
    async def test_delete_own_review_or_as_admin(self, container, db, customer, admin, product):
        customer_id, admin_id, product_id = customer.id, admin.id, product.id
        await _deliver(container, db, customer, product)
        review = await container.reviews.add_review(db, customer_id, product_id, 2)
        review_id = review.id

        with pytest.raises(PermissionDeniedError):
            await container.reviews.delete_review(db, review_id, requester_id=uuid.uuid4())

        await container.reviews.delete_review(db, review_id, requester_id=admin_id, is_admin=True)

        assert await container.reviews.list_reviews(db, product_id) == []
        with pytest.raises(NotFoundError):
            await container.reviews.delete_review(db, review_id, requester_id=customer_id)


@pytest.mark.integration
class TestNotifications:
    """Customer messages driven by order events."""

    @pytest.mark.asyncio
    async def test_paid_order_sends_confirmation(self, container, db, customer, product):
        customer_id = customer.id
        order = await place_order(container, db, customer, product)

        await container.outbox.drain()

        async with container.session_factory() as fresh:
            notifications = await container.notifications.list_notifications(fresh, customer_id)
            assert [n.template for n in notifications] == ["order_confirmation"]
            notification = notifications[0]
            assert notification.status == "sent"
            assert notification.payload["order_id"] == order["id"]

            await container.notifications.mark_read(fresh, customer_id, notification.id)
            assert await container.notifications.list_notifications(fresh, customer_id, unread_only=True) == []

            with pytest.raises(NotFoundError):
                await container.notifications.mark_read(fresh, uuid.uuid4(), notification.id)

    @pytest.mark.asyncio
    async def test_sender_failure_is_recorded_not_raised(self, session_factory, customer):
        class BrokenSender:
            channel = "webhook"

            async def send(self, notification):
                raise ConnectionError("smtp relay down")

        service = NotificationService(BrokenSender())
        envelope = EventEnvelope(
            event_type="order.shipped",
            aggregate_type="order",
            aggregate_id="o-1",
            payload={"order_id": "o-1", "user_id": str(customer.id)},
        )

        async with session_factory() as db:
            notification = await service.handle_event(db, envelope)
            await db.commit()

        assert notification.status == "failed"
        assert notification.error_message == "smtp relay down"

    @pytest.mark.asyncio
    async def test_events_without_template_are_ignored(self, session_factory):
        service = NotificationService()
        envelope = EventEnvelope(
            event_type="order.created", aggregate_type="order", aggregate_id="o-1", payload={}
        )

        async with session_factory() as db:
            assert await service.handle_event(db, envelope) is None


@pytest.mark.unit
class TestSearchScoring:
    """Token scoring without the database."""

    def test_tokenize(self):
        assert tokenize("Ceramic Coffee-Mug, 350ml!") == ["ceramic", "coffee", "mug", "350ml"]
        assert tokenize(None) == []

    def test_field_weights_and_prefixes(self):
        doc = SearchDocument(
            name="Ceramic Coffee Mug",
            sku="MUG-001",
            category="kitchen",
            description="Holds tea too",
        )

        assert score_document(doc, ["mug"]) == 3.0
        assert score_document(doc, ["kitchen"]) == 2.0
        assert score_document(doc, ["tea"]) == 1.0
        assert score_document(doc, ["cer"]) == 1.5
        assert score_document(doc, ["mug", "tea"]) == 4.0
        assert score_document(doc, ["plate"]) == 0.0


@pytest.mark.integration
class TestSearchProjection:
    """Search documents maintained from catalog, inventory and review events."""

    @pytest.mark.asyncio
    async def test_created_product_is_searchable(self, container, product):
        await container.outbox.drain()

        result = await _search(container, query="coffee mug")

        assert result["total"] == 1
        hit = result["hits"][0]
        assert hit["sku"] == "MUG-001"
        assert hit["in_stock"] is True
        assert hit["score"] == 8.0

    @pytest.mark.asyncio
    async def test_ranking_and_filters(self, container, db, product):
        await container.catalog.create_product(
            db,
            sku="bottle-1",
            name="Travel Bottle",
            category="outdoor",
            price_cents=2500,
            description="Fits in a mug holder",
            initial_stock=0,
        )
        await container.outbox.drain()

        ranked = await _search(container, query="mug")
        assert [hit["sku"] for hit in ranked["hits"]] == ["MUG-001", "BOTTLE-1"]

        assert (await _search(container, query="mug", in_stock_only=True))["total"] == 1
        assert (await _search(container, category="outdoor"))["hits"][0]["sku"] == "BOTTLE-1"
        assert (await _search(container, min_price=2000))["total"] == 1
        assert (await _search(container, max_price=1000))["total"] == 0
        assert (await _search(container, query="nothing-like-this"))["total"] == 0

        paged = await _search(container, limit=1, offset=1)
        assert paged["total"] == 2
        assert len(paged["hits"]) == 1

    @pytest.mark.asyncio
    async def test_stock_price_and_deactivation_flow_into_index(self, container, db, product):
        product_id = product.id
        await container.outbox.drain()

        await container.inventory.set_stock(db, product_id, 0)
        await container.catalog.update_product(db, product_id, name="Stoneware Mug", price_cents=1200)
        await container.outbox.drain()

        hit = (await _search(container, query="stoneware"))["hits"][0]
        assert hit["in_stock"] is False
        assert hit["price_cents"] == 1200

        await container.catalog.deactivate_product(db, product_id)
        await container.outbox.drain()
        assert (await _search(container, query="mug"))["total"] == 0

    @pytest.mark.asyncio
    async def test_reviews_update_ratings(self, container, db, customer, product):
        customer_id, product_id = customer.id, product.id
        await _deliver(container, db, customer, product)
        await container.reviews.add_review(db, customer_id, product_id, 5)
        await container.outbox.drain()

        hit = (await _search(container, query="mug"))["hits"][0]
        assert hit["rating_avg"] == 5.0
        assert hit["rating_count"] == 1

    @pytest.mark.asyncio
    async def test_reindex_rebuilds_from_tables(self, container, db, product):
        await container.catalog.create_product(
            db, sku="tea-1", name="Green Tea", category="drinks", price_cents=500
        )
        # no events published: the index is empty until rebuilt
        assert (await _search(container))["total"] == 0

        async with container.session_factory() as fresh:
            assert await container.search.reindex_all(fresh) == 2

        result = await _search(container, query="tea")
        assert result["hits"][0]["sku"] == "TEA-1"
        assert result["hits"][0]["in_stock"] is False


@pytest.mark.unit
class TestWebhookSender:
    """JSON delivery to an external notification service."""

    @pytest.mark.asyncio
    async def test_posts_notification(self, session_factory, customer):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        service = NotificationService(WebhookNotificationSender("https://notify.test/hooks", client=client))
        envelope = EventEnvelope(
            event_type="order.delivered",
            aggregate_type="order",
            aggregate_id="o-1",
            payload={"order_id": "o-1", "user_id": str(customer.id)},
        )

        async with session_factory() as db:
            notification = await service.handle_event(db, envelope)
            await db.commit()
        await client.aclose()

        assert notification.status == "sent"
        assert notification.channel == "webhook"
        body = json.loads(requests[0].content)
        assert body["template"] == "order_delivered"
        assert body["payload"]["subject"] == "Your order was delivered"

    @pytest.mark.asyncio
    async def test_http_error_marks_failed(self, session_factory, customer):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        service = NotificationService(WebhookNotificationSender("https://notify.test/hooks", client=client))
        envelope = EventEnvelope(
            event_type="payment.failed",
            aggregate_type="payment",
            aggregate_id="p-1",
            payload={"user_id": str(customer.id)},
        )

        async with session_factory() as db:
            notification = await service.handle_event(db, envelope)
            await db.commit()
        await client.aclose()

        assert notification.status == "failed"
