"""Tests for users, the catalog and inventory reservations."""
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from commerce.core.errors import (
    AuthenticationError,
    ConflictError,
    DomainValidationError,
    InsufficientStockError,
    NotFoundError,
    TransientError,
)
from commerce.database.models import InventoryItem, InventoryReservation, OutboxEvent
from commerce.services.inventory import InventoryService
from tests.helpers import cart_lines


@pytest.mark.unit
class TestUserService:
    """Registration, authentication and tokens."""

    @pytest.mark.asyncio
    async def test_register_normalizes_email_and_hashes_password(self, container, db):
        user = await container.users.register(db, "  Ada@Example.COM ", "long-enough", "Ada")

        assert user.email == "ada@example.com"
        assert user.password_hash != "long-enough"
        assert user.is_admin is False

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, container, db, customer):
        with pytest.raises(ConflictError):
            await container.users.register(db, "CUSTOMER@example.com", "another-pass", "Copy")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "email,password,name",
        [
            ("not-an-email", "long-enough", "Ada"),
            ("ada@example.com", "short", "Ada"),
            ("ada@example.com", "long-enough", "   "),
        ],
    )
    async def test_invalid_registration(self, container, db, email, password, name):
        with pytest.raises(DomainValidationError):
            await container.users.register(db, email, password, name)

    @pytest.mark.asyncio
    async def test_authenticate(self, container, db, customer):
        user = await container.users.authenticate(db, "Customer@Example.com", "customer-pass")
        assert user.id == customer.id

        with pytest.raises(AuthenticationError):
            await container.users.authenticate(db, "customer@example.com", "wrong-pass")
        with pytest.raises(AuthenticationError):
            await container.users.authenticate(db, "nobody@example.com", "customer-pass")

    @pytest.mark.asyncio
    async def test_disabled_account_cannot_log_in(self, container, db, customer):
        customer.is_active = False
        await db.commit()

        with pytest.raises(AuthenticationError):
            await container.users.authenticate(db, "customer@example.com", "customer-pass")

    @pytest.mark.asyncio
    async def test_token_round_trip(self, container, admin):
        claims = container.users.decode_token(container.users.issue_token(admin))

        assert claims["sub"] == str(admin.id)
        assert claims["admin"] is True

    @pytest.mark.asyncio
    async def test_tampered_token_rejected(self, container):
        with pytest.raises(AuthenticationError):
            container.users.decode_token("not.a.token")

    @pytest.mark.asyncio
    async def test_promote_admin(self, container, db, customer):
        user = await container.users.promote_admin(db, "customer@example.com")
        assert user.is_admin is True

        with pytest.raises(NotFoundError):
            await container.users.promote_admin(db, "ghost@example.com")


@pytest.mark.unit
class TestCatalogService:
    """Products and the cache-aside read path."""

    @pytest.mark.asyncio
    async def test_create_product_normalizes_and_stocks(self, container, db, product):
        assert product.sku == "MUG-001"
        assert product.category == "kitchen"
        assert product.currency == "USD"

        stock = await container.inventory.get_availability(db, product.id)
        assert stock["on_hand"] == 10
        assert stock["in_stock"] is True

        events = (await db.execute(select(OutboxEvent.event_type).order_by(OutboxEvent.id))).scalars().all()
        assert events == ["product.created", "inventory.stock_changed"]

    @pytest.mark.asyncio
    async def test_duplicate_sku_rejected(self, container, db, product):
        with pytest.raises(ConflictError):
            await container.catalog.create_product(
                db, sku="MUG-001", name="Other", category="kitchen", price_cents=100
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"price_cents": 0}, {"weight_grams": -1}, {"name": " "}, {"sku": ""}],
    )
    async def test_invalid_product(self, container, db, overrides):
        fields = {"sku": "tea-1", "name": "Tea", "category": "drinks", "price_cents": 500}
        fields.update(overrides)
        with pytest.raises(DomainValidationError):
            await container.catalog.create_product(db, **fields)

    @pytest.mark.asyncio
    async def test_get_product_is_cached(self, container, db, product, fake_redis):
        data = await container.catalog.get_product(db, product.id)

        assert data["sku"] == "MUG-001"
        assert f"commerce:product:{product.id}" in fake_redis.store

    @pytest.mark.asyncio
    async def test_update_invalidates_cache_and_bumps_version(self, container, db, product, fake_redis):
        await container.catalog.get_product(db, product.id)

        updated = await container.catalog.update_product(db, product.id, price_cents=1800, category=" Home ")

        assert updated.version == 2
        assert updated.category == "home"
        assert f"commerce:product:{product.id}" not in fake_redis.store
        data = await container.catalog.get_product(db, product.id)
        assert data["price_cents"] == 1800

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, container, db, product):
        with pytest.raises(DomainValidationError):
            await container.catalog.update_product(db, product.id, sku="NEW")

    @pytest.mark.asyncio
    async def test_deactivated_product_is_hidden(self, container, db, product):
        await container.catalog.deactivate_product(db, product.id)

        with pytest.raises(NotFoundError):
            await container.catalog.get_product(db, product.id)
        data = await container.catalog.get_product(db, product.id, include_inactive=True)
        assert data["is_active"] is False
        assert await container.catalog.list_products(db) == []

    @pytest.mark.asyncio
    async def test_list_filters_by_category(self, container, db, product):
        await container.catalog.create_product(
            db, sku="tea-1", name="Green Tea", category="Drinks", price_cents=500
        )

        kitchen = await container.catalog.list_products(db, category="KITCHEN")
        assert [p.sku for p in kitchen] == ["MUG-001"]
        assert len(await container.catalog.list_products(db)) == 2

    @pytest.mark.asyncio
    async def test_unknown_product(self, container, db):
        with pytest.raises(NotFoundError):
            await container.catalog.get_product(db, uuid.uuid4())
        with pytest.raises(NotFoundError):
            await container.catalog.get_product(db, "not-a-uuid")


@pytest.mark.unit
class TestInventoryService:
    """Stock levels and the reservation lifecycle."""

    @pytest.mark.asyncio
    async def test_reserve_holds_units(self, container, db, product):
        order_id = uuid.uuid4()
        reservations = await container.inventory.reserve(db, order_id, cart_lines(product, 3))

        assert len(reservations) == 1
        item = await container.inventory.get_item(db, product.id)
        assert (item.on_hand, item.reserved, item.available) == (10, 3, 7)

    @pytest.mark.asyncio
    async def test_reserve_is_idempotent_per_order(self, container, db, product):
        order_id = uuid.uuid4()
        first = await container.inventory.reserve(db, order_id, cart_lines(product, 3))
        again = await container.inventory.reserve(db, order_id, cart_lines(product, 3))

        assert [r.id for r in again] == [r.id for r in first]
        assert (await container.inventory.get_item(db, product.id)).reserved == 3

    @pytest.mark.asyncio
    async def test_duplicate_lines_are_merged(self, container, db, product):
        lines = cart_lines(product, 2) + cart_lines(product, 4)
        reservations = await container.inventory.reserve(db, uuid.uuid4(), lines)

        assert [r.quantity for r in reservations] == [6]

    @pytest.mark.asyncio
    async def test_insufficient_stock_reserves_nothing(self, container, db, product):
        other = await container.catalog.create_product(
            db, sku="tea-1", name="Tea", category="drinks", price_cents=500, initial_stock=5
        )
        lines = cart_lines(other, 2) + cart_lines(product, 11)
        product_id, other_id = product.id, other.id

        with pytest.raises(InsufficientStockError) as exc_info:
            await container.inventory.reserve(db, uuid.uuid4(), lines)

        assert exc_info.value.shortages == [
            {"product_id": str(product_id), "requested": 11, "available": 10}
        ]
        assert (await container.inventory.get_item(db, other_id)).reserved == 0

    @pytest.mark.asyncio
    async def test_release_returns_units_once(self, container, db, product):
        order_id = uuid.uuid4()
        await container.inventory.reserve(db, order_id, cart_lines(product, 4))

        assert await container.inventory.release(db, order_id) == 1
        assert await container.inventory.release(db, order_id) == 0
        item = await container.inventory.get_item(db, product.id)
        assert (item.on_hand, item.reserved) == (10, 0)

    @pytest.mark.asyncio
    async def test_commit_then_restock(self, container, db, product):
        order_id = uuid.uuid4()
        await container.inventory.reserve(db, order_id, cart_lines(product, 4))

        assert await container.inventory.commit(db, order_id) == 1
        assert await container.inventory.commit(db, order_id) == 0
        item = await container.inventory.get_item(db, product.id)
        assert (item.on_hand, item.reserved) == (6, 0)

        assert await container.inventory.restock(db, order_id) == 1
        assert await container.inventory.restock(db, order_id) == 0
        item = await container.inventory.get_item(db, product.id)
        assert (item.on_hand, item.reserved) == (10, 0)

        statuses = {r.status for r in await container.inventory.get_reservations(db, order_id)}
        assert statuses == {"restocked"}

    @pytest.mark.asyncio
    async def test_commit_without_reservation_conflicts(self, container, db, product):
        with pytest.raises(ConflictError):
            await container.inventory.commit(db, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_undo_handles_either_state(self, container, db, product):
        active_order, committed_order = uuid.uuid4(), uuid.uuid4()
        await container.inventory.reserve(db, active_order, cart_lines(product, 2))
        await container.inventory.reserve(db, committed_order, cart_lines(product, 3))
        await container.inventory.commit(db, committed_order)

        assert await container.inventory.undo(db, active_order) == 1
        assert await container.inventory.undo(db, committed_order) == 1
        assert await container.inventory.undo(db, committed_order) == 0
        item = await container.inventory.get_item(db, product.id)
        assert (item.on_hand, item.reserved) == (10, 0)

    @pytest.mark.asyncio
    async def test_expired_reservations_are_released(self, container, db, product):
        order_id = uuid.uuid4()
        await container.inventory.reserve(db, order_id, cart_lines(product, 5))

        assert await container.inventory.expire_reservations(db) == []
        expired = await container.inventory.expire_reservations(
            db, now=datetime.utcnow() + timedelta(hours=1)
        )

        assert expired == [order_id]
        rows = (await db.execute(select(InventoryReservation.status))).scalars().all()
        assert rows == ["released"]

    @pytest.mark.asyncio
    async def test_stock_cannot_drop_below_reserved(self, container, db, product):
        await container.inventory.reserve(db, uuid.uuid4(), cart_lines(product, 6))

        with pytest.raises(DomainValidationError):
            await container.inventory.set_stock(db, product.id, 5)
        with pytest.raises(DomainValidationError):
            await container.inventory.adjust_stock(db, product.id, -5)

        item = await container.inventory.adjust_stock(db, product.id, 5)
        assert item.on_hand == 15

    @pytest.mark.asyncio
    async def test_unknown_item(self, container, db):
        with pytest.raises(NotFoundError):
            await container.inventory.get_item(db, uuid.uuid4())


async def _bump_version(session_factory, product_id) -> None:
    """Another writer touches the stock row."""
    async with session_factory() as other:
        await other.execute(
            update(InventoryItem)
            .where(InventoryItem.product_id == product_id)
            .values(version=InventoryItem.version + 1)
        )
        await other.commit()


@pytest.mark.integration
class TestInventoryConcurrency:
    """Optimistic locking on InventoryItem.version."""

    @pytest.mark.asyncio
    async def test_restock_keeps_a_sale_committed_in_between(
        self, container, db, session_factory, product, monkeypatch
    ):
        product_id = product.id
        inventory = container.inventory
        read_item = inventory.get_item
        sold = []

        async def read_then_sell(session, pid):
            item = await read_item(session, pid)
            if not sold:
                sold.append(pid)
                order_id = uuid.uuid4()
                async with session_factory() as other:
                    await inventory.reserve(other, order_id, [{"product_id": pid, "quantity": 2}])
                    await inventory.commit(other, order_id)
            return item

        monkeypatch.setattr(inventory, "get_item", read_then_sell)

        item = await inventory.adjust_stock(db, product_id, 5)

        assert (item.on_hand, item.reserved) == (13, 0)

    @pytest.mark.asyncio
    async def test_set_stock_retries_on_version_conflict(
        self, container, db, session_factory, product, monkeypatch
    ):
        product_id = product.id
        inventory = container.inventory
        read_item = inventory.get_item
        reads = []

        async def read_then_bump(session, pid):
            item = await read_item(session, pid)
            reads.append(item.version)
            if len(reads) == 1:
                await _bump_version(session_factory, pid)
            return item

        monkeypatch.setattr(inventory, "get_item", read_then_bump)

        item = await inventory.set_stock(db, product_id, 4)

        assert item.on_hand == 4
        assert reads[1] == reads[0] + 1

    @pytest.mark.asyncio
    async def test_reserve_retries_after_a_version_conflict(
        self, container, db, session_factory, product, monkeypatch
    ):
        product_id = product.id
        inventory = container.inventory
        load_items = inventory._load_items
        loads = []

        async def load_then_bump(session, product_ids):
            items = await load_items(session, product_ids)
            loads.append(len(items))
            if len(loads) == 1:
                await _bump_version(session_factory, product_id)
            return items

        monkeypatch.setattr(inventory, "_load_items", load_then_bump)

        reservations = await inventory.reserve(db, uuid.uuid4(), cart_lines(product, 3))

        assert len(reservations) == 1
        # first read lost the race, second read won, third emitted the stock event
        assert len(loads) == 3
        async with session_factory() as fresh:
            item = await inventory.get_item(fresh, product_id)
            assert (item.on_hand, item.reserved) == (10, 3)

    @pytest.mark.asyncio
    async def test_reserve_gives_up_under_constant_contention(
        self, test_settings, db, session_factory, product, monkeypatch
    ):
        product_id = product.id
        inventory = InventoryService(test_settings, max_reserve_attempts=3)
        load_items = inventory._load_items
        loads = []

        async def load_then_bump(session, product_ids):
            items = await load_items(session, product_ids)
            loads.append(len(items))
            await _bump_version(session_factory, product_id)
            return items

        monkeypatch.setattr(inventory, "_load_items", load_then_bump)

        with pytest.raises(TransientError):
            await inventory.reserve(db, uuid.uuid4(), cart_lines(product, 3))

        assert len(loads) == 3
        async with session_factory() as fresh:
            item = await inventory.get_item(fresh, product_id)
            assert item.reserved == 0
            reservations = (await fresh.execute(select(InventoryReservation))).scalars().all()
            assert reservations == []
