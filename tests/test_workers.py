"""Tests for the recovery worker."""
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from commerce.core.saga import SagaState
from commerce.database.models import InventoryReservation, SagaInstance
from commerce.services.checkout import SAGA_NAME
from commerce.workers.saga_recovery import run_recovery
from tests.helpers import ADDRESS, cart_lines


async def _backdate_saga(session_factory, saga_id: str) -> None:
    async with session_factory() as db:
        await db.execute(
            update(SagaInstance)
            .where(SagaInstance.id == uuid.UUID(saga_id))
            .values(updated_at=datetime.utcnow() - timedelta(days=1))
        )
        await db.commit()


@pytest.mark.integration
class TestRecoveryWorker:
    """One recovery pass over sagas and reservations."""

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, container):
        summary = await run_recovery(container)

        assert summary == {"sagas_recovered": 0, "sagas_failed": 0, "orders_expired": 0}

    @pytest.mark.asyncio
    async def test_interrupted_checkout_is_rolled_back(self, container, db, session_factory, customer, product):
        customer_id, product_id = customer.id, product.id
        order_id = uuid.uuid4()
        lines = cart_lines(product, 3)
        await container.orders.create_pending_order(
            db, order_id, customer_id, lines, ADDRESS, shipping_cents=599, currency="USD"
        )
        await container.inventory.reserve(db, order_id, lines)

        # the process died while the charge was in flight
        saga_id = str(uuid.uuid4())
        await container.orchestrator.store.save(
            {
                "saga_id": saga_id,
                "name": SAGA_NAME,
                "state": SagaState.IN_PROGRESS.value,
                "context": {
                    "saga_id": saga_id,
                    "order_id": str(order_id),
                    "user_id": str(customer_id),
                    "lines": lines,
                },
                "steps": [
                    {"name": "create_order", "status": "completed", "attempts": 1},
                    {"name": "reserve_inventory", "status": "completed", "attempts": 1},
                    {"name": "process_payment", "status": "running", "attempts": 1},
                    {"name": "confirm_order", "status": "pending", "attempts": 0},
                ],
                "error": None,
            }
        )
        await _backdate_saga(session_factory, saga_id)

        summary = await run_recovery(container)

        assert summary == {"sagas_recovered": 1, "sagas_failed": 0, "orders_expired": 0}
        async with session_factory() as fresh:
            order = await container.orders.get_order(fresh, order_id)
            assert order.status == "cancelled"
            item = await container.inventory.get_item(fresh, product_id)
            assert (item.on_hand, item.reserved) == (10, 0)
            saga = await fresh.get(SagaInstance, uuid.UUID(saga_id))
            assert saga.state == "compensated"

        assert (await run_recovery(container))["sagas_recovered"] == 0

    @pytest.mark.asyncio
    async def test_expired_reservations_cancel_orders(self, container, db, session_factory, customer, product):
        order_id = uuid.uuid4()
        lines = cart_lines(product, 2)
        await container.orders.create_pending_order(
            db, order_id, customer.id, lines, ADDRESS, shipping_cents=599, currency="USD"
        )
        await container.inventory.reserve(db, order_id, lines)
        await db.execute(
            update(InventoryReservation)
            .where(InventoryReservation.order_id == order_id)
            .values(expires_at=datetime.utcnow() - timedelta(seconds=1))
        )
        await db.commit()

        summary = await run_recovery(container)

        assert summary["orders_expired"] == 1
        async with session_factory() as fresh:
            assert (await container.orders.get_order(fresh, order_id)).status == "cancelled"
