"""
Recovery background worker.

Each run:
1. Compensates checkout sagas that stopped making progress (crashed process)
2. Releases expired inventory reservations and cancels their PENDING orders
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from commerce.container import ServiceContainer, build_container
from commerce.database.connection import close_db, init_db
from commerce.monitoring.logging import setup_logging
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_recovery(container: ServiceContainer) -> Dict[str, int]:
    """Run one recovery pass."""
    logger.info("recovery_run_started")

    results = await container.orchestrator.recover(container.settings.saga_stale_after_seconds)
    async with container.session_factory() as db:
        expired = await container.orders.expire_stale_orders(db)

    summary = {
        "sagas_recovered": len(results),
        "sagas_failed": sum(1 for r in results if r.state.value == "failed"),
        "orders_expired": len(expired),
    }
    metrics.mark_recovery_run()

    if summary["sagas_failed"]:
        # Compensation gave up; someone has to look at these orders
        logger.error(
            "recovery_compensation_failed",
            saga_ids=[r.saga_id for r in results if r.state.value == "failed"],
        )
    logger.info("recovery_run_completed", **summary)
    return summary


async def start_recovery_worker(
    container: Optional[ServiceContainer] = None, run_once: bool = False
) -> None:
    """
    Start the recovery worker.

    Runs every `recovery_interval_seconds` until SIGINT/SIGTERM.
    """
    setup_logging(container.settings if container is not None else None)
    logger.info("recovery_worker_starting")

    owns_container = container is None
    if owns_container:
        await init_db()
        container = build_container()

    stop_event = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("recovery_worker_shutdown_signal_received", signal=sig)
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop_event.is_set():
            try:
                await run_recovery(container)
            except Exception as e:
                logger.error("recovery_run_failed", error=str(e))
            if run_once:
                break
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=container.settings.recovery_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
    finally:
        if owns_container:
            await container.close()
            await close_db()
        logger.info("recovery_worker_stopped")


if __name__ == "__main__":
    asyncio.run(start_recovery_worker())
