"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers events to Kafka (when
configured) and to the in-process subscribers (notifications, search, cache).
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from commerce.container import ServiceContainer, build_container
from commerce.database.connection import close_db, init_db
from commerce.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher(container: Optional[ServiceContainer] = None) -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT/SIGTERM.
    """
    setup_logging(container.settings if container is not None else None)
    logger.info("outbox_publisher_worker_starting")

    owns_container = container is None
    if owns_container:
        await init_db()
        container = build_container()
    publisher = container.outbox

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        if owns_container:
            await container.close()
            await close_db()
        logger.info("outbox_publisher_worker_stopped")


if __name__ == "__main__":
    asyncio.run(start_outbox_publisher())
