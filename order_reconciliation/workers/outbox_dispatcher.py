"""
Notification dispatcher background worker.

Continuously polls the outbox table and delivers notifications that were not
sent right after their transaction committed.
"""
import asyncio
import signal

import structlog

from order_reconciliation.config import get_settings
from order_reconciliation.container import build_services
from order_reconciliation.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_dispatcher() -> None:
    """
    Start the notification dispatcher worker.

    Runs until SIGINT or SIGTERM.
    """
    settings = get_settings()
    setup_logging(settings)
    logger.info("outbox_dispatcher_worker_starting")

    services = build_services(settings)
    dispatcher = services.dispatcher

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, dispatcher.stop)

    try:
        await dispatcher.start()
    except Exception as e:
        logger.error("outbox_dispatcher_worker_error", error=str(e))
        raise
    finally:
        await services.close()
        logger.info("outbox_dispatcher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_dispatcher())


if __name__ == "__main__":
    main()
