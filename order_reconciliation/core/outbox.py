"""
Transactional outbox for customer notifications.

Notification intents are written in the same transaction as the order change
they describe and delivered after commit. Delivery claims each event with a
conditional ``pending -> sending`` update, so concurrent dispatchers never
send the same event twice.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_reconciliation.database.models import OutboxEvent
from order_reconciliation.integrations.notifications import NotificationSender
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PENDING = "pending"
SENDING = "sending"
SENT = "sent"
FAILED = "failed"


async def enqueue_notification(
    session: AsyncSession,
    *,
    order_id: int,
    event_type: str,
    recipient: Optional[str],
    template: str,
    data: Dict[str, Any],
) -> int:
    """
    Write a notification intent inside the caller's transaction.

    Returns:
        int: Outbox event id
    """
    event = OutboxEvent(
        aggregate_id=order_id,
        aggregate_type="order",
        event_type=event_type,
        payload={"recipient": recipient, "template": template, "data": data},
        status=PENDING,
        attempts=0,
    )
    session.add(event)
    await session.flush()
    return event.id


class NotificationDispatcher:
    """
    Delivers outbox notification events through a ``NotificationSender``.

    Used inline right after a reconciliation commits, and as a polling
    worker that picks up anything the inline path did not deliver.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sender: NotificationSender,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 5,
    ):
        """
        Initialize notification dispatcher.

        Args:
            session_factory: Factory for short delivery transactions
            sender: Notification sender
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
            max_attempts: Deliveries tried before an event is marked failed
        """
        self.session_factory = session_factory
        self.sender = sender
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._running = False

    async def _claim(self, event_id: int) -> Optional[OutboxEvent]:
        async with self.session_factory() as db:
            async with db.begin():
                stmt = (
                    update(OutboxEvent)
                    .where(OutboxEvent.id == event_id, OutboxEvent.status == PENDING)
                    .values(status=SENDING, attempts=OutboxEvent.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)
                if result.rowcount == 0:
                    return None
                event = await db.get(OutboxEvent, event_id, populate_existing=True)
        return event

    async def _finish(self, event_id: int, **values: Any) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                stmt = (
                    update(OutboxEvent)
                    .where(OutboxEvent.id == event_id, OutboxEvent.status == SENDING)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await db.execute(stmt)

    async def _deliver(self, event_id: int) -> bool:
        event = await self._claim(event_id)
        if event is None:
            return False

        payload = event.payload
        try:
            await self.sender.send(
                payload.get("recipient"), payload["template"], payload.get("data", {})
            )
        except Exception as e:
            exhausted = event.attempts >= self.max_attempts
            await self._finish(
                event_id, status=FAILED if exhausted else PENDING, last_error=str(e)
            )
            metrics.record_notification(event.event_type, "failed")
            logger.error(
                "notification_delivery_failed",
                event_id=event_id,
                event_type=event.event_type,
                attempts=event.attempts,
                exhausted=exhausted,
                error=str(e),
            )
            return False

        await self._finish(event_id, status=SENT, published_at=datetime.now(timezone.utc))
        metrics.record_notification(event.event_type, "sent")
        logger.info(
            "notification_delivered",
            event_id=event_id,
            event_type=event.event_type,
            order_id=event.aggregate_id,
        )
        return True

    async def dispatch(self, event_ids: Iterable[int]) -> int:
        """
        Deliver the given outbox events.

        Returns:
            int: Number of events delivered by this call
        """
        delivered = 0
        for event_id in event_ids:
            if await self._deliver(event_id):
                delivered += 1
        return delivered

    async def _fetch_pending_ids(self) -> List[int]:
        async with self.session_factory() as db:
            stmt = (
                select(OutboxEvent.id)
                .where(OutboxEvent.status == PENDING)
                .order_by(OutboxEvent.created_at, OutboxEvent.id)
                .limit(self.batch_size)
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def process_batch(self) -> int:
        """
        Deliver one batch of pending events.

        Returns:
            int: Number of events delivered
        """
        event_ids = await self._fetch_pending_ids()
        if not event_ids:
            return 0

        delivered = await self.dispatch(event_ids)
        logger.info(
            "outbox_batch_processed",
            total=len(event_ids),
            delivered=delivered,
            failed=len(event_ids) - delivered,
        )
        return delivered

    async def start(self) -> None:
        """
        Start the dispatcher loop.

        Continuously polls for pending events until ``stop`` is called.
        """
        self._running = True
        logger.info("notification_dispatcher_started")

        try:
            while self._running:
                try:
                    delivered = await self.process_batch()
                    metrics.set_outbox_pending(await self.get_pending_count())

                    if delivered == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # More may be waiting
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("notification_dispatcher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("notification_dispatcher_stopped")

    def stop(self) -> None:
        """Stop the dispatcher loop."""
        self._running = False
        logger.info("notification_dispatcher_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Get count of events waiting for delivery.

        Returns:
            int: Number of pending events
        """
        async with self.session_factory() as db:
            stmt = select(func.count()).select_from(OutboxEvent).where(
                OutboxEvent.status == PENDING
            )
            result = await db.execute(stmt)
            return int(result.scalar_one())
