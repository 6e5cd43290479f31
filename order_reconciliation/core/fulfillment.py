"""Admin-driven fulfillment progression after payment."""
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_reconciliation.core.audit_log import AuditLog
from order_reconciliation.core.errors import InvalidStateError
from order_reconciliation.core.order_ledger import OrderLedger, OrderSnapshot
from order_reconciliation.core.outbox import NotificationDispatcher, enqueue_notification
from order_reconciliation.integrations import notifications
from order_reconciliation.states import FulfillmentStatus, fulfillment_predecessors

logger = structlog.get_logger(__name__)

PROGRESSION_TARGETS = (FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED)


class FulfillmentTracker:
    """Moves paid orders through shipping: processing -> shipped -> delivered."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: Optional[NotificationDispatcher] = None,
        orders: Optional[OrderLedger] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.orders = orders or OrderLedger()
        self.audit = audit or AuditLog()

    async def update_status(
        self,
        order_id: int,
        status: FulfillmentStatus,
        actor: str,
        notes: Optional[str] = None,
    ) -> OrderSnapshot:
        """
        Advance an order to ``shipped`` or ``delivered``.

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidStateError: If the target is not a progression step, or the
                order is not in the state that precedes it
        """
        if status not in PROGRESSION_TARGETS:
            raise InvalidStateError(
                f"Fulfillment cannot be set to {status.value} directly",
                current_state=None,
            )

        async with self.session_factory() as session:
            async with session.begin():
                matched = await self.orders.transition_fulfillment(
                    session, order_id, fulfillment_predecessors(status), status
                )
                order = await self.orders.require(session, order_id)
                if not matched:
                    raise InvalidStateError(
                        f"Order {order_id} cannot move from "
                        f"{order.fulfillment_status} to {status.value}",
                        current_state=order.fulfillment_status,
                    )

                await self.audit.record_status(
                    session, order_id=order_id, status=status.value, notes=notes, actor=actor
                )
                event_id = await enqueue_notification(
                    session,
                    order_id=order_id,
                    event_type="order_status_updated",
                    recipient=order.customer_email,
                    template=notifications.ORDER_STATUS_UPDATED,
                    data={"order_id": order_id, "status": status.value, "notes": notes},
                )
                snapshot = self.orders.snapshot(order)

        logger.info("fulfillment_updated", order_id=order_id, status=status.value, actor=actor)

        if self.dispatcher is not None:
            try:
                await self.dispatcher.dispatch([event_id])
            except Exception as e:
                logger.warning("notification_dispatch_deferred", event_ids=[event_id], error=str(e))
        return snapshot
