"""
Order ledger.

The only writer of order lifecycle columns. Every mutation is a single
conditional UPDATE keyed by the expected current state; the matched-row count
tells the caller whether it won.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_reconciliation.core.errors import InvalidTransitionError, OrderNotFoundError
from order_reconciliation.database.models import Order, OrderItem
from order_reconciliation.states import (
    FulfillmentStatus,
    PaymentStatus,
    RefundStatus,
    is_fulfillment_transition_allowed,
    is_payment_transition_allowed,
    is_refund_transition_allowed,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentTransitionFields:
    """Extra columns a payment transition may set alongside the status."""

    payment_method: Optional[str] = None
    refund_status: Optional[RefundStatus] = None


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order as committed."""

    id: int
    user_id: uuid.UUID
    customer_email: Optional[str]
    payment_reference: str
    payment_status: PaymentStatus
    fulfillment_status: FulfillmentStatus
    payment_method: Optional[str]
    total_cents: int
    inventory_applied: bool
    refund_status: Optional[RefundStatus]
    refund_ticket_id: Optional[str]
    refund_attempts: int
    paid_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.id,
            "payment_reference": self.payment_reference,
            "payment_status": self.payment_status.value,
            "fulfillment_status": self.fulfillment_status.value,
            "payment_method": self.payment_method,
            "total_cents": self.total_cents,
            "refund_status": self.refund_status.value if self.refund_status else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderLedger:
    """Conditional transitions and reads over the ``orders`` table."""

    async def transition_payment(
        self,
        session: AsyncSession,
        reference: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        fields: Optional[PaymentTransitionFields] = None,
        *,
        fulfillment_status: Optional[FulfillmentStatus] = None,
    ) -> int:
        """
        Move ``payment_status`` from ``from_status`` to ``to_status``.

        Args:
            session: Session holding the caller's transaction
            reference: Payment reference of the order
            from_status: Status the order must currently have
            to_status: Target status
            fields: Extra columns to set on the winning update
            fulfillment_status: Fulfillment state the order must also be in

        Returns:
            int: 1 if this call performed the transition, 0 otherwise

        Raises:
            InvalidTransitionError: If the lifecycle has no such transition
            OrderNotFoundError: If no order carries ``reference``
        """
        if not is_payment_transition_allowed(from_status, to_status):
            raise InvalidTransitionError(
                f"Payment transition {from_status.value} -> {to_status.value} is not defined"
            )

        now = _utcnow()
        values: Dict[str, Any] = {"payment_status": to_status.value, "updated_at": now}
        if to_status == PaymentStatus.PAID:
            values["paid_at"] = now
        if fields is not None:
            if fields.payment_method is not None:
                values["payment_method"] = fields.payment_method
            if fields.refund_status is not None:
                values["refund_status"] = fields.refund_status.value

        conditions = [
            Order.payment_reference == reference,
            Order.payment_status == from_status.value,
        ]
        if fulfillment_status is not None:
            conditions.append(Order.fulfillment_status == fulfillment_status.value)

        stmt = (
            update(Order)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        matched = result.rowcount

        if matched == 0 and await self.get_by_reference(session, reference) is None:
            raise OrderNotFoundError(f"No order for reference {reference}", reference=reference)

        logger.debug(
            "payment_transition_attempted",
            reference=reference,
            from_status=from_status.value,
            to_status=to_status.value,
            matched=matched,
        )
        return matched

    async def transition_fulfillment(
        self,
        session: AsyncSession,
        order_id: int,
        from_statuses: Sequence[FulfillmentStatus],
        to_status: FulfillmentStatus,
    ) -> int:
        """Move ``fulfillment_status`` to ``to_status`` if it is one of ``from_statuses``."""
        for from_status in from_statuses:
            if not is_fulfillment_transition_allowed(from_status, to_status):
                raise InvalidTransitionError(
                    f"Fulfillment transition {from_status.value} -> {to_status.value} "
                    "is not defined"
                )

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.fulfillment_status.in_([status.value for status in from_statuses]),
            )
            .values(fulfillment_status=to_status.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        matched = result.rowcount

        if matched == 0 and await self.get(session, order_id) is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)

        logger.debug(
            "fulfillment_transition_attempted",
            order_id=order_id,
            from_statuses=[status.value for status in from_statuses],
            to_status=to_status.value,
            matched=matched,
        )
        return matched

    async def transition_refund(
        self,
        session: AsyncSession,
        reference: str,
        from_statuses: Sequence[Optional[RefundStatus]],
        to_status: RefundStatus,
        *,
        ticket_id: Optional[str] = None,
        bump_attempts: bool = False,
    ) -> int:
        """
        Move ``refund_status`` to ``to_status`` if it is one of ``from_statuses``.

        ``None`` in ``from_statuses`` matches an order that never carried a
        refund. ``bump_attempts`` increments ``refund_attempts`` on the winning
        update, which is how a new gateway submission is numbered.
        """
        for from_status in from_statuses:
            if not is_refund_transition_allowed(from_status, to_status):
                label = from_status.value if from_status else "none"
                raise InvalidTransitionError(
                    f"Refund transition {label} -> {to_status.value} is not defined"
                )

        known = [status.value for status in from_statuses if status is not None]
        conditions = [Order.refund_status.in_(known)] if known else []
        if None in from_statuses:
            conditions.append(Order.refund_status.is_(None))

        values: Dict[str, Any] = {"refund_status": to_status.value, "updated_at": _utcnow()}
        if ticket_id is not None:
            values["refund_ticket_id"] = ticket_id
        if bump_attempts:
            values["refund_attempts"] = Order.refund_attempts + 1

        stmt = (
            update(Order)
            .where(Order.payment_reference == reference, or_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        matched = result.rowcount

        if matched == 0 and await self.get_by_reference(session, reference) is None:
            raise OrderNotFoundError(f"No order for reference {reference}", reference=reference)

        logger.debug(
            "refund_transition_attempted",
            reference=reference,
            to_status=to_status.value,
            matched=matched,
        )
        return matched

    async def get(self, session: AsyncSession, order_id: int) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_reference(self, session: AsyncSession, reference: str) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(Order.payment_reference == reference)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def require(self, session: AsyncSession, order_id: int) -> Order:
        """Fetch an order by id or raise ``OrderNotFoundError``."""
        order = await self.get(session, order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    async def require_by_reference(self, session: AsyncSession, reference: str) -> Order:
        order = await self.get_by_reference(session, reference)
        if order is None:
            raise OrderNotFoundError(f"No order for reference {reference}", reference=reference)
        return order

    async def items(self, session: AsyncSession, order_id: int) -> List[OrderItem]:
        stmt = select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def snapshot(order: Order) -> OrderSnapshot:
        return OrderSnapshot(
            id=order.id,
            user_id=order.user_id,
            customer_email=order.customer_email,
            payment_reference=order.payment_reference,
            payment_status=PaymentStatus(order.payment_status),
            fulfillment_status=FulfillmentStatus(order.fulfillment_status),
            payment_method=order.payment_method,
            total_cents=order.total_cents,
            inventory_applied=order.inventory_applied,
            refund_status=RefundStatus(order.refund_status) if order.refund_status else None,
            refund_ticket_id=order.refund_ticket_id,
            refund_attempts=order.refund_attempts,
            paid_at=order.paid_at,
        )
