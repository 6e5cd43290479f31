"""Read side: order payment status and status history for the HTTP surface."""
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_reconciliation.core.audit_log import AuditLog
from order_reconciliation.core.order_ledger import OrderLedger


def _isoformat(value: Any) -> Optional[str]:
    return value.isoformat() if value else None


class OrderQueries:
    """Read-only projections over orders and the audit log."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orders: Optional[OrderLedger] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.session_factory = session_factory
        self.orders = orders or OrderLedger()
        self.audit = audit or AuditLog()

    async def payment_status(self, reference: str, log_limit: int = 5) -> Dict[str, Any]:
        """
        Order state for a payment reference plus its most recent payment log rows.

        Raises:
            OrderNotFoundError: If no order carries ``reference``
        """
        async with self.session_factory() as session:
            order = await self.orders.require_by_reference(session, reference)
            logs = await self.audit.payment_logs(session, reference, limit=log_limit)

        return {
            "order_id": order.id,
            "payment_reference": order.payment_reference,
            "payment_status": order.payment_status,
            "fulfillment_status": order.fulfillment_status,
            "payment_method": order.payment_method,
            "total_cents": order.total_cents,
            "refund_status": order.refund_status,
            "paid_at": _isoformat(order.paid_at),
            "logs": [
                {
                    "status": log.status,
                    "amount_cents": log.amount_cents,
                    "payment_method": log.payment_method,
                    "processed_by": log.processed_by,
                    "failure_reason": log.failure_reason,
                    "created_at": _isoformat(log.created_at),
                }
                for log in logs
            ],
        }

    async def status_history(self, order_id: int) -> List[Dict[str, Any]]:
        """
        Status history of an order, oldest first.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        async with self.session_factory() as session:
            await self.orders.require(session, order_id)
            rows = await self.audit.status_history(session, order_id)

        return [
            {
                "status": row.status,
                "notes": row.notes,
                "actor": row.actor,
                "created_at": _isoformat(row.created_at),
            }
            for row in rows
        ]
