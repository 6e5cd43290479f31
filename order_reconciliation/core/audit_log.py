"""
Audit log.

Append-only payment log and order status history. Payment log rows are
deduplicated on ``(payment_reference, status)``; the insert reports whether it
wrote a row so callers can branch on it.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from order_reconciliation.database.models import OrderStatusHistory, PaymentLog

logger = structlog.get_logger(__name__)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class AuditLog:
    """Writes and reads the payment log and status history."""

    async def record_payment(
        self,
        session: AsyncSession,
        *,
        order_id: int,
        reference: str,
        status: str,
        processed_by: str,
        amount_cents: Optional[int] = None,
        payment_method: Optional[str] = None,
        failure_reason: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Insert a payment log row unless one already exists for the pair.

        Returns:
            bool: True if a row was written
        """
        dialect = session.get_bind().dialect.name
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise NotImplementedError(f"Payment log upsert is not supported on {dialect}")

        stmt = (
            insert(PaymentLog)
            .values(
                order_id=order_id,
                payment_reference=reference,
                status=status,
                amount_cents=amount_cents,
                payment_method=payment_method,
                processed_by=processed_by,
                failure_reason=failure_reason,
                gateway_response=gateway_response,
            )
            .on_conflict_do_nothing(index_elements=["payment_reference", "status"])
        )
        result = await session.execute(stmt)
        inserted = result.rowcount == 1

        if not inserted:
            logger.info("payment_log_duplicate_skipped", reference=reference, status=status)
        return inserted

    async def record_status(
        self,
        session: AsyncSession,
        *,
        order_id: int,
        status: str,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> None:
        session.add(
            OrderStatusHistory(order_id=order_id, status=status, notes=notes, actor=actor)
        )
        await session.flush()

    async def payment_logs(
        self, session: AsyncSession, reference: str, limit: int = 5
    ) -> List[PaymentLog]:
        """Most recent payment log rows for a reference, newest first."""
        stmt = (
            select(PaymentLog)
            .where(PaymentLog.payment_reference == reference)
            .order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def status_history(
        self, session: AsyncSession, order_id: int
    ) -> List[OrderStatusHistory]:
        stmt = (
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
