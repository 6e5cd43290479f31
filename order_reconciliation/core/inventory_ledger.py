"""
Inventory ledger.

Order-scoped stock decrement and restore. The ``orders.inventory_applied``
marker is claimed with a conditional update before any product row is
touched, so each order moves stock at most once in each direction.
"""
from datetime import datetime, timezone
from typing import List, Tuple

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_reconciliation.database.models import Order, OrderItem, Product
from order_reconciliation.states import ProductStatus

logger = structlog.get_logger(__name__)


class InventoryLedger:
    """Atomic, idempotent stock movements for whole orders."""

    async def _order_quantities(
        self, session: AsyncSession, order_id: int
    ) -> List[Tuple[int, int]]:
        # Ascending product id keeps row-lock order stable across transactions.
        stmt = (
            select(OrderItem.product_id, func.sum(OrderItem.quantity))
            .where(OrderItem.order_id == order_id)
            .group_by(OrderItem.product_id)
            .order_by(OrderItem.product_id)
        )
        result = await session.execute(stmt)
        return [(product_id, int(quantity)) for product_id, quantity in result.all()]

    async def _set_marker(
        self, session: AsyncSession, order_id: int, expected: bool, value: bool
    ) -> bool:
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.inventory_applied == expected)
            .values(inventory_applied=value)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def apply_order_decrement(self, session: AsyncSession, order_id: int) -> bool:
        """
        Decrement stock for every item of the order.

        Each product drops by the summed quantity ordered, floored at zero; a
        product that reaches zero is marked out of stock.

        Returns:
            bool: True if stock was moved, False if the order was already applied
        """
        if not await self._set_marker(session, order_id, expected=False, value=True):
            logger.info("inventory_decrement_skipped", order_id=order_id)
            return False

        quantities = await self._order_quantities(session, order_id)
        now = datetime.now(timezone.utc)

        for product_id, quantity in quantities:
            in_stock = Product.quantity_on_hand > quantity
            stmt = (
                update(Product)
                .where(Product.id == product_id)
                .values(
                    quantity_on_hand=case(
                        (in_stock, Product.quantity_on_hand - quantity), else_=0
                    ),
                    status=case(
                        (in_stock, Product.status), else_=ProductStatus.OUT_OF_STOCK.value
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.execute(stmt)

        logger.info(
            "inventory_decremented",
            order_id=order_id,
            products=len(quantities),
            units=sum(quantity for _, quantity in quantities),
        )
        return True

    async def restore_order_decrement(self, session: AsyncSession, order_id: int) -> bool:
        """
        Put back the stock taken by ``apply_order_decrement``.

        The full ordered quantity is added back even where the decrement was
        floored at zero.

        Returns:
            bool: True if stock was restored, False if nothing was applied
        """
        if not await self._set_marker(session, order_id, expected=True, value=False):
            logger.info("inventory_restore_skipped", order_id=order_id)
            return False

        quantities = await self._order_quantities(session, order_id)
        now = datetime.now(timezone.utc)

        for product_id, quantity in quantities:
            stmt = (
                update(Product)
                .where(Product.id == product_id)
                .values(
                    quantity_on_hand=Product.quantity_on_hand + quantity,
                    status=ProductStatus.ACTIVE.value,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.execute(stmt)

        logger.info(
            "inventory_restored",
            order_id=order_id,
            products=len(quantities),
            units=sum(quantity for _, quantity in quantities),
        )
        return True
