"""Cart storage used to empty a customer's cart once their order is paid."""
import uuid
from typing import Protocol

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from order_reconciliation.database.models import Cart, CartItem

logger = structlog.get_logger(__name__)


class CartStore(Protocol):
    async def clear(self, session: AsyncSession, user_id: uuid.UUID) -> int:
        ...


class SqlCartStore:
    """Cart store over the ``carts``/``cart_items`` tables, inside the caller's transaction."""

    async def clear(self, session: AsyncSession, user_id: uuid.UUID) -> int:
        """
        Remove every item from the user's cart.

        Returns:
            int: Number of cart items removed
        """
        cart_ids = select(Cart.id).where(Cart.user_id == user_id)
        stmt = (
            delete(CartItem)
            .where(CartItem.cart_id.in_(cart_ids))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        logger.info("cart_cleared", user_id=str(user_id), items_removed=result.rowcount)
        return result.rowcount
