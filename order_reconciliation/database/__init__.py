"""Database package for the order reconciliation engine."""
from .connection import init_db, make_session_factory
from .models import (
    Base,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatusHistory,
    OutboxEvent,
    PaymentLog,
    Product,
)

__all__ = [
    "Base",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "OutboxEvent",
    "PaymentLog",
    "Product",
    "make_session_factory",
    "init_db",
]
