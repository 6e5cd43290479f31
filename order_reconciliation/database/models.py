"""SQLAlchemy database models for the order reconciliation engine."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from order_reconciliation.states import (
    FulfillmentStatus,
    PaymentStatus,
    ProductStatus,
    RefundStatus,
    check_values,
)

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Per-product stock counter.

    Only the inventory ledger writes ``quantity_on_hand`` and ``status``.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity_on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProductStatus.ACTIVE.value
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("quantity_on_hand >= 0", name="non_negative_stock"),
        CheckConstraint(f"status IN ({check_values(ProductStatus)})", name="valid_product_status"),
    )

    def __repr__(self) -> str:
        """String representation of Product."""
        return (
            f"<Product(id={self.id}, quantity_on_hand={self.quantity_on_hand}, "
            f"status={self.status})>"
        )


class Order(Base):
    """
    Orders table.

    Created outside the engine with ``payment_status='pending'`` and
    ``fulfillment_status='pending'``. Every later change goes through the
    conditional transitions of the order ledger.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    fulfillment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FulfillmentStatus.PENDING.value
    )
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    inventory_applied: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    refund_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    refund_ticket_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("total_cents >= 0", name="non_negative_total"),
        CheckConstraint(
            f"payment_status IN ({check_values(PaymentStatus)})", name="valid_payment_status"
        ),
        CheckConstraint(
            f"fulfillment_status IN ({check_values(FulfillmentStatus)})",
            name="valid_fulfillment_status",
        ),
        CheckConstraint(
            f"refund_status IS NULL OR refund_status IN ({check_values(RefundStatus)})",
            name="valid_refund_status",
        ),
        Index("idx_orders_payment_fulfillment", "payment_status", "fulfillment_status"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, reference={self.payment_reference}, "
            f"payment={self.payment_status}, fulfillment={self.fulfillment_status})>"
        )


class OrderItem(Base):
    """Immutable line-item snapshot captured when the order was created."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price_cents >= 0", name="non_negative_price"),
    )


class PaymentLog(Base):
    """
    Payment audit trail.

    Append-only. At most one row per ``(payment_reference, status)``; a second
    insert for the same pair is silently dropped.
    """

    __tablename__ = "payment_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    processed_by: Mapped[str] = mapped_column(String(50), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        UniqueConstraint("payment_reference", "status", name="uq_payment_logs_reference_status"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentLog."""
        return (
            f"<PaymentLog(id={self.id}, reference={self.payment_reference}, "
            f"status={self.status})>"
        )


class OrderStatusHistory(Base):
    """Order status history. One row per winning transition."""

    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )


class Cart(Base):
    __tablename__ = "carts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, unique=True)


class CartItem(Base):
    __tablename__ = "cart_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    cart_id: Mapped[int] = mapped_column(
        ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Notification intents are written in the same transaction as the order
    change they describe, then delivered by the notification dispatcher after
    commit.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'sending', 'sent', 'failed')", name="valid_outbox_status"
        ),
        Index(
            "idx_outbox_pending",
            "status",
            "created_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"status={self.status})>"
        )
