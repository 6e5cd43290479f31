"""
Order lifecycle vocabulary and transition tables.

The tables here are the only place the allowed transitions are spelled out;
the ledgers refuse anything they do not list.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class PaymentStatus(str, Enum):
    """Payment state of an order."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    """Fulfillment state of an order."""

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RefundStatus(str, Enum):
    """Progress of the single refund attempt an order may carry."""

    REQUIRED = "required"  # captured on an order cancelled while payment was pending
    SUBMITTING = "submitting"
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    UNKNOWN = "unknown"  # gateway call timed out


class RefundOutcome(str, Enum):
    """Refund result reported by the gateway."""

    PROCESSED = "processed"
    PENDING = "pending"
    FAILED = "failed"


class Initiator(str, Enum):
    """Who triggered a reconciliation."""

    USER = "user"
    ADMIN = "admin"
    WEBHOOK = "webhook"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    OUT_OF_STOCK = "out_of_stock"


PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
}

FULFILLMENT_TRANSITIONS: Dict[FulfillmentStatus, FrozenSet[FulfillmentStatus]] = {
    FulfillmentStatus.PENDING: frozenset(
        {FulfillmentStatus.PROCESSING, FulfillmentStatus.CANCELLED}
    ),
    FulfillmentStatus.PROCESSING: frozenset(
        {FulfillmentStatus.SHIPPED, FulfillmentStatus.CANCELLED}
    ),
    FulfillmentStatus.SHIPPED: frozenset({FulfillmentStatus.DELIVERED}),
}

# ``None`` stands for an order that has never carried a refund.
REFUND_TRANSITIONS: Dict[Optional[RefundStatus], FrozenSet[RefundStatus]] = {
    None: frozenset({RefundStatus.REQUIRED, RefundStatus.SUBMITTING}),
    RefundStatus.REQUIRED: frozenset({RefundStatus.SUBMITTING}),
    RefundStatus.SUBMITTING: frozenset(
        {RefundStatus.PENDING, RefundStatus.FAILED, RefundStatus.UNKNOWN}
    ),
    RefundStatus.PENDING: frozenset({RefundStatus.FAILED}),
    RefundStatus.FAILED: frozenset({RefundStatus.SUBMITTING}),
    RefundStatus.UNKNOWN: frozenset(
        {RefundStatus.SUBMITTING, RefundStatus.PENDING, RefundStatus.FAILED}
    ),
}

CANCELLABLE_STATES: Tuple[FulfillmentStatus, ...] = (
    FulfillmentStatus.PENDING,
    FulfillmentStatus.PROCESSING,
)

# Refund states from which a new gateway submission may be started.
RETRYABLE_REFUND_STATES: Tuple[RefundStatus, ...] = (
    RefundStatus.REQUIRED,
    RefundStatus.FAILED,
    RefundStatus.UNKNOWN,
)

IN_FLIGHT_REFUND_STATES: Tuple[RefundStatus, ...] = (
    RefundStatus.SUBMITTING,
    RefundStatus.PENDING,
)


def is_payment_transition_allowed(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, frozenset())


def is_fulfillment_transition_allowed(
    current: FulfillmentStatus, target: FulfillmentStatus
) -> bool:
    return target in FULFILLMENT_TRANSITIONS.get(current, frozenset())


def fulfillment_predecessors(target: FulfillmentStatus) -> Tuple[FulfillmentStatus, ...]:
    """States from which ``target`` is directly reachable."""
    return tuple(
        state for state, targets in FULFILLMENT_TRANSITIONS.items() if target in targets
    )


def check_values(enum_cls: type) -> str:
    """Render enum values for a SQL ``IN (...)`` check constraint."""
    return ", ".join(f"'{member.value}'" for member in enum_cls)


def is_refund_transition_allowed(
    current: Optional[RefundStatus], target: RefundStatus
) -> bool:
    return target in REFUND_TRANSITIONS.get(current, frozenset())
