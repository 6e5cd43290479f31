"""Core reconciliation logic."""
from .cancellation import CancellationResult, CancellationWorkflow, RefundAttempt
from .coordinator import PaymentOutcome, ReconciliationCoordinator, ReconciliationResult
from .errors import (
    InvalidStateError,
    InvalidTransitionError,
    OrderEngineError,
    OrderNotFoundError,
    RefundInProgressError,
)
from .fulfillment import FulfillmentTracker
from .outbox import NotificationDispatcher, enqueue_notification
from .queries import OrderQueries

__all__ = [
    "CancellationResult",
    "CancellationWorkflow",
    "FulfillmentTracker",
    "InvalidStateError",
    "InvalidTransitionError",
    "NotificationDispatcher",
    "OrderEngineError",
    "OrderNotFoundError",
    "OrderQueries",
    "PaymentOutcome",
    "ReconciliationCoordinator",
    "ReconciliationResult",
    "RefundAttempt",
    "RefundInProgressError",
    "enqueue_notification",
]
