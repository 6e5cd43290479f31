"""Exceptions raised by the reconciliation core."""
from typing import Optional


class OrderEngineError(Exception):
    """Base exception for order reconciliation errors."""

    pass


class OrderNotFoundError(OrderEngineError):
    """Raised when a reference or order id matches no order."""

    def __init__(
        self,
        message: str,
        reference: Optional[str] = None,
        order_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.reference = reference
        self.order_id = order_id


class InvalidStateError(OrderEngineError):
    """Raised when an operation is not allowed from the order's current state."""

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.current_state = current_state


class RefundInProgressError(InvalidStateError):
    """Raised when a refund is requested while another one is outstanding."""

    pass


class InvalidTransitionError(OrderEngineError):
    """Raised when code asks a ledger for a transition the lifecycle does not define."""

    pass
