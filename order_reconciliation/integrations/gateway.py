"""
Payment gateway contract.

The engine talks to the gateway only through ``GatewayClient``: confirm a
payment for a reference, and start a refund. Errors are classified once, here,
so callers branch on ``GatewayErrorType`` instead of vendor exceptions.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Protocol

from order_reconciliation.config import Settings


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff
    TIMEOUT = "timeout"  # Outcome unknown


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            code: Gateway error code, if the gateway sent one
            original_error: Original vendor exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.code = code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is not GatewayErrorType.PERMANENT


class GatewayTimeout(GatewayError):
    """Raised when a gateway call exceeds its time bound."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, GatewayErrorType.TIMEOUT, original_error=original_error)


class PaymentNotSettledError(Exception):
    """Raised when the gateway has not reached a final outcome for a payment yet."""

    def __init__(self, reference: str, gateway_status: Optional[str] = None):
        super().__init__(f"Payment {reference} is not settled at the gateway yet")
        self.reference = reference
        self.gateway_status = gateway_status


class VerificationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class VerificationResult:
    """Gateway view of a payment."""

    status: VerificationStatus
    payment_method: Optional[str] = None
    amount_cents: Optional[int] = None
    failure_reason: Optional[str] = None
    gateway_status: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class RefundTicketStatus(str, Enum):
    PROCESSED = "processed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class RefundTicket:
    """Gateway-issued handle for a refund."""

    ticket_id: str
    status: RefundTicketStatus
    failure_reason: Optional[str] = None


class GatewayClient(Protocol):
    async def verify(self, reference: str) -> VerificationResult:
        ...

    async def initiate_refund(
        self, reference: str, amount_cents: int, idempotency_key: str
    ) -> RefundTicket:
        ...


class RefundErrorDisposition(Enum):
    """What a refund submission error means for the order."""

    ALREADY_REFUNDED = "already_refunded"
    MANUAL_REVIEW = "manual_review"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class RefundErrorPolicy:
    """
    Maps refund submission errors to a disposition.

    Listed codes win over the error type. Any other retryable error leaves
    the refund inconclusive; any other permanent error needs an operator.
    """

    already_refunded_codes: FrozenSet[str] = frozenset({"charge_already_refunded"})
    manual_review_codes: FrozenSet[str] = frozenset()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RefundErrorPolicy":
        return cls(
            already_refunded_codes=frozenset(settings.get_refund_already_reversed_codes()),
            manual_review_codes=frozenset(settings.get_refund_manual_review_codes()),
        )

    def classify(self, error: GatewayError) -> RefundErrorDisposition:
        if error.code and error.code in self.already_refunded_codes:
            return RefundErrorDisposition.ALREADY_REFUNDED
        if error.code and error.code in self.manual_review_codes:
            return RefundErrorDisposition.MANUAL_REVIEW
        if error.retryable:
            return RefundErrorDisposition.INCONCLUSIVE
        return RefundErrorDisposition.MANUAL_REVIEW
