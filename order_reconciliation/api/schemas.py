"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from order_reconciliation.core.cancellation import CancellationResult
from order_reconciliation.core.coordinator import ReconciliationResult
from order_reconciliation.core.order_ledger import OrderSnapshot
from order_reconciliation.states import FulfillmentStatus


class OrderStateResponse(BaseModel):
    """Settled state of an order."""

    order_id: int = Field(..., description="Order ID")
    payment_reference: str = Field(..., description="Gateway payment reference")
    payment_status: str = Field(..., description="Payment status")
    fulfillment_status: str = Field(..., description="Fulfillment status")
    payment_method: Optional[str] = Field(default=None, description="Payment method")
    total_cents: int = Field(..., description="Order total in cents")
    refund_status: Optional[str] = Field(default=None, description="Refund status, if any")

    @classmethod
    def from_snapshot(cls, snapshot: OrderSnapshot) -> "OrderStateResponse":
        return cls(**snapshot.to_dict())


class ReconciliationResponse(BaseModel):
    """Response schema for payment verification."""

    order: OrderStateResponse
    already_processed: bool = Field(..., description="True if another caller settled the payment")
    refund_required: bool = Field(
        default=False, description="Payment captured for an already cancelled order"
    )

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "ReconciliationResponse":
        return cls(
            order=OrderStateResponse.from_snapshot(result.order),
            already_processed=result.already_processed,
            refund_required=result.refund_required,
        )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order": {
                        "order_id": 42,
                        "payment_reference": "order-42-1760832000000",
                        "payment_status": "paid",
                        "fulfillment_status": "processing",
                        "payment_method": "card",
                        "total_cents": 1000,
                        "refund_status": None,
                    },
                    "already_processed": False,
                    "refund_required": False,
                }
            ]
        }
    }


class RefundAttemptResponse(BaseModel):
    status: str = Field(..., description="Refund status after the submission")
    ticket_id: Optional[str] = Field(default=None, description="Gateway refund ID")
    retryable: bool = Field(default=False, description="Whether the refund may be retried")
    error: Optional[str] = Field(default=None, description="Gateway error, if any")


class CancellationResponse(BaseModel):
    """Response schema for cancellation and refund retry."""

    order: OrderStateResponse
    refund: Optional[RefundAttemptResponse] = None

    @classmethod
    def from_result(cls, result: CancellationResult) -> "CancellationResponse":
        refund = None
        if result.refund is not None:
            refund = RefundAttemptResponse(
                status=result.refund.status.value,
                ticket_id=result.refund.ticket_id,
                retryable=result.refund.retryable,
                error=result.refund.error,
            )
        return cls(order=OrderStateResponse.from_snapshot(result.order), refund=refund)


class FulfillmentUpdateRequest(BaseModel):
    """Request schema for advancing fulfillment."""

    status: FulfillmentStatus = Field(..., description="Target status (shipped or delivered)")
    notes: Optional[str] = Field(default=None, max_length=1000, description="Status notes")

    model_config = {
        "json_schema_extra": {"examples": [{"status": "shipped", "notes": "Tracking 1Z999"}]}
    }


class PaymentLogResponse(BaseModel):
    status: str
    amount_cents: Optional[int] = None
    payment_method: Optional[str] = None
    processed_by: str
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    """Response schema for payment status."""

    order_id: int = Field(..., description="Order ID")
    payment_reference: str = Field(..., description="Gateway payment reference")
    payment_status: str = Field(..., description="Payment status")
    fulfillment_status: str = Field(..., description="Fulfillment status")
    payment_method: Optional[str] = Field(default=None, description="Payment method")
    total_cents: int = Field(..., description="Order total in cents")
    refund_status: Optional[str] = Field(default=None, description="Refund status, if any")
    paid_at: Optional[str] = Field(default=None, description="Payment time (ISO 8601)")
    logs: List[PaymentLogResponse] = Field(..., description="Most recent payment log entries")


class StatusHistoryEntry(BaseModel):
    status: str
    notes: Optional[str] = None
    actor: Optional[str] = None
    created_at: Optional[str] = None


class SimulatedWebhookRequest(BaseModel):
    """Simulated gateway payment outcome (non-production only)."""

    reference: str = Field(..., min_length=1, description="Order payment reference")
    succeeded: bool = Field(default=True, description="Whether the payment succeeded")
    payment_method: Optional[str] = Field(default="card", description="Payment method")
    failure_reason: Optional[str] = Field(default=None, description="Failure reason")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, duplicate or ignored")
    event_id: str = Field(..., description="Gateway event ID")
    event_type: Optional[str] = Field(default=None, description="Gateway event type")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
