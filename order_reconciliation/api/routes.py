"""
API routes for order payment reconciliation.

Domain errors are mapped to HTTP statuses by the exception handlers in
``api.main``; routes only translate requests and results.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from order_reconciliation.container import Services
from order_reconciliation.core.coordinator import PaymentOutcome
from order_reconciliation.states import Initiator

from .schemas import (
    CancellationResponse,
    FulfillmentUpdateRequest,
    HealthCheckResponse,
    PaymentStatusResponse,
    ReconciliationResponse,
    StatusHistoryEntry,
    SimulatedWebhookRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> Services:
    return request.app.state.services


@order_router.get(
    "/payment/verify/{reference}",
    response_model=ReconciliationResponse,
    summary="Verify a payment",
    description="Poll the gateway for a payment outcome and reconcile the order",
)
async def verify_payment(
    reference: str,
    services: Services = Depends(get_services),
) -> ReconciliationResponse:
    result = await services.coordinator.verify_and_reconcile(reference, Initiator.USER)
    return ReconciliationResponse.from_result(result)


@order_router.delete(
    "/{order_id}",
    response_model=CancellationResponse,
    summary="Cancel an order",
    description="Cancel an order that has not shipped; paid orders are refunded",
)
async def cancel_order(
    order_id: int,
    actor: str = Header("customer", alias="X-Actor-ID"),
    services: Services = Depends(get_services),
) -> CancellationResponse:
    logger.info("api_cancel_order_request", order_id=order_id, actor=actor)
    result = await services.cancellation.cancel_order(order_id, actor, Initiator.USER)
    return CancellationResponse.from_result(result)


@order_router.get(
    "/{order_id}/history",
    response_model=List[StatusHistoryEntry],
    summary="Order status history",
)
async def order_history(
    order_id: int,
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.queries.status_history(order_id)


@payment_router.get(
    "/status/{reference}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Order payment state with the five most recent payment log entries",
)
async def payment_status(
    reference: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.queries.payment_status(reference)


@payment_router.post(
    "/test-webhook",
    response_model=ReconciliationResponse,
    summary="Simulate a gateway payment outcome",
    description="Development helper that feeds an outcome through the webhook path",
)
async def simulate_webhook(
    request: SimulatedWebhookRequest,
    services: Services = Depends(get_services),
) -> ReconciliationResponse:
    if services.settings.is_production or not services.settings.is_test_mode:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Test webhooks are only available with a Stripe test key outside production",
        )

    logger.info(
        "api_test_webhook_request",
        reference=request.reference,
        succeeded=request.succeeded,
    )
    outcome = PaymentOutcome(
        succeeded=request.succeeded,
        method=request.payment_method if request.succeeded else None,
        failure_reason=None if request.succeeded else (request.failure_reason or "Test failure"),
        gateway_payload={"simulated": True},
    )
    result = await services.coordinator.reconcile_payment(
        request.reference, outcome, Initiator.WEBHOOK
    )
    return ReconciliationResponse.from_result(result)


@webhook_router.post(
    "/gateway",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Handle signed Stripe webhook events",
)
async def gateway_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle gateway webhook events.

    The signature is checked against the raw body before it is parsed.
    """
    body = await request.body()
    return await services.webhook_handler.handle(body, stripe_signature)


@admin_router.post(
    "/orders/payment/verify/{reference}",
    response_model=ReconciliationResponse,
    summary="Admin payment verification",
    description="Manually verify a payment; 409 if it was already processed",
)
async def admin_verify_payment(
    reference: str,
    actor: str = Header("admin", alias="X-Actor-ID"),
    services: Services = Depends(get_services),
) -> ReconciliationResponse:
    logger.info("api_admin_verify_request", reference=reference, actor=actor)
    result = await services.coordinator.verify_and_reconcile(reference, Initiator.ADMIN)
    response = ReconciliationResponse.from_result(result)
    if result.already_processed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "Payment already processed",
                **response.model_dump(mode="json"),
            },
        )
    return response


@admin_router.post(
    "/orders/{order_id}/refund",
    response_model=CancellationResponse,
    summary="Retry a refund",
    description="Resubmit the refund of a cancelled, paid order",
)
async def retry_refund(
    order_id: int,
    actor: str = Header("admin", alias="X-Actor-ID"),
    services: Services = Depends(get_services),
) -> CancellationResponse:
    logger.info("api_retry_refund_request", order_id=order_id, actor=actor)
    result = await services.cancellation.retry_refund(order_id, actor, Initiator.ADMIN)
    return CancellationResponse.from_result(result)


@admin_router.put(
    "/orders/{order_id}/status",
    summary="Advance fulfillment",
    description="Mark a paid order shipped, or a shipped order delivered",
)
async def update_order_status(
    order_id: int,
    request: FulfillmentUpdateRequest,
    actor: str = Header("admin", alias="X-Actor-ID"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    snapshot = await services.fulfillment.update_status(
        order_id, request.status, actor, notes=request.notes
    )
    return snapshot.to_dict()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
