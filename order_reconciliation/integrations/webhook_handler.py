"""
Gateway webhook handler with signature verification and event deduplication.

Implements:
- HMAC signature verification over the exact raw request body
- Payload validation before anything reaches the state machine
- Event deduplication using Redis (fail-open pre-filter)
- Routing of payment and refund events to the reconciliation core
"""
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from pydantic import BaseModel, ValidationError

from order_reconciliation.config import Settings
from order_reconciliation.core.cancellation import CancellationWorkflow
from order_reconciliation.core.coordinator import PaymentOutcome, ReconciliationCoordinator
from order_reconciliation.core.errors import OrderNotFoundError
from order_reconciliation.monitoring.metrics import metrics
from order_reconciliation.states import Initiator, RefundOutcome

logger = structlog.get_logger(__name__)

_REFUND_OUTCOMES = {
    "succeeded": RefundOutcome.PROCESSED,
    "pending": RefundOutcome.PENDING,
    "requires_action": RefundOutcome.PENDING,
    "failed": RefundOutcome.FAILED,
    "canceled": RefundOutcome.FAILED,
}


class WebhookError(Exception):
    """Raised when a webhook request cannot be accepted."""

    pass


class SignatureInvalidError(WebhookError):
    """Raised when the signature header does not match the request body."""

    pass


class MalformedWebhookError(WebhookError):
    """Raised when a correctly signed body is not a usable event."""

    pass


class GatewayEventData(BaseModel):
    object: Dict[str, Any]


class GatewayEvent(BaseModel):
    """The parts of a Stripe event the engine relies on."""

    id: str
    type: str
    data: GatewayEventData


class WebhookHandler:
    """
    Handles Stripe webhook events with deduplication and routing.

    Features:
    - Signature verification using the Stripe webhook secret
    - Event deduplication (processed event ids kept in Redis)
    - Event type routing to the coordinator and the refund workflow
    """

    def __init__(
        self,
        settings: Settings,
        coordinator: ReconciliationCoordinator,
        cancellation: CancellationWorkflow,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            settings: Application settings
            coordinator: Payment reconciliation coordinator
            cancellation: Refund outcome reconciliation
            redis_client: Optional Redis client for event deduplication
        """
        self.settings = settings
        self.coordinator = coordinator
        self.cancellation = cancellation
        self.redis_client = redis_client
        self.event_handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[str]]] = {
            "payment_intent.succeeded": self.handle_payment_intent_succeeded,
            "payment_intent.payment_failed": self.handle_payment_intent_payment_failed,
            "refund.created": self.handle_refund,
            "refund.updated": self.handle_refund,
            "refund.failed": self.handle_refund_failed,
            "charge.refunded": self.handle_charge_refunded,
        }

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """
        Verify the webhook signature, then parse the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            GatewayEvent: Verified event

        Raises:
            SignatureInvalidError: If the signature is missing or does not match
            MalformedWebhookError: If the signed body is not a valid event
        """
        if not signature:
            raise SignatureInvalidError("Missing signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalidError("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.settings.stripe_webhook_secret,
                self.settings.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise SignatureInvalidError(f"Invalid webhook signature: {str(e)}") from e

        try:
            event = GatewayEvent.model_validate(json.loads(body))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error("webhook_payload_malformed", error=str(e))
            raise MalformedWebhookError(f"Malformed webhook payload: {str(e)}") from e

        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        return event

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            event_id: Gateway event ID

        Returns:
            bool: True if event already processed, False otherwise
        """
        if self.redis_client is None:
            return False
        try:
            exists = await self.redis_client.exists(f"webhook:processed:{event_id}")
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # The state machine is idempotent; a missed dedup only costs a no-op.
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                f"webhook:processed:{event_id}",
                self.settings.webhook_dedup_ttl_seconds,
                "1",
            )
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def handle(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify, deduplicate and route a webhook delivery.

        Returns:
            Dict[str, Any]: ``status`` is one of processed, duplicate, ignored

        Raises:
            SignatureInvalidError: If the signature does not verify
            MalformedWebhookError: If the body is not a valid event
        """
        event = self.verify_signature(payload, signature)
        return await self.process_event(event)

    async def process_event(self, event: GatewayEvent) -> Dict[str, Any]:
        """
        Route a verified event.

        Unknown references and unsupported event types are acknowledged as
        ignored so the gateway stops redelivering them. Any other failure
        propagates and leaves the event eligible for redelivery.
        """
        started = time.monotonic()
        log = logger.bind(event_id=event.id, event_type=event.type)

        if await self.is_event_processed(event.id):
            log.info("webhook_event_already_processed")
            metrics.record_webhook_event(event.type, "duplicate", time.monotonic() - started)
            return {"status": "duplicate", "event_id": event.id, "event_type": event.type}

        handler = self.event_handlers.get(event.type)
        if handler is None:
            log.info("webhook_event_type_ignored")
            status = "ignored"
        else:
            try:
                status = await handler(event.data.object)
            except OrderNotFoundError as e:
                log.warning("webhook_order_not_found", reference=e.reference)
                status = "ignored"
            except Exception as e:
                log.error("webhook_event_processing_failed", error=str(e))
                metrics.record_webhook_event(event.type, "failed", time.monotonic() - started)
                raise

        await self.mark_event_processed(event.id)
        metrics.record_webhook_event(event.type, status, time.monotonic() - started)
        log.info("webhook_event_handled", status=status)
        return {"status": status, "event_id": event.id, "event_type": event.type}

    @staticmethod
    def _reference(obj: Dict[str, Any]) -> Optional[str]:
        return (obj.get("metadata") or {}).get("payment_reference")

    async def handle_payment_intent_succeeded(self, payment_intent: Dict[str, Any]) -> str:
        reference = self._reference(payment_intent)
        if not reference:
            logger.warning("webhook_missing_reference", object_id=payment_intent.get("id"))
            return "ignored"

        method_types = payment_intent.get("payment_method_types") or []
        outcome = PaymentOutcome(
            succeeded=True,
            method=method_types[0] if method_types else None,
            amount_cents=payment_intent.get("amount_received") or payment_intent.get("amount"),
            gateway_payload={
                "id": payment_intent.get("id"),
                "status": payment_intent.get("status"),
                "amount_received": payment_intent.get("amount_received"),
                "currency": payment_intent.get("currency"),
            },
        )
        await self.coordinator.reconcile_payment(reference, outcome, Initiator.WEBHOOK)
        return "processed"

    async def handle_payment_intent_payment_failed(self, payment_intent: Dict[str, Any]) -> str:
        reference = self._reference(payment_intent)
        if not reference:
            logger.warning("webhook_missing_reference", object_id=payment_intent.get("id"))
            return "ignored"

        last_error = payment_intent.get("last_payment_error") or {}
        outcome = PaymentOutcome(
            succeeded=False,
            failure_reason=last_error.get("message", "Unknown error"),
            gateway_payload={
                "id": payment_intent.get("id"),
                "status": payment_intent.get("status"),
                "code": last_error.get("code"),
            },
        )
        await self.coordinator.reconcile_payment(reference, outcome, Initiator.WEBHOOK)
        return "processed"

    async def handle_refund(self, refund: Dict[str, Any]) -> str:
        reference = self._reference(refund)
        outcome = _REFUND_OUTCOMES.get(refund.get("status"))
        if not reference or outcome is None:
            logger.warning(
                "webhook_refund_unusable",
                refund_id=refund.get("id"),
                status=refund.get("status"),
            )
            return "ignored"

        await self.cancellation.reconcile_refund_outcome(
            reference,
            outcome,
            gateway_payload={"id": refund.get("id"), "status": refund.get("status")},
            initiator=Initiator.WEBHOOK,
            ticket_id=refund.get("id"),
            failure_reason=refund.get("failure_reason"),
        )
        return "processed"

    async def handle_refund_failed(self, refund: Dict[str, Any]) -> str:
        reference = self._reference(refund)
        if not reference:
            logger.warning("webhook_missing_reference", object_id=refund.get("id"))
            return "ignored"

        await self.cancellation.reconcile_refund_outcome(
            reference,
            RefundOutcome.FAILED,
            gateway_payload={"id": refund.get("id"), "status": refund.get("status")},
            initiator=Initiator.WEBHOOK,
            failure_reason=refund.get("failure_reason"),
        )
        return "processed"

    async def handle_charge_refunded(self, charge: Dict[str, Any]) -> str:
        reference = self._reference(charge)
        if not reference or not charge.get("refunded"):
            # Partial refunds are not part of the order lifecycle.
            logger.info(
                "webhook_charge_refund_skipped",
                charge_id=charge.get("id"),
                fully_refunded=charge.get("refunded"),
            )
            return "ignored"

        await self.cancellation.reconcile_refund_outcome(
            reference,
            RefundOutcome.PROCESSED,
            gateway_payload={
                "id": charge.get("id"),
                "amount_refunded": charge.get("amount_refunded"),
            },
            initiator=Initiator.WEBHOOK,
        )
        return "processed"
