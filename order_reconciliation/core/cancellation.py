"""
Cancellation and refund workflow.

Cancellation is gated on fulfillment state and never waits for the refund.
A paid order claims its single refund slot (``refund_status``) in the
cancelling transaction; the gateway call happens after commit, and its
outcome is settled through ``reconcile_refund_outcome``, the same idempotent
path gateway refund webhooks use.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_reconciliation.core.audit_log import AuditLog
from order_reconciliation.core.coordinator import ReconciliationResult
from order_reconciliation.core.errors import InvalidStateError, RefundInProgressError
from order_reconciliation.core.inventory_ledger import InventoryLedger
from order_reconciliation.core.order_ledger import (
    OrderLedger,
    OrderSnapshot,
    PaymentTransitionFields,
)
from order_reconciliation.core.outbox import NotificationDispatcher, enqueue_notification
from order_reconciliation.integrations import notifications
from order_reconciliation.integrations.gateway import (
    GatewayClient,
    GatewayError,
    RefundErrorDisposition,
    RefundErrorPolicy,
    RefundTicketStatus,
)
from order_reconciliation.monitoring.logging import correlation_context
from order_reconciliation.monitoring.metrics import metrics
from order_reconciliation.states import (
    CANCELLABLE_STATES,
    IN_FLIGHT_REFUND_STATES,
    RETRYABLE_REFUND_STATES,
    FulfillmentStatus,
    Initiator,
    PaymentStatus,
    RefundOutcome,
    RefundStatus,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RefundAttempt:
    """What a refund submission left behind."""

    status: RefundStatus
    ticket_id: Optional[str] = None
    retryable: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class CancellationResult:
    order: OrderSnapshot
    refund: Optional[RefundAttempt] = None


class CancellationWorkflow:
    """Cancels orders, submits refunds and settles refund outcomes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayClient,
        refund_policy: Optional[RefundErrorPolicy] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        orders: Optional[OrderLedger] = None,
        inventory: Optional[InventoryLedger] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.refund_policy = refund_policy or RefundErrorPolicy()
        self.dispatcher = dispatcher
        self.orders = orders or OrderLedger()
        self.inventory = inventory or InventoryLedger()
        self.audit = audit or AuditLog()

    async def cancel_order(
        self,
        order_id: int,
        actor: str,
        initiator: Initiator = Initiator.USER,
    ) -> CancellationResult:
        """
        Cancel an order that has not shipped.

        Stock is restored and, for a paid order, a refund is submitted after
        the cancellation commits. A refund the gateway cannot confirm leaves
        the order cancelled with a retryable refund status.

        Args:
            order_id: Order to cancel
            actor: Identity recorded in the status history
            initiator: Who asked for the cancellation

        Returns:
            CancellationResult: Cancelled order and the refund attempt, if any

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidStateError: If the order is shipped, delivered or already cancelled
        """
        with correlation_context(order_id=order_id, actor=actor):
            async with self.session_factory() as session:
                async with session.begin():
                    matched = await self.orders.transition_fulfillment(
                        session, order_id, CANCELLABLE_STATES, FulfillmentStatus.CANCELLED
                    )
                    order = await self.orders.require(session, order_id)
                    if not matched:
                        logger.info(
                            "cancellation_rejected",
                            fulfillment_status=order.fulfillment_status,
                        )
                        raise InvalidStateError(
                            f"Order {order_id} cannot be cancelled while "
                            f"{order.fulfillment_status}",
                            current_state=order.fulfillment_status,
                        )

                    if await self.inventory.restore_order_decrement(session, order_id):
                        metrics.record_inventory_movement("restore")
                    await self.audit.record_status(
                        session,
                        order_id=order_id,
                        status=FulfillmentStatus.CANCELLED.value,
                        notes=f"Cancelled by {initiator.value}",
                        actor=actor,
                    )
                    event_id = await enqueue_notification(
                        session,
                        order_id=order_id,
                        event_type="order_cancelled",
                        recipient=order.customer_email,
                        template=notifications.ORDER_CANCELLED,
                        data={
                            "order_id": order_id,
                            "payment_reference": order.payment_reference,
                            "refund_expected": order.payment_status == PaymentStatus.PAID.value,
                        },
                    )

                    refund_claimed = False
                    if order.payment_status == PaymentStatus.PAID.value:
                        refund_claimed = bool(
                            await self.orders.transition_refund(
                                session,
                                order.payment_reference,
                                [None],
                                RefundStatus.SUBMITTING,
                                bump_attempts=True,
                            )
                        )
                    order = await self.orders.require(session, order_id)
                    snapshot = self.orders.snapshot(order)

            metrics.record_cancellation(snapshot.payment_status.value)
            logger.info(
                "order_cancelled",
                payment_status=snapshot.payment_status.value,
                refund_claimed=refund_claimed,
            )
            await self._dispatch([event_id])

            refund = None
            if refund_claimed:
                refund = await self._submit_refund(snapshot, initiator)
                snapshot = await self._reload(order_id)

            return CancellationResult(order=snapshot, refund=refund)

    async def retry_refund(
        self,
        order_id: int,
        actor: str,
        initiator: Initiator = Initiator.ADMIN,
    ) -> CancellationResult:
        """
        Submit the refund again for a cancelled, paid order.

        A refund whose outcome is unknown is resubmitted under the same
        idempotency key, so the gateway cannot create a second refund for it.

        Raises:
            OrderNotFoundError: If the order does not exist
            RefundInProgressError: If a refund is already submitting or pending
            InvalidStateError: If the order has no refund to retry
        """
        with correlation_context(order_id=order_id, actor=actor):
            async with self.session_factory() as session:
                async with session.begin():
                    order = await self.orders.require(session, order_id)
                    current = RefundStatus(order.refund_status) if order.refund_status else None

                    if current in IN_FLIGHT_REFUND_STATES:
                        raise RefundInProgressError(
                            f"Refund for order {order_id} is already {current.value}",
                            current_state=current.value,
                        )
                    if (
                        order.payment_status != PaymentStatus.PAID.value
                        or order.fulfillment_status != FulfillmentStatus.CANCELLED.value
                        or current not in RETRYABLE_REFUND_STATES
                    ):
                        raise InvalidStateError(
                            f"Order {order_id} has no refund to retry",
                            current_state=order.refund_status or order.payment_status,
                        )

                    matched = await self.orders.transition_refund(
                        session,
                        order.payment_reference,
                        [current],
                        RefundStatus.SUBMITTING,
                        bump_attempts=current is not RefundStatus.UNKNOWN,
                    )
                    if not matched:
                        raise RefundInProgressError(
                            f"Refund for order {order_id} was claimed concurrently",
                            current_state=RefundStatus.SUBMITTING.value,
                        )
                    await self.audit.record_status(
                        session,
                        order_id=order_id,
                        status="refund_retry",
                        notes=f"Refund resubmitted from {current.value}",
                        actor=actor,
                    )
                    order = await self.orders.require(session, order_id)
                    snapshot = self.orders.snapshot(order)

            logger.info("refund_retry_claimed", previous_status=current.value)
            refund = await self._submit_refund(snapshot, initiator)
            return CancellationResult(order=await self._reload(order_id), refund=refund)

    async def _submit_refund(self, order: OrderSnapshot, initiator: Initiator) -> RefundAttempt:
        reference = order.payment_reference
        idempotency_key = f"refund:{reference}:{order.refund_attempts}"

        try:
            ticket = await self.gateway.initiate_refund(
                reference, order.total_cents, idempotency_key
            )
        except GatewayError as e:
            disposition = self.refund_policy.classify(e)
            logger.warning(
                "refund_submission_error",
                reference=reference,
                disposition=disposition.value,
                error_type=e.error_type.value,
                error_code=e.code,
                error=str(e),
            )
            metrics.record_refund_outcome(disposition.value, "submission")

            if disposition is RefundErrorDisposition.ALREADY_REFUNDED:
                await self.reconcile_refund_outcome(
                    reference,
                    RefundOutcome.PROCESSED,
                    gateway_payload={"code": e.code, "message": str(e)},
                    initiator=initiator,
                )
                return RefundAttempt(status=RefundStatus.PROCESSED)

            if disposition is RefundErrorDisposition.MANUAL_REVIEW:
                await self.reconcile_refund_outcome(
                    reference,
                    RefundOutcome.FAILED,
                    gateway_payload={"code": e.code, "message": str(e)},
                    initiator=initiator,
                    failure_reason=str(e),
                )
                return RefundAttempt(status=RefundStatus.FAILED, error=str(e))

            async with self.session_factory() as session:
                async with session.begin():
                    await self.orders.transition_refund(
                        session, reference, [RefundStatus.SUBMITTING], RefundStatus.UNKNOWN
                    )
            return RefundAttempt(status=RefundStatus.UNKNOWN, retryable=True, error=str(e))

        metrics.record_refund_outcome(ticket.status.value, "submission")

        if ticket.status is RefundTicketStatus.FAILED:
            await self.reconcile_refund_outcome(
                reference,
                RefundOutcome.FAILED,
                gateway_payload={"id": ticket.ticket_id},
                initiator=initiator,
                failure_reason=ticket.failure_reason,
            )
            return RefundAttempt(
                status=RefundStatus.FAILED,
                ticket_id=ticket.ticket_id,
                error=ticket.failure_reason,
            )

        # Processed tickets are finalized by the gateway's refund webhook.
        async with self.session_factory() as session:
            async with session.begin():
                await self.orders.transition_refund(
                    session,
                    reference,
                    [RefundStatus.SUBMITTING],
                    RefundStatus.PENDING,
                    ticket_id=ticket.ticket_id,
                )
        logger.info("refund_submitted", reference=reference, refund_id=ticket.ticket_id)
        return RefundAttempt(status=RefundStatus.PENDING, ticket_id=ticket.ticket_id)

    async def reconcile_refund_outcome(
        self,
        reference: str,
        outcome: RefundOutcome,
        gateway_payload: Optional[Dict[str, Any]] = None,
        initiator: Initiator = Initiator.WEBHOOK,
        *,
        ticket_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Settle a refund outcome reported by the gateway.

        Each outcome has its own winner rule:

        - processed: the conditional ``payment_status paid -> refunded`` on a
          cancelled order; refunds of orders that were never cancelled are ignored
        - failed: the conditional ``refund_status -> failed`` from an open refund
        - pending: the conditional ``refund_status -> pending`` from a submitted
          or unknown refund, so every resubmission can be confirmed once

        Only the winner appends log and history rows. The ``refund_pending``
        payment log is written for the first confirmed submission only.

        Raises:
            OrderNotFoundError: If no order carries ``reference``
        """
        event_ids: List[int] = []

        async with self.session_factory() as session:
            async with session.begin():
                if outcome is RefundOutcome.PROCESSED:
                    matched = await self.orders.transition_payment(
                        session,
                        reference,
                        PaymentStatus.PAID,
                        PaymentStatus.REFUNDED,
                        PaymentTransitionFields(refund_status=RefundStatus.PROCESSED),
                        fulfillment_status=FulfillmentStatus.CANCELLED,
                    )
                    order = await self.orders.require_by_reference(session, reference)
                    if not matched and order.payment_status == PaymentStatus.PAID.value:
                        logger.warning(
                            "refund_ignored_order_not_cancelled",
                            reference=reference,
                            fulfillment_status=order.fulfillment_status,
                        )
                    if matched:
                        await self.audit.record_payment(
                            session,
                            order_id=order.id,
                            reference=reference,
                            status=PaymentStatus.REFUNDED.value,
                            processed_by=initiator.value,
                            amount_cents=order.total_cents,
                            gateway_response=gateway_payload,
                        )
                        await self.audit.record_status(
                            session,
                            order_id=order.id,
                            status=PaymentStatus.REFUNDED.value,
                            notes="Refund processed",
                            actor=initiator.value,
                        )
                        event_ids.append(
                            await enqueue_notification(
                                session,
                                order_id=order.id,
                                event_type="refund_processed",
                                recipient=order.customer_email,
                                template=notifications.REFUND_PROCESSED,
                                data={
                                    "order_id": order.id,
                                    "payment_reference": reference,
                                    "amount_cents": order.total_cents,
                                },
                            )
                        )

                elif outcome is RefundOutcome.FAILED:
                    matched = await self.orders.transition_refund(
                        session,
                        reference,
                        [RefundStatus.SUBMITTING, RefundStatus.PENDING, RefundStatus.UNKNOWN],
                        RefundStatus.FAILED,
                    )
                    order = await self.orders.require_by_reference(session, reference)
                    if matched:
                        await self.audit.record_payment(
                            session,
                            order_id=order.id,
                            reference=reference,
                            status="refund_failed",
                            processed_by=initiator.value,
                            amount_cents=order.total_cents,
                            failure_reason=failure_reason,
                            gateway_response=gateway_payload,
                        )
                        await self.audit.record_status(
                            session,
                            order_id=order.id,
                            status="refund_failed",
                            notes=failure_reason or "Refund failed at the gateway",
                            actor=initiator.value,
                        )

                else:
                    matched = await self.orders.transition_refund(
                        session,
                        reference,
                        [RefundStatus.SUBMITTING, RefundStatus.UNKNOWN],
                        RefundStatus.PENDING,
                        ticket_id=ticket_id,
                    )
                    order = await self.orders.require_by_reference(session, reference)
                    if matched:
                        await self.audit.record_payment(
                            session,
                            order_id=order.id,
                            reference=reference,
                            status="refund_pending",
                            processed_by=initiator.value,
                            amount_cents=order.total_cents,
                            gateway_response=gateway_payload,
                        )
                        await self.audit.record_status(
                            session,
                            order_id=order.id,
                            status="refund_pending",
                            notes="Refund accepted by the gateway",
                            actor=initiator.value,
                        )

                order = await self.orders.require_by_reference(session, reference)
                snapshot = self.orders.snapshot(order)

        already_processed = not matched
        if not already_processed:
            metrics.record_refund_outcome(outcome.value, initiator.value)
        logger.info(
            "refund_outcome_reconciled",
            reference=reference,
            outcome=outcome.value,
            already_processed=already_processed,
            payment_status=snapshot.payment_status.value,
            refund_status=snapshot.refund_status.value if snapshot.refund_status else None,
        )
        await self._dispatch(event_ids)
        return ReconciliationResult(order=snapshot, already_processed=already_processed)

    async def _reload(self, order_id: int) -> OrderSnapshot:
        async with self.session_factory() as session:
            return self.orders.snapshot(await self.orders.require(session, order_id))

    async def _dispatch(self, event_ids: List[int]) -> None:
        if not event_ids or self.dispatcher is None:
            return
        try:
            await self.dispatcher.dispatch(event_ids)
        except Exception as e:
            logger.warning("notification_dispatch_deferred", event_ids=event_ids, error=str(e))
