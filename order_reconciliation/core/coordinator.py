"""
Reconciliation coordinator.

Central payment state machine. Any initiator (user poll, admin override,
gateway webhook) hands it a reference and an outcome; one conditional update
on the order row decides the single winner, and only the winner cascades:

1. Conditional transition ``payment_status pending -> paid|failed``
2. Inventory decrement (order-scoped, idempotent)
3. Fulfillment ``pending -> processing``
4. Payment log and status history
5. Cart clearing
6. Notification intent in the outbox

All of it commits in one transaction. Notifications are dispatched after
commit on a best-effort basis.
"""
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_reconciliation.core.audit_log import AuditLog
from order_reconciliation.core.errors import OrderNotFoundError
from order_reconciliation.core.inventory_ledger import InventoryLedger
from order_reconciliation.core.order_ledger import (
    OrderLedger,
    OrderSnapshot,
    PaymentTransitionFields,
)
from order_reconciliation.core.outbox import NotificationDispatcher, enqueue_notification
from order_reconciliation.database.models import Order
from order_reconciliation.integrations import notifications
from order_reconciliation.integrations.cart_store import CartStore
from order_reconciliation.integrations.gateway import (
    GatewayClient,
    PaymentNotSettledError,
    VerificationResult,
    VerificationStatus,
)
from order_reconciliation.monitoring.logging import correlation_context
from order_reconciliation.monitoring.metrics import metrics
from order_reconciliation.states import (
    FulfillmentStatus,
    Initiator,
    PaymentStatus,
    RefundStatus,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentOutcome:
    """Payment result as reported by an initiator."""

    succeeded: bool
    method: Optional[str] = None
    amount_cents: Optional[int] = None
    failure_reason: Optional[str] = None
    gateway_payload: Optional[Dict[str, Any]] = None

    @classmethod
    def from_verification(cls, result: VerificationResult) -> "PaymentOutcome":
        return cls(
            succeeded=result.status is VerificationStatus.SUCCEEDED,
            method=result.payment_method,
            amount_cents=result.amount_cents,
            failure_reason=result.failure_reason,
            gateway_payload=result.payload or None,
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """Settled order state after a reconciliation attempt."""

    order: OrderSnapshot
    already_processed: bool
    refund_required: bool = False


class ReconciliationCoordinator:
    """
    Payment reconciliation with exactly-once side effects.

    Every collaborator is injected; the coordinator holds no global state.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayClient,
        cart_store: CartStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        orders: Optional[OrderLedger] = None,
        inventory: Optional[InventoryLedger] = None,
        audit: Optional[AuditLog] = None,
    ):
        """
        Initialize reconciliation coordinator.

        Args:
            session_factory: Factory for the per-attempt transaction
            gateway: Gateway used by the verify path
            cart_store: Cart store cleared on a winning payment
            dispatcher: Post-commit notification dispatcher
            orders: Order ledger
            inventory: Inventory ledger
            audit: Audit log
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.cart_store = cart_store
        self.dispatcher = dispatcher
        self.orders = orders or OrderLedger()
        self.inventory = inventory or InventoryLedger()
        self.audit = audit or AuditLog()

    async def reconcile_payment(
        self,
        reference: str,
        outcome: PaymentOutcome,
        initiator: Initiator,
    ) -> ReconciliationResult:
        """
        Apply a payment outcome to the order carrying ``reference``.

        Safe to call any number of times, from any initiator, concurrently.
        Only the first caller to move the payment out of ``pending`` applies
        side effects; everyone else gets ``already_processed=True`` and the
        settled state.

        Args:
            reference: Order payment reference
            outcome: Payment outcome
            initiator: Who is reporting the outcome

        Returns:
            ReconciliationResult: Settled order state

        Raises:
            OrderNotFoundError: If no order carries ``reference``
        """
        started = time.monotonic()
        target = PaymentStatus.PAID if outcome.succeeded else PaymentStatus.FAILED

        with correlation_context(reference=reference, initiator=initiator.value):
            logger.info("reconciliation_started", target_status=target.value)
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        matched = await self.orders.transition_payment(
                            session,
                            reference,
                            PaymentStatus.PENDING,
                            target,
                            PaymentTransitionFields(
                                payment_method=outcome.method if outcome.succeeded else None
                            ),
                        )
                        order = await self.orders.require_by_reference(session, reference)

                        event_ids: List[int] = []
                        refund_required = False
                        if matched:
                            if outcome.succeeded:
                                event_ids, refund_required = await self._apply_paid(
                                    session, order, outcome, initiator
                                )
                            else:
                                event_ids = await self._apply_failed(
                                    session, order, outcome, initiator
                                )
                            order = await self.orders.require_by_reference(session, reference)

                        snapshot = self.orders.snapshot(order)
            except OrderNotFoundError:
                metrics.record_reconciliation(
                    initiator.value, "not_found", time.monotonic() - started
                )
                logger.warning("reconciliation_order_not_found")
                raise

            already_processed = matched == 0
            result_label = "already_processed" if already_processed else target.value
            metrics.record_reconciliation(
                initiator.value, result_label, time.monotonic() - started
            )

            if already_processed:
                logger.info(
                    "reconciliation_already_processed",
                    payment_status=snapshot.payment_status.value,
                    fulfillment_status=snapshot.fulfillment_status.value,
                )
            else:
                logger.info(
                    "reconciliation_completed",
                    payment_status=snapshot.payment_status.value,
                    fulfillment_status=snapshot.fulfillment_status.value,
                    refund_required=refund_required,
                )
                await self._dispatch(event_ids)

            return ReconciliationResult(
                order=snapshot,
                already_processed=already_processed,
                refund_required=refund_required,
            )

    async def _apply_paid(
        self,
        session: AsyncSession,
        order: Order,
        outcome: PaymentOutcome,
        initiator: Initiator,
    ) -> Tuple[List[int], bool]:
        if outcome.amount_cents is not None and outcome.amount_cents != order.total_cents:
            logger.warning(
                "payment_amount_mismatch",
                order_id=order.id,
                expected_cents=order.total_cents,
                received_cents=outcome.amount_cents,
            )

        await self.audit.record_payment(
            session,
            order_id=order.id,
            reference=order.payment_reference,
            status=PaymentStatus.PAID.value,
            processed_by=initiator.value,
            amount_cents=(
                outcome.amount_cents if outcome.amount_cents is not None else order.total_cents
            ),
            payment_method=outcome.method,
            gateway_response=outcome.gateway_payload,
        )

        moved = await self.orders.transition_fulfillment(
            session, order.id, [FulfillmentStatus.PENDING], FulfillmentStatus.PROCESSING
        )
        if not moved:
            # Cancelled while the payment was still pending: keep the money
            # on record and leave stock and cart alone until it is refunded.
            await self.orders.transition_refund(
                session, order.payment_reference, [None], RefundStatus.REQUIRED
            )
            await self.audit.record_status(
                session,
                order_id=order.id,
                status="refund_required",
                notes="Payment captured after the order was cancelled",
                actor=initiator.value,
            )
            logger.warning(
                "payment_captured_for_cancelled_order",
                order_id=order.id,
                fulfillment_status=order.fulfillment_status,
            )
            return [], True

        if await self.inventory.apply_order_decrement(session, order.id):
            metrics.record_inventory_movement("decrement")
        await self.audit.record_status(
            session,
            order_id=order.id,
            status=FulfillmentStatus.PROCESSING.value,
            notes=f"Payment confirmed by {initiator.value}",
            actor=initiator.value,
        )
        await self.cart_store.clear(session, order.user_id)

        event_id = await enqueue_notification(
            session,
            order_id=order.id,
            event_type="payment_succeeded",
            recipient=order.customer_email,
            template=notifications.PAYMENT_SUCCEEDED,
            data={
                "order_id": order.id,
                "payment_reference": order.payment_reference,
                "total_cents": order.total_cents,
                "payment_method": outcome.method,
            },
        )
        return [event_id], False

    async def _apply_failed(
        self,
        session: AsyncSession,
        order: Order,
        outcome: PaymentOutcome,
        initiator: Initiator,
    ) -> List[int]:
        await self.audit.record_payment(
            session,
            order_id=order.id,
            reference=order.payment_reference,
            status=PaymentStatus.FAILED.value,
            processed_by=initiator.value,
            amount_cents=outcome.amount_cents,
            failure_reason=outcome.failure_reason,
            gateway_response=outcome.gateway_payload,
        )
        await self.audit.record_status(
            session,
            order_id=order.id,
            status="payment_failed",
            notes=outcome.failure_reason,
            actor=initiator.value,
        )
        event_id = await enqueue_notification(
            session,
            order_id=order.id,
            event_type="payment_failed",
            recipient=order.customer_email,
            template=notifications.PAYMENT_FAILED,
            data={
                "order_id": order.id,
                "payment_reference": order.payment_reference,
                "failure_reason": outcome.failure_reason,
            },
        )
        return [event_id]

    async def verify_and_reconcile(
        self, reference: str, initiator: Initiator
    ) -> ReconciliationResult:
        """
        Ask the gateway for the payment outcome, then reconcile it.

        Orders already out of ``pending`` are answered from the database
        without a gateway call.

        Raises:
            OrderNotFoundError: If no order carries ``reference``
            PaymentNotSettledError: If the gateway has no final outcome yet
            GatewayTimeout: If the gateway did not answer in time
            GatewayError: If the gateway call failed
        """
        async with self.session_factory() as session:
            order = await self.orders.require_by_reference(session, reference)
            snapshot = self.orders.snapshot(order)

        if snapshot.payment_status is not PaymentStatus.PENDING:
            logger.info(
                "verification_skipped_already_settled",
                reference=reference,
                initiator=initiator.value,
                payment_status=snapshot.payment_status.value,
            )
            metrics.record_reconciliation(initiator.value, "already_processed", 0.0)
            return ReconciliationResult(order=snapshot, already_processed=True)

        verification = await self.gateway.verify(reference)
        if verification.status is VerificationStatus.PENDING:
            logger.info(
                "payment_not_settled",
                reference=reference,
                gateway_status=verification.gateway_status,
            )
            raise PaymentNotSettledError(reference, verification.gateway_status)

        return await self.reconcile_payment(
            reference, PaymentOutcome.from_verification(verification), initiator
        )

    async def _dispatch(self, event_ids: List[int]) -> None:
        if not event_ids or self.dispatcher is None:
            return
        try:
            await self.dispatcher.dispatch(event_ids)
        except Exception as e:
            # Undelivered events stay pending for the outbox worker.
            logger.warning("notification_dispatch_deferred", event_ids=event_ids, error=str(e))
