"""
Tests for payment reconciliation.

Covers the winning cascade, the loser path, failed payments, the verify
path and payments captured for orders that were already cancelled.
"""
from typing import Any

import pytest

from order_reconciliation.core.coordinator import PaymentOutcome
from order_reconciliation.core.errors import OrderNotFoundError
from order_reconciliation.integrations.gateway import (
    GatewayTimeout,
    PaymentNotSettledError,
    VerificationResult,
    VerificationStatus,
)
from order_reconciliation.states import Initiator


class TestReconcilePayment:
    """Test suite for reconcile_payment."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_payment_cascade(
        self, services: Any, create_order: Any, db: Any, sender: Any
    ) -> None:
        """The winner decrements stock, clears the cart and notifies once."""
        seeded = await create_order(items=((10, 3, 500),))

        result = await services.coordinator.reconcile_payment(
            seeded.reference,
            PaymentOutcome(succeeded=True, method="card", amount_cents=1500),
            Initiator.USER,
        )

        assert result.already_processed is False
        assert result.refund_required is False
        assert result.order.payment_status.value == "paid"
        assert result.order.fulfillment_status.value == "processing"
        assert result.order.payment_method == "card"

        assert await db.stock(seeded.product_ids[0]) == (7, "active")
        assert await db.cart_item_count(seeded.user_id) == 0

        logs = await db.payment_logs(seeded.reference)
        assert [(log.status, log.processed_by, log.amount_cents) for log in logs] == [
            ("paid", "user", 1500)
        ]
        history = await db.history(seeded.order_id)
        assert [(row.status, row.actor) for row in history] == [("processing", "user")]

        outbox = await db.outbox(seeded.order_id)
        assert [(event.event_type, event.status) for event in outbox] == [
            ("payment_succeeded", "sent")
        ]
        assert [(recipient, template) for recipient, template, _ in sender.sent] == [
            ("customer@example.com", "payment_succeeded")
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_caller_gets_settled_state(
        self, services: Any, create_order: Any, db: Any, sender: Any
    ) -> None:
        seeded = await create_order(items=((10, 3, 500),))
        outcome = PaymentOutcome(succeeded=True, method="card")

        await services.coordinator.reconcile_payment(seeded.reference, outcome, Initiator.USER)
        again = await services.coordinator.reconcile_payment(
            seeded.reference, outcome, Initiator.WEBHOOK
        )

        assert again.already_processed is True
        assert again.order.payment_status.value == "paid"
        assert await db.stock(seeded.product_ids[0]) == (7, "active")
        assert len(await db.payment_logs(seeded.reference)) == 1
        assert len(await db.history(seeded.order_id)) == 1
        assert len(sender.sent) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_payment_leaves_stock_and_cart(
        self, services: Any, create_order: Any, db: Any, sender: Any
    ) -> None:
        seeded = await create_order(items=((10, 3, 500),))

        result = await services.coordinator.reconcile_payment(
            seeded.reference,
            PaymentOutcome(succeeded=False, failure_reason="Your card was declined."),
            Initiator.WEBHOOK,
        )

        assert result.already_processed is False
        assert result.order.payment_status.value == "failed"
        assert result.order.fulfillment_status.value == "pending"
        assert await db.stock(seeded.product_ids[0]) == (10, "active")
        assert await db.cart_item_count(seeded.user_id) == 1

        logs = await db.payment_logs(seeded.reference)
        assert [(log.status, log.failure_reason) for log in logs] == [
            ("failed", "Your card was declined.")
        ]
        assert [row.status for row in await db.history(seeded.order_id)] == ["payment_failed"]
        assert [template for _, template, _ in sender.sent] == ["payment_failed"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_after_failure_is_a_no_op(
        self, services: Any, create_order: Any, db: Any
    ) -> None:
        seeded = await create_order()

        await services.coordinator.reconcile_payment(
            seeded.reference, PaymentOutcome(succeeded=False), Initiator.WEBHOOK
        )
        result = await services.coordinator.reconcile_payment(
            seeded.reference, PaymentOutcome(succeeded=True), Initiator.USER
        )

        assert result.already_processed is True
        assert result.order.payment_status.value == "failed"
        assert (await db.order(seeded.order_id)).inventory_applied is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reference(self, services: Any) -> None:
        with pytest.raises(OrderNotFoundError):
            await services.coordinator.reconcile_payment(
                "order-does-not-exist", PaymentOutcome(succeeded=True), Initiator.USER
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_for_cancelled_order_requires_refund(
        self, services: Any, create_order: Any, db: Any
    ) -> None:
        """Money captured after cancellation is recorded without touching stock."""
        seeded = await create_order(items=((10, 3, 500),))
        await services.cancellation.cancel_order(seeded.order_id, "customer")

        result = await services.coordinator.reconcile_payment(
            seeded.reference, PaymentOutcome(succeeded=True, method="card"), Initiator.WEBHOOK
        )

        assert result.already_processed is False
        assert result.refund_required is True
        assert result.order.payment_status.value == "paid"
        assert result.order.fulfillment_status.value == "cancelled"
        assert result.order.refund_status.value == "required"
        assert await db.stock(seeded.product_ids[0]) == (10, "active")
        assert await db.cart_item_count(seeded.user_id) == 1
        assert [row.status for row in await db.history(seeded.order_id)] == [
            "cancelled",
            "refund_required",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_reconciliation(
        self, services: Any, create_order: Any, db: Any, sender: Any
    ) -> None:
        seeded = await create_order()
        sender.fail = True

        result = await services.coordinator.reconcile_payment(
            seeded.reference, PaymentOutcome(succeeded=True), Initiator.USER
        )

        assert result.order.payment_status.value == "paid"
        outbox = await db.outbox(seeded.order_id)
        assert outbox[0].status == "pending"
        assert outbox[0].attempts == 1
        assert outbox[0].last_error == "mail relay unavailable"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cascade_failure_rolls_back_payment(
        self, services: Any, create_order: Any, db: Any, mocker: Any
    ) -> None:
        """A failing cascade step undoes the payment transition with it."""
        seeded = await create_order()
        mocker.patch.object(
            services.coordinator.cart_store, "clear", side_effect=RuntimeError("cart store down")
        )

        with pytest.raises(RuntimeError):
            await services.coordinator.reconcile_payment(
                seeded.reference, PaymentOutcome(succeeded=True), Initiator.USER
            )

        order = await db.order(seeded.order_id)
        assert (order.payment_status, order.fulfillment_status) == ("pending", "pending")
        assert order.inventory_applied is False
        assert await db.stock(seeded.product_ids[0]) == (5, "active")
        assert await db.payment_logs(seeded.reference) == []
        assert await db.history(seeded.order_id) == []
        assert await db.outbox(seeded.order_id) == []

        mocker.stopall()
        result = await services.coordinator.reconcile_payment(
            seeded.reference, PaymentOutcome(succeeded=True), Initiator.USER
        )
        assert result.already_processed is False
        assert await db.stock(seeded.product_ids[0]) == (3, "active")


class TestVerifyAndReconcile:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_success(
        self, services: Any, create_order: Any, fake_gateway: Any
    ) -> None:
        seeded = await create_order()
        fake_gateway.verify_results[seeded.reference] = VerificationResult(
            status=VerificationStatus.SUCCEEDED, payment_method="card", amount_cents=1000
        )

        result = await services.coordinator.verify_and_reconcile(seeded.reference, Initiator.USER)

        assert result.already_processed is False
        assert result.order.payment_status.value == "paid"
        assert fake_gateway.verify_calls == [seeded.reference]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settled_order_skips_gateway(
        self, services: Any, create_order: Any, fake_gateway: Any
    ) -> None:
        seeded = await create_order()
        await services.coordinator.verify_and_reconcile(seeded.reference, Initiator.USER)

        result = await services.coordinator.verify_and_reconcile(
            seeded.reference, Initiator.ADMIN
        )

        assert result.already_processed is True
        assert len(fake_gateway.verify_calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_gateway_status_raises(
        self, services: Any, create_order: Any, fake_gateway: Any, db: Any
    ) -> None:
        seeded = await create_order()
        fake_gateway.verify_results[seeded.reference] = VerificationResult(
            status=VerificationStatus.PENDING, gateway_status="processing"
        )

        with pytest.raises(PaymentNotSettledError) as exc_info:
            await services.coordinator.verify_and_reconcile(seeded.reference, Initiator.USER)

        assert exc_info.value.gateway_status == "processing"
        assert (await db.order(seeded.order_id)).payment_status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_timeout_propagates(
        self, services: Any, create_order: Any, mocker: Any, fake_gateway: Any, db: Any
    ) -> None:
        seeded = await create_order()
        mocker.patch.object(
            fake_gateway, "verify", side_effect=GatewayTimeout("Stripe search timed out")
        )

        with pytest.raises(GatewayTimeout):
            await services.coordinator.verify_and_reconcile(seeded.reference, Initiator.USER)

        assert (await db.order(seeded.order_id)).payment_status == "pending"
