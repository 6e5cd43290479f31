"""
Race condition tests for concurrent reconciliation.

Every initiator races through the same conditional update; these tests fire
them together and check that side effects happen exactly once.
"""
import asyncio
from typing import Any

import pytest

from order_reconciliation.core.coordinator import PaymentOutcome
from order_reconciliation.core.errors import InvalidStateError, RefundInProgressError
from order_reconciliation.integrations.gateway import GatewayTimeout
from order_reconciliation.states import Initiator, RefundOutcome


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_success_reports_apply_once(
        self, services: Any, create_order: Any, db: Any, sender: Any
    ) -> None:
        """
        Ten concurrent success reports from mixed initiators.

        Should produce exactly one winner and one set of side effects.
        """
        seeded = await create_order(items=((10, 3, 500), (5, 1, 200)))
        initiators = [Initiator.USER, Initiator.ADMIN, Initiator.WEBHOOK] * 3 + [Initiator.USER]
        outcome = PaymentOutcome(succeeded=True, method="card")

        results = await asyncio.gather(
            *[
                services.coordinator.reconcile_payment(seeded.reference, outcome, initiator)
                for initiator in initiators
            ]
        )

        winners = [result for result in results if not result.already_processed]
        assert len(winners) == 1, "More than one caller applied the payment"
        assert all(result.order.payment_status.value == "paid" for result in results)

        assert await db.stock(seeded.product_ids[0]) == (7, "active")
        assert await db.stock(seeded.product_ids[1]) == (4, "active")
        assert await db.cart_item_count(seeded.user_id) == 0
        assert [log.status for log in await db.payment_logs(seeded.reference)] == ["paid"]
        assert [row.status for row in await db.history(seeded.order_id)] == ["processing"]
        assert len(await db.outbox(seeded.order_id)) == 1
        assert len(sender.sent) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_success_and_failure_race(
        self, services: Any, create_order: Any, db: Any
    ) -> None:
        """
        A success and a failure arrive together.

        Exactly one wins and the final status matches it.
        """
        seeded = await create_order(items=((10, 3, 500),))

        success, failure = await asyncio.gather(
            services.coordinator.reconcile_payment(
                seeded.reference, PaymentOutcome(succeeded=True), Initiator.WEBHOOK
            ),
            services.coordinator.reconcile_payment(
                seeded.reference,
                PaymentOutcome(succeeded=False, failure_reason="declined"),
                Initiator.USER,
            ),
        )

        assert [success.already_processed, failure.already_processed].count(False) == 1
        order = await db.order(seeded.order_id)
        logs = [log.status for log in await db.payment_logs(seeded.reference)]

        if not success.already_processed:
            assert order.payment_status == "paid"
            assert logs == ["paid"]
            assert await db.stock(seeded.product_ids[0]) == (7, "active")
        else:
            assert order.payment_status == "failed"
            assert logs == ["failed"]
            assert await db.stock(seeded.product_ids[0]) == (10, "active")
        assert failure.order.payment_status == success.order.payment_status

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_inventory_conserved_across_retries(
        self, services: Any, create_order: Any, db: Any
    ) -> None:
        """Stock 10, quantity 3: five retries still leave 7."""
        seeded = await create_order(items=((10, 3, 500),))

        for _ in range(5):
            await services.coordinator.reconcile_payment(
                seeded.reference, PaymentOutcome(succeeded=True), Initiator.USER
            )

        assert await db.stock(seeded.product_ids[0]) == (7, "active")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_verifications_call_through_once_per_winner(
        self, services: Any, create_order: Any, fake_gateway: Any, db: Any
    ) -> None:
        seeded = await create_order(items=((10, 3, 500),))
        fake_gateway.verify_delay = 0.02

        results = await asyncio.gather(
            *[
                services.coordinator.verify_and_reconcile(seeded.reference, Initiator.USER)
                for _ in range(5)
            ]
        )

        assert sum(1 for result in results if not result.already_processed) == 1
        assert await db.stock(seeded.product_ids[0]) == (7, "active")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_cancellations_refund_once(
        self, services: Any, create_order: Any, fake_gateway: Any, db: Any
    ) -> None:
        seeded = await create_order(items=((10, 3, 500),))
        await services.coordinator.reconcile_payment(
            seeded.reference, PaymentOutcome(succeeded=True), Initiator.USER
        )

        results = await asyncio.gather(
            *[services.cancellation.cancel_order(seeded.order_id, "customer") for _ in range(4)],
            return_exceptions=True,
        )

        cancelled = [result for result in results if not isinstance(result, Exception)]
        rejected = [result for result in results if isinstance(result, InvalidStateError)]
        assert len(cancelled) == 1
        assert len(rejected) == 3
        assert len(fake_gateway.refund_calls) == 1
        assert await db.stock(seeded.product_ids[0]) == (10, "active")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_payment_and_cancellation_race(
        self, services: Any, create_order: Any, db: Any
    ) -> None:
        """
        Cancel while the success report is in flight.

        Whichever commits first, the order ends cancelled and paid, stock is
        back where it started and the captured money is routed to a refund.
        """
        seeded = await create_order(items=((10, 3, 500),))

        await asyncio.gather(
            services.coordinator.reconcile_payment(
                seeded.reference, PaymentOutcome(succeeded=True), Initiator.WEBHOOK
            ),
            services.cancellation.cancel_order(seeded.order_id, "customer"),
        )

        order = await db.order(seeded.order_id)
        assert order.payment_status == "paid"
        assert order.fulfillment_status == "cancelled"
        assert order.refund_status in ("required", "pending")
        assert await db.stock(seeded.product_ids[0]) == (10, "active")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_refund_retries_submit_once(
        self, services: Any, create_order: Any, fake_gateway: Any
    ) -> None:
        seeded = await create_order()
        await services.coordinator.reconcile_payment(
            seeded.reference, PaymentOutcome(succeeded=True), Initiator.USER
        )
        fake_gateway.refund_error = GatewayTimeout("Stripe create_refund timed out")
        await services.cancellation.cancel_order(seeded.order_id, "customer")
        fake_gateway.refund_error = None

        results = await asyncio.gather(
            *[services.cancellation.retry_refund(seeded.order_id, "admin-1") for _ in range(3)],
            return_exceptions=True,
        )

        succeeded = [result for result in results if not isinstance(result, Exception)]
        in_progress = [result for result in results if isinstance(result, RefundInProgressError)]
        assert len(succeeded) == 1
        assert len(in_progress) == 2
        # The initial timed-out submission plus exactly one retry.
        assert len(fake_gateway.refund_calls) == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_duplicate_refund_processed_reports(
        self, services: Any, create_order: Any, db: Any, sender: Any
    ) -> None:
        seeded = await create_order()
        await services.coordinator.reconcile_payment(
            seeded.reference, PaymentOutcome(succeeded=True), Initiator.USER
        )
        await services.cancellation.cancel_order(seeded.order_id, "customer")

        results = await asyncio.gather(
            *[
                services.cancellation.reconcile_refund_outcome(
                    seeded.reference, RefundOutcome.PROCESSED
                )
                for _ in range(3)
            ]
        )

        assert sum(1 for result in results if not result.already_processed) == 1
        assert (await db.order(seeded.order_id)).payment_status == "refunded"
        refunded_logs = [
            log for log in await db.payment_logs(seeded.reference) if log.status == "refunded"
        ]
        assert len(refunded_logs) == 1
        assert [template for _, template, _ in sender.sent].count("refund_processed") == 1


class TestEndToEnd:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_webhooks_racing_user_poll(
        self, services: Any, create_order: Any, db: Any, signed_event: Any
    ) -> None:
        """
        Order O1: one item (qty 2, price 500), stock 5.

        The same webhook is delivered twice concurrently with a user poll.
        """
        seeded = await create_order(items=((5, 2, 500),), reference="order-O1-XYZ")
        body, signature = signed_event(
            "payment_intent.succeeded",
            {
                "id": "pi_o1",
                "object": "payment_intent",
                "status": "succeeded",
                "amount": 1000,
                "amount_received": 1000,
                "currency": "usd",
                "payment_method_types": ["card"],
                "metadata": {"payment_reference": "order-O1-XYZ"},
            },
            event_id="evt_o1",
        )

        results = await asyncio.gather(
            services.webhook_handler.handle(body, signature),
            services.webhook_handler.handle(body, signature),
            services.coordinator.verify_and_reconcile("order-O1-XYZ", Initiator.USER),
        )

        assert {results[0]["status"], results[1]["status"]} <= {"processed", "duplicate"}
        order = await db.order(seeded.order_id)
        assert order.payment_status == "paid"
        assert order.fulfillment_status == "processing"
        assert await db.stock(seeded.product_ids[0]) == (3, "active")
        assert [log.status for log in await db.payment_logs("order-O1-XYZ")] == ["paid"]
        assert [row.status for row in await db.history(seeded.order_id)] == ["processing"]
        assert await db.cart_item_count(seeded.user_id) == 0
