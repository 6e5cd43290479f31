"""
Stripe-backed payment gateway.

Implements:
- PaymentIntent lookup by order payment reference
- Idempotent refund creation
- Bounded call duration with timeout classification
- Exponential backoff for transient verify errors
- Circuit breaker pattern
"""
import asyncio
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from order_reconciliation.config import Settings
from order_reconciliation.integrations.gateway import (
    GatewayError,
    GatewayErrorType,
    GatewayTimeout,
    RefundTicket,
    RefundTicketStatus,
    VerificationResult,
    VerificationStatus,
)
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_REFUND_STATUSES = {
    "succeeded": RefundTicketStatus.PROCESSED,
    "pending": RefundTicketStatus.PENDING,
    "requires_action": RefundTicketStatus.PENDING,
    "failed": RefundTicketStatus.FAILED,
    "canceled": RefundTicketStatus.FAILED,
}


def _as_dict(obj: Any) -> Dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _retry_verify(error: BaseException) -> bool:
    # Timeouts are reported to the caller rather than stacked.
    return (
        isinstance(error, GatewayError)
        and error.retryable
        and error.error_type is not GatewayErrorType.TIMEOUT
    )


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def before_call(self) -> None:
        """
        Refuse the call while the circuit is open.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeGateway:
    """
    ``GatewayClient`` backed by Stripe PaymentIntents and Refunds.

    Orders are matched to PaymentIntents through
    ``metadata.payment_reference``. The API key is passed per request, so no
    global Stripe state is touched.
    """

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.verify_wait = wait_exponential(multiplier=0.5, min=0.5, max=4)

        logger.info(
            "stripe_gateway_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @property
    def _request_options(self) -> Dict[str, Any]:
        return {
            "api_key": self.settings.stripe_secret_key,
            "stripe_version": self.settings.stripe_api_version,
        }

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return GatewayErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return GatewayErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run a blocking Stripe call in a worker thread, bounded by the gateway timeout.

        Raises:
            GatewayTimeout: If the call did not finish in time
            GatewayError: For any Stripe error, classified
        """
        self.circuit_breaker.before_call()
        loop = asyncio.get_running_loop()
        started = time.monotonic()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, func),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            self.circuit_breaker.on_failure()
            metrics.record_gateway_api_error(GatewayErrorType.TIMEOUT.value)
            metrics.record_gateway_api_call(operation, "timeout", time.monotonic() - started)
            logger.error(
                "gateway_call_timed_out",
                operation=operation,
                timeout_seconds=self.settings.gateway_timeout_seconds,
            )
            raise GatewayTimeout(f"Stripe {operation} timed out", original_error=e) from e
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            if error_type is not GatewayErrorType.PERMANENT:
                self.circuit_breaker.on_failure()
            metrics.record_gateway_api_error(error_type.value)
            metrics.record_gateway_api_call(operation, "error", time.monotonic() - started)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise GatewayError(
                message=str(e),
                error_type=error_type,
                code=getattr(e, "code", None),
                original_error=e,
            ) from e

        self.circuit_breaker.on_success()
        metrics.record_gateway_api_call(operation, "success", time.monotonic() - started)
        return result

    async def _find_payment_intent(self, reference: str) -> Optional[Dict[str, Any]]:
        query = f"metadata['payment_reference']:'{reference}'"

        def _search() -> Any:
            return stripe.PaymentIntent.search(query=query, limit=1, **self._request_options)

        result = await self._call("search_payment_intent", _search)
        data = list(getattr(result, "data", None) or [])
        return _as_dict(data[0]) if data else None

    @staticmethod
    def _to_verification(intent: Optional[Dict[str, Any]]) -> VerificationResult:
        if intent is None:
            return VerificationResult(status=VerificationStatus.PENDING)

        gateway_status = intent.get("status")
        last_error = intent.get("last_payment_error") or {}
        method_types = intent.get("payment_method_types") or []
        payment_method = method_types[0] if method_types else None

        if gateway_status == "succeeded":
            status = VerificationStatus.SUCCEEDED
        elif gateway_status == "canceled" or (
            gateway_status == "requires_payment_method" and last_error
        ):
            status = VerificationStatus.FAILED
        else:
            status = VerificationStatus.PENDING

        return VerificationResult(
            status=status,
            payment_method=payment_method,
            amount_cents=intent.get("amount_received") or intent.get("amount"),
            failure_reason=last_error.get("message") or intent.get("cancellation_reason"),
            gateway_status=gateway_status,
            payload={
                "id": intent.get("id"),
                "status": gateway_status,
                "amount": intent.get("amount"),
                "amount_received": intent.get("amount_received"),
                "currency": intent.get("currency"),
            },
        )

    async def verify(self, reference: str) -> VerificationResult:
        """
        Look up the payment for ``reference`` and report its outcome.

        Transient and rate-limit errors are retried with exponential backoff;
        a timeout is raised straight away.

        Raises:
            GatewayTimeout: If a lookup exceeded the gateway timeout
            GatewayError: If the lookup failed
        """
        logger.info("verifying_payment", reference=reference)

        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_retry_verify),
            stop=stop_after_attempt(self.settings.gateway_verify_max_attempts),
            wait=self.verify_wait,
            reraise=True,
        ):
            with attempt:
                intent = await self._find_payment_intent(reference)

        result = self._to_verification(intent)
        logger.info(
            "payment_verified",
            reference=reference,
            status=result.status.value,
            gateway_status=result.gateway_status,
        )
        return result

    async def initiate_refund(
        self, reference: str, amount_cents: int, idempotency_key: str
    ) -> RefundTicket:
        """
        Refund the payment behind ``reference``.

        Args:
            reference: Order payment reference
            amount_cents: Amount to refund
            idempotency_key: Key that makes resubmissions of one attempt safe

        Returns:
            RefundTicket: Gateway refund handle

        Raises:
            GatewayTimeout: If the call exceeded the gateway timeout
            GatewayError: If no payment exists or Stripe rejected the refund
        """
        logger.info(
            "creating_refund",
            reference=reference,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )

        intent = await self._find_payment_intent(reference)
        if intent is None:
            raise GatewayError(
                f"No payment found at the gateway for {reference}",
                GatewayErrorType.PERMANENT,
                code="payment_intent_not_found",
            )

        def _create_refund() -> Any:
            return stripe.Refund.create(
                payment_intent=intent["id"],
                amount=amount_cents,
                metadata={"payment_reference": reference},
                idempotency_key=idempotency_key,
                **self._request_options,
            )

        refund = _as_dict(await self._call("create_refund", _create_refund))
        ticket = RefundTicket(
            ticket_id=refund["id"],
            status=_REFUND_STATUSES.get(refund.get("status"), RefundTicketStatus.PENDING),
            failure_reason=refund.get("failure_reason"),
        )

        logger.info(
            "refund_created",
            reference=reference,
            refund_id=ticket.ticket_id,
            status=ticket.status.value,
        )
        return ticket
