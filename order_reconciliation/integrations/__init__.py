"""External integrations: payment gateway, webhooks, cart store and notifications."""
from .gateway import (
    GatewayClient,
    GatewayError,
    GatewayErrorType,
    GatewayTimeout,
    PaymentNotSettledError,
    RefundErrorPolicy,
)

__all__ = [
    "GatewayClient",
    "GatewayError",
    "GatewayErrorType",
    "GatewayTimeout",
    "PaymentNotSettledError",
    "RefundErrorPolicy",
]
