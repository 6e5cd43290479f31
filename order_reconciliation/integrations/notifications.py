"""
Customer notification boundary.

Rendering and delivery belong to an external service; the engine only hands
it a recipient, a template name and the template data.
"""
from typing import Any, Dict, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
ORDER_CANCELLED = "order_cancelled"
REFUND_PROCESSED = "refund_processed"
ORDER_STATUS_UPDATED = "order_status_updated"


class NotificationSender(Protocol):
    async def send(
        self, recipient: Optional[str], template: str, data: Dict[str, Any]
    ) -> None:
        ...


class LoggingNotificationSender:
    """Sender that records the notification intent in the log."""

    async def send(
        self, recipient: Optional[str], template: str, data: Dict[str, Any]
    ) -> None:
        logger.info(
            "notification_sent",
            recipient=recipient,
            template=template,
            order_id=data.get("order_id"),
        )
