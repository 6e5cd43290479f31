"""
Service wiring.

Builds every engine component from settings with explicit constructor
injection. Tests and the HTTP app pass in their own collaborators where they
need to.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from order_reconciliation.config import Settings, get_settings
from order_reconciliation.core.cancellation import CancellationWorkflow
from order_reconciliation.core.coordinator import ReconciliationCoordinator
from order_reconciliation.core.fulfillment import FulfillmentTracker
from order_reconciliation.core.outbox import NotificationDispatcher
from order_reconciliation.core.queries import OrderQueries
from order_reconciliation.database.connection import (
    create_engine_from_settings,
    make_session_factory,
)
from order_reconciliation.integrations.cart_store import CartStore, SqlCartStore
from order_reconciliation.integrations.gateway import GatewayClient, RefundErrorPolicy
from order_reconciliation.integrations.notifications import (
    LoggingNotificationSender,
    NotificationSender,
)
from order_reconciliation.integrations.stripe_client import StripeGateway
from order_reconciliation.integrations.webhook_handler import WebhookHandler
from order_reconciliation.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateway: GatewayClient
    dispatcher: NotificationDispatcher
    coordinator: ReconciliationCoordinator
    cancellation: CancellationWorkflow
    fulfillment: FulfillmentTracker
    queries: OrderQueries
    webhook_handler: WebhookHandler
    health: HealthCheck
    engine: Optional[AsyncEngine] = None
    redis_client: Optional[aioredis.Redis] = None

    async def close(self) -> None:
        """Release connections owned by this container."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("services_closed")


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[GatewayClient] = None,
    redis_client: Optional[aioredis.Redis] = None,
    cart_store: Optional[CartStore] = None,
    notification_sender: Optional[NotificationSender] = None,
) -> Services:
    """
    Wire the reconciliation engine.

    Args:
        settings: Application settings (defaults to the cached ones)
        session_factory: Session factory; an engine is created from settings if omitted
        gateway: Gateway client; Stripe-backed if omitted
        redis_client: Redis client for webhook deduplication; created from settings if omitted
        cart_store: Cart store; SQL-backed if omitted
        notification_sender: Notification sender; logging sender if omitted

    Returns:
        Services: Wired components
    """
    settings = settings or get_settings()

    engine: Optional[AsyncEngine] = None
    if session_factory is None:
        engine = create_engine_from_settings(settings)
        session_factory = make_session_factory(engine)

    owns_redis = redis_client is None
    if redis_client is None:
        redis_client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    gateway = gateway or StripeGateway(settings)
    dispatcher = NotificationDispatcher(
        session_factory,
        notification_sender or LoggingNotificationSender(),
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_attempts=settings.outbox_max_attempts,
    )
    coordinator = ReconciliationCoordinator(
        session_factory,
        gateway,
        cart_store or SqlCartStore(),
        dispatcher=dispatcher,
    )
    cancellation = CancellationWorkflow(
        session_factory,
        gateway,
        refund_policy=RefundErrorPolicy.from_settings(settings),
        dispatcher=dispatcher,
    )

    return Services(
        settings=settings,
        session_factory=session_factory,
        gateway=gateway,
        dispatcher=dispatcher,
        coordinator=coordinator,
        cancellation=cancellation,
        fulfillment=FulfillmentTracker(session_factory, dispatcher=dispatcher),
        queries=OrderQueries(session_factory),
        webhook_handler=WebhookHandler(settings, coordinator, cancellation, redis_client),
        health=HealthCheck(
            session_factory,
            redis_client=redis_client,
            circuit_breaker=getattr(gateway, "circuit_breaker", None),
        ),
        engine=engine,
        redis_client=redis_client if owns_redis else None,
    )
