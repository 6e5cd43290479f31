"""
Pytest configuration and fixtures.

Tests run against a file-backed SQLite database. Every transaction opens with
``BEGIN IMMEDIATE`` so concurrent writers serialize the way row locks make
them serialize on PostgreSQL.
"""
import asyncio
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from order_reconciliation.api.main import create_app
from order_reconciliation.config import Settings
from order_reconciliation.container import Services, build_services
from order_reconciliation.database.connection import init_db, make_session_factory
from order_reconciliation.database.models import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatusHistory,
    OutboxEvent,
    PaymentLog,
    Product,
)
from order_reconciliation.integrations.gateway import (
    RefundTicket,
    RefundTicketStatus,
    VerificationResult,
    VerificationStatus,
)

WEBHOOK_SECRET = "whsec_test_fake_secret"


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        redis_url="redis://localhost:6379/1",
        app_name="order-reconciliation-test",
        app_env="test",
        log_level="DEBUG",
        gateway_timeout_seconds=0.5,
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a test engine with the schema in place."""
    engine = create_async_engine(
        test_settings.database_url,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


class FakeGateway:
    """In-memory ``GatewayClient`` with scripted answers."""

    def __init__(self) -> None:
        self.verify_results: Dict[str, VerificationResult] = {}
        self.verify_calls: List[str] = []
        self.verify_delay = 0.0
        self.refund_calls: List[Tuple[str, int, str]] = []
        self.refund_result = RefundTicket(ticket_id="re_test_1", status=RefundTicketStatus.PENDING)
        self.refund_error: Optional[Exception] = None

    async def verify(self, reference: str) -> VerificationResult:
        self.verify_calls.append(reference)
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        return self.verify_results.get(
            reference,
            VerificationResult(status=VerificationStatus.SUCCEEDED, payment_method="card"),
        )

    async def initiate_refund(
        self, reference: str, amount_cents: int, idempotency_key: str
    ) -> RefundTicket:
        self.refund_calls.append((reference, amount_cents, idempotency_key))
        if self.refund_error is not None:
            raise self.refund_error
        return self.refund_result


class RecordingSender:
    def __init__(self) -> None:
        self.sent: List[Tuple[Optional[str], str, Dict[str, Any]]] = []
        self.fail = False

    async def send(self, recipient: Optional[str], template: str, data: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("mail relay unavailable")
        self.sent.append((recipient, template, data))


class InMemoryRedis:
    """The slice of the Redis client API the webhook handler uses."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}

    async def exists(self, key: str) -> int:
        return int(key in self.store)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.store[key] = value
        return True

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_gateway: FakeGateway,
    fake_redis: InMemoryRedis,
    sender: RecordingSender,
) -> Services:
    """Engine components wired against the test database and fakes."""
    return build_services(
        test_settings,
        session_factory=session_factory,
        gateway=fake_gateway,
        redis_client=fake_redis,  # type: ignore[arg-type]
        notification_sender=sender,
    )


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@dataclass
class SeededOrder:
    order_id: int
    reference: str
    user_id: uuid.UUID
    product_ids: List[int] = field(default_factory=list)
    total_cents: int = 0


@pytest.fixture
def create_order(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """
    Factory that inserts a pending order with products and a filled cart.

    ``items`` is a sequence of ``(stock, quantity, unit_price_cents)``.
    """

    async def _create(
        items: Sequence[Tuple[int, int, int]] = ((5, 2, 500),),
        reference: Optional[str] = None,
        email: Optional[str] = "customer@example.com",
    ) -> SeededOrder:
        user_id = uuid.uuid4()
        reference = reference or f"order-{uuid.uuid4().hex[:12]}"
        total = sum(quantity * price for _, quantity, price in items)

        async with session_factory() as session:
            async with session.begin():
                products = [
                    Product(name=f"Product {index}", quantity_on_hand=stock, status="active")
                    for index, (stock, _, _) in enumerate(items)
                ]
                session.add_all(products)
                order = Order(
                    user_id=user_id,
                    customer_email=email,
                    payment_reference=reference,
                    payment_status="pending",
                    fulfillment_status="pending",
                    total_cents=total,
                    inventory_applied=False,
                    refund_attempts=0,
                )
                session.add(order)
                cart = Cart(user_id=user_id)
                session.add(cart)
                await session.flush()

                for product, (_, quantity, price) in zip(products, items):
                    session.add(
                        OrderItem(
                            order_id=order.id,
                            product_id=product.id,
                            quantity=quantity,
                            unit_price_cents=price,
                        )
                    )
                    session.add(CartItem(cart_id=cart.id, product_id=product.id, quantity=quantity))

        return SeededOrder(
            order_id=order.id,
            reference=reference,
            user_id=user_id,
            product_ids=[product.id for product in products],
            total_cents=total,
        )

    return _create


class DatabaseInspector:
    """Committed-state reads for assertions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def order(self, order_id: int) -> Order:
        async with self.session_factory() as session:
            return (await session.execute(select(Order).where(Order.id == order_id))).scalar_one()

    async def stock(self, product_id: int) -> Tuple[int, str]:
        async with self.session_factory() as session:
            product = await session.get(Product, product_id)
            return product.quantity_on_hand, product.status

    async def payment_logs(self, reference: str) -> List[PaymentLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentLog)
                .where(PaymentLog.payment_reference == reference)
                .order_by(PaymentLog.id)
            )
            return list(result.scalars().all())

    async def history(self, order_id: int) -> List[OrderStatusHistory]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == order_id)
                .order_by(OrderStatusHistory.id)
            )
            return list(result.scalars().all())

    async def cart_item_count(self, user_id: uuid.UUID) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(CartItem)
                .join(Cart, Cart.id == CartItem.cart_id)
                .where(Cart.user_id == user_id)
            )
            return int(result.scalar_one())

    async def outbox(self, order_id: int) -> List[OutboxEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.aggregate_id == order_id)
                .order_by(OutboxEvent.id)
            )
            return list(result.scalars().all())


@pytest.fixture
def db(session_factory: async_sessionmaker[AsyncSession]) -> DatabaseInspector:
    return DatabaseInspector(session_factory)


def sign_payload(
    payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None
) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def gateway_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> bytes:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    ).encode("utf-8")


@pytest.fixture
def signed_event() -> Any:
    """Factory returning ``(body, signature_header)`` for a gateway event."""

    def _build(
        event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None
    ) -> Tuple[bytes, str]:
        body = gateway_event(event_type, obj, event_id)
        return body, sign_payload(body)

    return _build


@pytest.fixture
def sign() -> Any:
    return sign_payload
