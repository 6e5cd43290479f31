"""
Tests for settings validation and service wiring.
"""
import importlib.util
from pathlib import Path
from typing import Any

import pytest
import sqlalchemy as sa
from pydantic import ValidationError

from order_reconciliation.config import Settings
from order_reconciliation.container import build_services
from order_reconciliation.database import Base
from order_reconciliation.integrations.stripe_client import StripeGateway


def _settings(**overrides: Any) -> Settings:
    values = {
        "stripe_secret_key": "sk_test_abc",
        "stripe_webhook_secret": "whsec_abc",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "redis_url": "redis://localhost:6379/1",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestSettings:
    @pytest.mark.unit
    def test_rejects_non_stripe_key(self) -> None:
        with pytest.raises(ValidationError):
            _settings(stripe_secret_key="pk_test_abc")

    @pytest.mark.unit
    def test_rejects_unbounded_gateway_timeout(self) -> None:
        with pytest.raises(ValidationError):
            _settings(gateway_timeout_seconds=0)

    @pytest.mark.unit
    def test_log_level_is_normalised(self) -> None:
        assert _settings(log_level="debug").log_level == "DEBUG"

    @pytest.mark.unit
    def test_code_lists(self) -> None:
        settings = _settings(
            refund_already_reversed_codes="charge_already_refunded, refund_exists",
            refund_manual_review_codes="",
        )

        assert settings.get_refund_already_reversed_codes() == [
            "charge_already_refunded",
            "refund_exists",
        ]
        assert settings.get_refund_manual_review_codes() == []
        assert settings.is_test_mode is True
        assert settings.is_production is False


class TestBuildServices:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_defaults_wire_stripe_and_owned_connections(self) -> None:
        services = build_services(_settings())

        assert isinstance(services.gateway, StripeGateway)
        assert services.engine is not None
        assert services.redis_client is not None
        assert services.health.circuit_breaker is services.gateway.circuit_breaker

        await services.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_injected_connections_are_not_owned(
        self, test_settings: Any, session_factory: Any, fake_gateway: Any, fake_redis: Any
    ) -> None:
        services = build_services(
            test_settings,
            session_factory=session_factory,
            gateway=fake_gateway,
            redis_client=fake_redis,
        )

        assert services.engine is None
        assert services.redis_client is None
        assert services.webhook_handler.redis_client is fake_redis


def _load_initial_migration() -> Any:
    path = (
        Path(__file__).resolve().parents[1]
        / "order_reconciliation/database/migrations/versions/001_initial_schema.py"
    )
    module_spec = importlib.util.spec_from_file_location("initial_schema", path)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


class TestInitialMigration:
    @pytest.mark.unit
    def test_creates_every_model_table(self, mocker: Any) -> None:
        migration = _load_initial_migration()
        op = mocker.patch.object(migration, "op")

        migration.upgrade()

        created = {call.args[0] for call in op.create_table.call_args_list}
        assert created == set(Base.metadata.tables)

    @pytest.mark.unit
    def test_downgrade_drops_what_upgrade_creates(self, mocker: Any) -> None:
        migration = _load_initial_migration()
        op = mocker.patch.object(migration, "op")

        migration.upgrade()
        migration.downgrade()

        created = {call.args[0] for call in op.create_table.call_args_list}
        dropped = {call.args[0] for call in op.drop_table.call_args_list}
        assert migration.down_revision is None
        assert dropped == created

    @pytest.mark.unit
    def test_engine_order_columns_have_server_defaults(self, mocker: Any) -> None:
        migration = _load_initial_migration()
        op = mocker.patch.object(migration, "op")

        migration.upgrade()

        orders = next(
            call for call in op.create_table.call_args_list if call.args[0] == "orders"
        )
        columns = {
            column.name: column
            for column in orders.args[1:]
            if isinstance(column, sa.Column)
        }
        assert columns["inventory_applied"].server_default is not None
        assert columns["refund_attempts"].server_default is not None
