"""Tests for the connector registry."""

import pytest

from crmcore.config import ConnectorConfig, CRMCoreConfig
from crmcore.connectors.base import BaseConnector
from crmcore.connectors.csv_connector import BankFeedCSVConnector
from crmcore.connectors.registry import ConnectorRegistry
from crmcore.connectors.sql_connector import SQLConnector
from crmcore.store.entity_store import EntityStore


class MockConnector(BaseConnector):
    """A simple mock connector for testing."""

    name = "mock"
    description = "Mock connector"

    async def pull(self, store: EntityStore) -> int:
        return store.load_records("leads", [{"id": "l1", "name": "Mock"}])

    async def validate_credentials(self) -> bool:
        return True


class TestConnectorRegistry:
    def test_register_connector(self) -> None:
        registry = ConnectorRegistry()
        connector = MockConnector()
        registry.register(connector)

        assert len(registry) == 1
        assert registry.get("mock") is connector

    def test_active_connectors(self) -> None:
        registry = ConnectorRegistry()
        registry.register(MockConnector())

        assert len(registry.active_connectors) == 1

    def test_get_nonexistent(self) -> None:
        registry = ConnectorRegistry()
        assert registry.get("nonexistent") is None

    def test_builtin_types(self) -> None:
        assert set(ConnectorRegistry.builtin_types()) == {"sql", "bank_csv"}

    def test_auto_discover_database_url(self) -> None:
        config = CRMCoreConfig(database_url="sqlite:///crm.db", org_id="acme")
        registry = ConnectorRegistry()
        registry.auto_discover(config)

        connector = registry.get("sql")
        assert isinstance(connector, SQLConnector)
        assert connector.connection_string == "sqlite:///crm.db"
        assert connector.org_id == "acme"

    def test_auto_discover_from_entries(self) -> None:
        config = CRMCoreConfig(
            connectors=[
                ConnectorConfig(type="bank_csv", options={"file_path": "feed.csv"}),
                ConnectorConfig(type="sql", enabled=False),
            ]
        )
        registry = ConnectorRegistry()
        registry.auto_discover(config)

        assert len(registry) == 1
        csv = registry.get("bank_csv")
        assert isinstance(csv, BankFeedCSVConnector)
        assert csv.file_path == "feed.csv"

    def test_unknown_connector_is_skipped(self) -> None:
        config = CRMCoreConfig(connectors=[ConnectorConfig(type="nonexistent")])
        registry = ConnectorRegistry()
        registry.auto_discover(config)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        health = await MockConnector().health_check()
        assert health["healthy"] is True

    @pytest.mark.asyncio
    async def test_mock_pull_loads_records(self, store: EntityStore) -> None:
        assert await MockConnector().pull(store) == 1
        assert store.get_record("leads", "l1").name == "Mock"
