"""
Connector Registry — discovers and manages all connectors.

Supports auto-discovery from config and manual registration of custom connectors.
"""

from __future__ import annotations

import importlib
import logging

from crmcore.config import ConnectorConfig, CRMCoreConfig
from crmcore.connectors.base import BaseConnector

logger = logging.getLogger("crmcore.connectors.registry")

# Built-in connector type mapping
_BUILTIN_CONNECTORS: dict[str, str] = {
    "sql": "crmcore.connectors.sql_connector.SQLConnector",
    "bank_csv": "crmcore.connectors.csv_connector.BankFeedCSVConnector",
}


class ConnectorRegistry:
    """Manages all active connectors.

    Supports:
    - Auto-discovery from config file.
    - Manual registration of custom connectors.
    - Plugin-style loading by dotted class path.
    """

    def __init__(self) -> None:
        self._connectors: dict[str, BaseConnector] = {}

    def __len__(self) -> int:
        return len(self._connectors)

    @property
    def active_connectors(self) -> list[BaseConnector]:
        """Return all active connectors."""
        return list(self._connectors.values())

    @staticmethod
    def builtin_types() -> dict[str, str]:
        return dict(_BUILTIN_CONNECTORS)

    def register(self, connector: BaseConnector) -> None:
        """Register a connector instance."""
        self._connectors[connector.name] = connector
        logger.info("Registered connector: %s", connector.name)

    def get(self, name: str) -> BaseConnector | None:
        """Get a connector by name."""
        return self._connectors.get(name)

    def auto_discover(self, config: CRMCoreConfig) -> None:
        """Auto-discover and register connectors from config.

        A ``database_url`` without an explicit sql connector entry registers
        one, scoped to ``config.org_id``.
        """
        entries = list(config.connectors)
        if config.database_url and not any(c.type == "sql" for c in entries):
            entries.append(ConnectorConfig(type="sql"))

        for conn_config in entries:
            if not conn_config.enabled:
                continue
            if conn_config.type == "sql":
                conn_config = self._with_database_defaults(conn_config, config)
            connector = self._create_connector(conn_config)
            if connector:
                self.register(connector)

    @staticmethod
    def _with_database_defaults(conn_config: ConnectorConfig, config: CRMCoreConfig) -> ConnectorConfig:
        credentials = dict(conn_config.credentials)
        if config.database_url and not credentials.get("connection_string"):
            credentials["connection_string"] = config.database_url
        options = {"org_id": config.org_id, **conn_config.options}
        return conn_config.model_copy(update={"credentials": credentials, "options": options})

    def _create_connector(self, config: ConnectorConfig) -> BaseConnector | None:
        """Instantiate a connector from config."""
        connector_path = _BUILTIN_CONNECTORS.get(config.type)
        if not connector_path:
            # Try loading as a fully qualified class path (plugin support)
            connector_path = config.type

        try:
            module_path, class_name = connector_path.rsplit(".", 1)
            module = importlib.import_module(module_path)
            connector_cls = getattr(module, class_name)
        except (ImportError, AttributeError, ValueError) as e:
            logger.error("Cannot load connector '%s': %s", config.type, e)
            return None
        return connector_cls(credentials=config.credentials, **config.options)
