"""Connectors package — persistence and import integrations."""
from crmcore.connectors.base import BaseConnector
from crmcore.connectors.csv_connector import BankFeedCSVConnector
from crmcore.connectors.registry import ConnectorRegistry
from crmcore.connectors.sql_connector import SQLConnector

__all__ = [
    "BankFeedCSVConnector",
    "BaseConnector",
    "ConnectorRegistry",
    "SQLConnector",
]
