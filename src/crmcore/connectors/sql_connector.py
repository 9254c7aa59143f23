"""
SQL Connector — persist the entity store in any SQL database.

Works with PostgreSQL, MySQL, SQLite, SQL Server, etc. via SQLAlchemy.
Each collection maps to one table (``bankTransactions`` -> ``bank_transactions``)
with identity, tenant, timestamp and owner columns plus a JSON ``data``
column for the rest of the record. Custom entities share ``custom_objects``,
keyed additionally by ``entity_type``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from crmcore.connectors.base import BaseConnector
from crmcore.connectors.tables import CUSTOM_OBJECTS_TABLE, RECORD_COLUMNS, TABLE_MAP

if TYPE_CHECKING:
    from crmcore.models.records import Record
    from crmcore.store.entity_store import EntityStore

logger = logging.getLogger("crmcore.connectors.sql")


def _record_table(metadata: MetaData, name: str, *extra: Column) -> Table:
    return Table(
        name,
        metadata,
        Column("id", String(64), primary_key=True),
        *extra,
        Column("org_id", String(64), nullable=False, index=True),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        Column("created_by", String(64), nullable=False),
        Column("owner_id", String(64), nullable=True),
        Column("data", JSON, nullable=False),
    )


def build_metadata() -> MetaData:
    """Schema for every built-in collection plus the shared custom-objects table."""
    metadata = MetaData()
    for table in TABLE_MAP.values():
        _record_table(metadata, table)
    _record_table(metadata, CUSTOM_OBJECTS_TABLE, Column("entity_type", String(64), primary_key=True))
    return metadata


class SQLConnector(BaseConnector):
    """Load and save the entity store through SQLAlchemy.

    Usage::

        connector = SQLConnector(
            credentials={"connection_string": "postgresql://..."},
            org_id="acme",
        )
        await connector.pull(store)
        ...
        await connector.push(store)
    """

    name = "sql"
    description = "Persist records in a SQL database"

    def __init__(
        self,
        credentials: dict[str, Any] | None = None,
        org_id: str | None = None,
        **options: Any,
    ) -> None:
        super().__init__(credentials, **options)
        self.connection_string = (credentials or {}).get("connection_string", "")
        self.org_id = org_id or options.get("org_id", "default")
        self.metadata = build_metadata()
        self._engine: Engine | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(self.connection_string)
        return self._engine

    def create_schema(self) -> None:
        self.metadata.create_all(self.engine)

    async def pull(self, store: EntityStore) -> int:
        """Load every row for this tenant into ``store``."""
        self.create_schema()
        loaded = 0
        with self.engine.connect() as conn:
            for kind, table_name in TABLE_MAP.items():
                table = self.metadata.tables[table_name]
                rows = conn.execute(select(table).where(table.c.org_id == self.org_id)).mappings()
                payloads = [self._to_payload(row) for row in rows]
                if payloads:
                    loaded += store.load_records(kind, payloads)

            custom = self.metadata.tables[CUSTOM_OBJECTS_TABLE]
            grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
            rows = conn.execute(select(custom).where(custom.c.org_id == self.org_id)).mappings()
            for row in rows:
                grouped[row["entity_type"]].append(self._to_payload(row))

        for entity_type, payloads in grouped.items():
            if store.custom_entity(entity_type) is None:
                logger.warning(
                    "Skipping %d rows of unregistered custom entity %s", len(payloads), entity_type
                )
                continue
            loaded += store.load_records(entity_type, payloads)

        logger.info("Pulled %d records from %s", loaded, self.engine.url.database or "db")
        return loaded

    async def push(self, store: EntityStore) -> int:
        """Replace this tenant's rows with the store's contents in one transaction."""
        self.create_schema()
        written = 0
        with store.transaction(), self.engine.begin() as conn:
            for table in self.metadata.tables.values():
                conn.execute(delete(table).where(table.c.org_id == self.org_id))

            for kind in store.collection_names():
                records = store.list_records(kind)
                if not records:
                    continue
                table_name = TABLE_MAP.get(kind, CUSTOM_OBJECTS_TABLE)
                table = self.metadata.tables[table_name]
                rows = [self._to_row(record) for record in records]
                if table_name == CUSTOM_OBJECTS_TABLE:
                    for row in rows:
                        row["entity_type"] = kind
                conn.execute(table.insert(), rows)
                written += len(rows)

        logger.info("Pushed %d records for org %s", written, self.org_id)
        return written

    async def validate_credentials(self) -> bool:
        """Test database connectivity."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def _to_row(self, record: Record) -> dict[str, Any]:
        data = record.to_dict()
        for column in RECORD_COLUMNS:
            data.pop(column, None)
        return {
            "id": record.id,
            "org_id": self.org_id,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "created_by": record.created_by,
            "owner_id": record.owner_id,
            "data": data,
        }

    @staticmethod
    def _to_payload(row: Any) -> dict[str, Any]:
        payload = dict(row["data"] or {})
        for column in RECORD_COLUMNS:
            payload[column] = row[column]
        return payload
