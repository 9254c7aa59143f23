"""
Collection -> table name mapping for relational persistence.
"""

from __future__ import annotations

import re

from crmcore.models.records import EntityType

CUSTOM_OBJECTS_TABLE = "custom_objects"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def snake_case(name: str) -> str:
    """``bankTransactions`` -> ``bank_transactions``."""
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


TABLE_MAP: dict[str, str] = {t.value: snake_case(t.value) for t in EntityType}

# Columns every table carries; everything else lives in the JSON ``data`` column.
RECORD_COLUMNS = ("id", "created_at", "updated_at", "created_by", "owner_id")


def table_name(entity_type: str) -> str:
    return TABLE_MAP.get(entity_type, CUSTOM_OBJECTS_TABLE)
