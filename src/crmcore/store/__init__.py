"""
crmcore entity store — typed records, generic CRUD and referential rules.
"""

from crmcore.store.entity_store import EntityStore
from crmcore.store.permissions import default_access_policy, has_permission, record_owner_id

__all__ = [
    "EntityStore",
    "default_access_policy",
    "has_permission",
    "record_owner_id",
]
