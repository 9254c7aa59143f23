"""
crmcore — CRM/ERP back-office core.

Typed records, bank-feed reconciliation and integrity audits
behind one entity store.
"""

__version__ = "0.3.0"
__all__ = [
    "CRMCore",
    "CRMCoreConfig",
    "CRMCoreError",
    "EntityStore",
    "InvalidMatch",
    "InvalidTransition",
    "NotFound",
    "UnknownEntityType",
    "ValidationError",
]

from crmcore.config import CRMCoreConfig  # noqa: E402
from crmcore.core import CRMCore  # noqa: E402
from crmcore.exceptions import (  # noqa: E402
    CRMCoreError,
    InvalidMatch,
    InvalidTransition,
    NotFound,
    UnknownEntityType,
    ValidationError,
)
from crmcore.store.entity_store import EntityStore  # noqa: E402
