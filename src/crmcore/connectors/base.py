"""
Base connector — abstract interface for all persistence and import connectors.

Connectors are the bridge between the entity store and the outside world.
They load rows from a database or a bank export into the store and, where
the source is writable, push the store's contents back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from crmcore.store.entity_store import EntityStore


class BaseConnector(ABC):
    """Abstract base class for all connectors.

    To create a new connector, subclass this and implement:
    - `name`: Unique connector identifier.
    - `pull()`: Async method that loads records into the store.
    - `validate_credentials()`: Check if the source is reachable.

    Example::

        class LegacyCRMConnector(BaseConnector):
            name = "legacy_crm"

            async def pull(self, store: EntityStore) -> int:
                rows = ...
                return store.load_records("leads", rows)

            async def validate_credentials(self) -> bool:
                ...
    """

    name: str = "base"
    description: str = "Base connector"

    def __init__(self, credentials: dict[str, Any] | None = None, **options: Any) -> None:
        self.credentials = credentials or {}
        self.options = options

    @abstractmethod
    async def pull(self, store: EntityStore) -> int:
        """Load records from the source into ``store``.

        Returns:
            Number of records loaded.
        """
        ...

    async def push(self, store: EntityStore) -> int:
        """Write the store's records back to the source."""
        raise NotImplementedError(f"Connector {self.name!r} is read-only")

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Validate that credentials are correct and the source is accessible."""
        ...

    async def health_check(self) -> dict[str, Any]:
        """Check connector health and connectivity."""
        try:
            valid = await self.validate_credentials()
            return {"connector": self.name, "healthy": valid, "error": None}
        except Exception as e:
            return {"connector": self.name, "healthy": False, "error": str(e)}
