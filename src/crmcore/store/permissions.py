"""
Record visibility and role permissions.

The store asks an access policy whether a user may see a record. The default
policy implements ownership visibility: admins see everything, everyone sees
what they own, and managers also see what their reports (or team) own.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping

from crmcore.models.records import Record, Role, User

if TYPE_CHECKING:
    from crmcore.store.entity_store import EntityStore

logger = logging.getLogger("crmcore.store.permissions")

AccessPolicy = Callable[[Record, "User | None", "EntityStore"], bool]


def record_owner_id(record: Record) -> str | None:
    """Owner resolution order: ``owner_id``, then ``assignee_id``, then ``created_by``."""
    return (
        getattr(record, "owner_id", None)
        or getattr(record, "assignee_id", None)
        or getattr(record, "created_by", None)
    )


def default_access_policy(record: Record, user: User | None, store: EntityStore) -> bool:
    if user is None:
        return False
    if user.role == Role.ADMIN:
        return True

    owner_id = record_owner_id(record)
    if owner_id == user.id:
        return True

    if user.role == Role.MANAGER and owner_id:
        owner = store.find_record("users", owner_id)
        if owner is None:
            return False
        if getattr(owner, "manager_id", None) == user.id:
            return True
        if store.config.access.team_visibility and user.team and owner.team == user.team:
            return True
    return False


def has_permission(
    user: User | None,
    domain: str,
    action: str,
    matrix: Mapping[str, Mapping[str, Mapping[str, Any]]],
) -> bool:
    """Look up ``matrix[role][domain][action]``.

    Admins are allowed anything the matrix does not explicitly deny; every
    other role needs an explicit grant.
    """
    if user is None:
        return False

    role = user.role.value if isinstance(user.role, Role) else str(user.role)
    entry = matrix.get(role, {}).get(domain, {}).get(action)
    if entry is None:
        return user.role == Role.ADMIN
    return bool(entry)
