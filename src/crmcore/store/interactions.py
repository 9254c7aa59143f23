"""
Interaction rules — side effects of logging a communication.

Logging a call or meeting against a lead nudges the lead's score, and an
outcome that promises more contact spawns a follow-up task linked to the
same parent record.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from crmcore.config import InteractionRules
from crmcore.models.records import Communication


def score_delta(rules: InteractionRules, outcome: str | None) -> int:
    if not outcome:
        return 0
    return rules.score_deltas.get(outcome.lower(), 0)


def adjusted_score(current: int, delta: int) -> int:
    """Apply ``delta`` and clamp to 0..100."""
    return min(100, max(0, current + delta))


def needs_follow_up(rules: InteractionRules, communication: Communication) -> bool:
    if communication.next_step or communication.next_follow_up_date:
        return True
    outcome = (communication.outcome or "").lower()
    return outcome in rules.follow_up_outcomes


def build_follow_up_task(
    rules: InteractionRules,
    communication: Communication,
    assignee_id: str | None,
    now: datetime,
) -> dict[str, Any]:
    """Task payload for the automatic follow-up of ``communication``."""
    outcome = communication.outcome or "none"
    context = communication.content[:100]
    due = communication.next_follow_up_date or (now + timedelta(days=rules.follow_up_days)).isoformat()
    return {
        "title": communication.next_step or f"Follow up: {communication.subject}",
        "description": (
            f"Automatic follow-up generated from interaction outcome: {outcome}. Context: {context}"
        ),
        "assignee_id": assignee_id,
        "due_date": due,
        "status": "Pending",
        "priority": "High" if outcome.lower() == "meeting-booked" else "Medium",
        "related_to_type": communication.related_to_type,
        "related_to_id": communication.related_to_id,
    }
