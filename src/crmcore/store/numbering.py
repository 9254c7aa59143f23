"""
Document number series for invoices, quotes, purchase orders, jobs and tickets.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from crmcore.config import NumberingConfig
from crmcore.models.records import EntityType

# collection -> field that receives the generated number
NUMBER_FIELDS: dict[str, str] = {
    EntityType.INVOICES.value: "invoice_number",
    EntityType.QUOTES.value: "quote_number",
    EntityType.PURCHASE_ORDERS.value: "po_number",
    EntityType.JOBS.value: "job_number",
    EntityType.TICKETS.value: "ticket_number",
}

_PREFIX_SERIES = {
    EntityType.INVOICES.value: ("invoice_prefix", "invoice_next"),
    EntityType.QUOTES.value: ("quote_prefix", "quote_next"),
    EntityType.PURCHASE_ORDERS.value: ("po_prefix", "po_next"),
}


@dataclass(frozen=True)
class AllocatedNumber:
    entity_type: str
    field: str
    value: str


class DocumentNumbering:
    """Hands out document numbers.

    Prefix series (invoices, quotes, purchase orders) advance only when
    :meth:`commit` is called after the record is stored. Jobs and tickets are
    numbered ``{prefix}-{year}-{n:04d}`` where ``n`` is the collection size + 1.
    """

    def __init__(self, config: NumberingConfig | None = None) -> None:
        self.config = (config or NumberingConfig()).model_copy()

    def allocate(self, entity_type: str, existing_count: int, today: date) -> AllocatedNumber | None:
        field = NUMBER_FIELDS.get(entity_type)
        if field is None:
            return None

        if entity_type in _PREFIX_SERIES:
            prefix_attr, next_attr = _PREFIX_SERIES[entity_type]
            value = f"{getattr(self.config, prefix_attr)}{getattr(self.config, next_attr)}"
        elif entity_type == EntityType.JOBS.value:
            value = f"{self.config.job_prefix}-{today.year}-{existing_count + 1:04d}"
        else:
            value = f"{self.config.ticket_prefix}-{today.year}-{existing_count + 1:04d}"
        return AllocatedNumber(entity_type=entity_type, field=field, value=value)

    def commit(self, allocated: AllocatedNumber) -> None:
        series = _PREFIX_SERIES.get(allocated.entity_type)
        if series is None:
            return
        _, next_attr = series
        setattr(self.config, next_attr, getattr(self.config, next_attr) + 1)

    def observe(self, entity_type: str, value: str | None) -> None:
        """Advance a prefix series past an existing number such as ``INV-1001``."""
        series = _PREFIX_SERIES.get(entity_type)
        if series is None or not value:
            return
        prefix_attr, next_attr = series
        prefix = getattr(self.config, prefix_attr)
        value = str(value)
        if not value.startswith(prefix):
            return
        suffix = value[len(prefix):]
        if not suffix.isdigit():
            return
        n = int(suffix)
        if n >= getattr(self.config, next_attr):
            setattr(self.config, next_attr, n + 1)

    def next_number(self, entity_type: str) -> int | None:
        series = _PREFIX_SERIES.get(entity_type)
        return getattr(self.config, series[1]) if series else None
