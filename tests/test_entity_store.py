"""Tests for the entity store."""

import threading
from datetime import date, datetime, timezone

import pytest

from crmcore.analyzers.audit_trail import AuditAction
from crmcore.config import CRMCoreConfig
from crmcore.exceptions import NotFound, UnknownEntityType, ValidationError
from crmcore.models.customization import CustomEntityDefinition, CustomFieldDefinition
from crmcore.models.financial import Invoice
from crmcore.models.records import SYSTEM_ACTOR, EntityType, Lead
from crmcore.store.entity_store import EntityStore

LEAD_DATA = {
    "name": "Ada Lovelace",
    "email": "ada@example.com",
    "company": "Analytical Engines Ltd",
    "phone": "555-0100",
}

FIXED = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


class TestCreate:
    def test_assigns_identity_and_timestamps(self, store: EntityStore) -> None:
        lead = store.upsert_record("leads", LEAD_DATA)

        assert isinstance(lead, Lead)
        assert lead.id
        assert lead.created_at == lead.updated_at
        assert lead.created_by == SYSTEM_ACTOR
        assert store.get_record("leads", lead.id) == lead

    def test_actor_recorded_as_creator(self, store: EntityStore) -> None:
        lead = store.upsert_record("leads", LEAD_DATA, actor="u1")
        assert lead.created_by == "u1"

    def test_acting_user_is_default_actor(self, config: CRMCoreConfig) -> None:
        store = EntityStore(config, acting_user="u7")
        lead = store.upsert_record("leads", LEAD_DATA)
        assert lead.created_by == "u7"

    def test_ids_are_unique(self, store: EntityStore) -> None:
        ids = {store.upsert_record("leads", LEAD_DATA).id for _ in range(20)}
        assert len(ids) == 20

    def test_entity_type_is_case_insensitive(self, store: EntityStore) -> None:
        lead = store.upsert_record("Leads", LEAD_DATA)
        assert store.count(EntityType.LEADS) == 1
        assert store.find_record("LEADS", lead.id) is not None

    def test_defaults_fill_unset_fields(self, store: EntityStore) -> None:
        lead = store.upsert_record("leads", LEAD_DATA, defaults={"status": "Qualified", "name": "x"})
        assert lead.status == "Qualified"
        assert lead.name == "Ada Lovelace"

    def test_default_owner_assignment(self) -> None:
        config = CRMCoreConfig(access={"default_assignments": {"leads": "u-sales"}})
        store = EntityStore(config)
        assert store.upsert_record("leads", LEAD_DATA).owner_id == "u-sales"
        assert store.upsert_record("leads", {**LEAD_DATA, "owner_id": "u2"}).owner_id == "u2"

    def test_unknown_entity_type(self, store: EntityStore) -> None:
        with pytest.raises(UnknownEntityType) as exc:
            store.upsert_record("widgets", {"name": "x"})
        assert isinstance(exc.value, NotFound)
        assert exc.value.entity_type == "widgets"

    def test_collections_without_schema_keep_fields(self, store: EntityStore) -> None:
        zone = store.upsert_record("zones", {"name": "North", "radius_km": 12})
        assert zone.to_dict()["radius_km"] == 12


class TestValidation:
    def test_missing_required_fields(self, store: EntityStore) -> None:
        with pytest.raises(ValidationError) as exc:
            store.upsert_record("leads", {"name": "Ada"})

        assert exc.value.missing_fields == ["email", "company", "phone"]
        assert store.count("leads") == 0

    def test_user_message_for_deals(self, store: EntityStore) -> None:
        with pytest.raises(ValidationError) as exc:
            store.upsert_record("deals", {"name": "Big deal", "amount": 5000, "stage": "Proposal"})

        assert exc.value.user_message() == (
            "Please fill in the following required fields: Expected Close Date"
        )

    def test_empty_string_and_list_count_as_missing(self, store: EntityStore, account) -> None:
        with pytest.raises(ValidationError) as exc:
            store.upsert_record("invoices", {
                "account_id": account.id,
                "issue_date": "",
                "due_date": date(2025, 2, 1),
                "line_items": [],
            })
        assert exc.value.missing_fields == ["issue_date", "line_items"]

    def test_malformed_value_is_invalid(self, store: EntityStore) -> None:
        with pytest.raises(ValidationError) as exc:
            store.upsert_record("leads", {**LEAD_DATA, "score": 150})
        assert "score" in exc.value.invalid_fields
        assert exc.value.missing_fields == []

    def test_update_revalidates_merged_record(self, store: EntityStore, lead) -> None:
        with pytest.raises(ValidationError):
            store.upsert_record("leads", {"id": lead.id, "email": ""})
        assert store.get_record("leads", lead.id).email == "ada@example.com"

    def test_configured_required_fields(self) -> None:
        config = CRMCoreConfig(validation={"required_fields": {"campaigns": ["budget_owner"]}})
        store = EntityStore(config)
        with pytest.raises(ValidationError) as exc:
            store.upsert_record("campaigns", {"name": "Spring"})
        assert exc.value.missing_fields == ["budget_owner"]
        # collections dropped from the policy have no requirements
        assert store.upsert_record("leads", {"name": "Only a name"}).name == "Only a name"


class TestUpdate:
    def test_shallow_merge(self, store: EntityStore, lead) -> None:
        updated = store.upsert_record("leads", {"id": lead.id, "status": "Contacted"})

        assert updated.status == "Contacted"
        assert updated.email == lead.email
        assert updated.created_at == lead.created_at
        assert updated.updated_at > lead.updated_at

    def test_identity_fields_are_immutable(self, store: EntityStore, lead) -> None:
        updated = store.upsert_record("leads", {
            "id": lead.id,
            "created_by": "intruder",
            "created_at": datetime(2000, 1, 1, tzinfo=timezone.utc),
        })
        assert updated.created_by == lead.created_by
        assert updated.created_at == lead.created_at

    def test_unknown_id(self, store: EntityStore) -> None:
        with pytest.raises(NotFound):
            store.upsert_record("leads", {"id": "missing", "status": "Lost"})

    def test_timestamps_strictly_increase_with_frozen_clock(self, config: CRMCoreConfig) -> None:
        store = EntityStore(config, clock=lambda: FIXED)
        lead = store.upsert_record("leads", LEAD_DATA)
        first = store.upsert_record("leads", {"id": lead.id, "status": "Contacted"})
        second = store.upsert_record("leads", {"id": lead.id, "status": "Qualified"})

        assert lead.created_at == FIXED
        assert lead.updated_at < first.updated_at < second.updated_at

    def test_input_model_is_accepted(self, store: EntityStore, lead) -> None:
        copy = lead.model_copy(update={"status": "Nurturing"})
        assert store.upsert_record("leads", copy).status == "Nurturing"


class TestDelete:
    def test_delete(self, store: EntityStore, lead) -> None:
        store.delete_record("leads", lead.id)
        assert store.find_record("leads", lead.id) is None
        with pytest.raises(NotFound):
            store.delete_record("leads", lead.id)

    def test_children_are_not_cascaded(self, store: EntityStore, lead) -> None:
        comm = store.upsert_record("communications", {
            "related_to_type": "leads", "related_to_id": lead.id, "subject": "Intro",
        })
        store.delete_record("leads", lead.id)

        assert store.find_record("communications", comm.id) is not None
        assert store.resolve_reference(comm.reference) is None

    def test_deleted_child_leaves_index(self, store: EntityStore, lead) -> None:
        comm = store.upsert_record("communications", {"related_to_type": "leads", "related_to_id": lead.id})
        store.delete_record("communications", comm.id)
        assert store.get_communications_for_entity("leads", lead.id) == []


class TestRelations:
    def test_type_tag_is_canonicalised(self, store: EntityStore, lead) -> None:
        comm = store.upsert_record("communications", {
            "related_to_type": "Leads", "related_to_id": lead.id, "subject": "Call",
        })
        assert comm.related_to_type == "leads"
        assert store.resolve_reference(comm.reference) == lead
        assert store.integrity_warnings == []

    def test_related_records_in_creation_order(self, store: EntityStore, lead) -> None:
        first = store.upsert_record("communications", {"related_to_type": "leads", "related_to_id": lead.id})
        second = store.upsert_record("communications", {"related_to_type": "LEADS", "related_to_id": lead.id})
        task = store.upsert_record("tasks", {"related_to_type": "leads", "related_to_id": lead.id})

        related = store.get_related_records("leads", lead.id)
        assert [c.id for c in related["communications"]] == [first.id, second.id]
        assert [t.id for t in related["tasks"]] == [task.id]
        assert related["documents"] == []

    def test_missing_parent_warns(self, store: EntityStore) -> None:
        comm = store.upsert_record("communications", {"related_to_type": "leads", "related_to_id": "ghost"})

        assert len(store.integrity_warnings) == 1
        warning = store.integrity_warnings[0]
        assert warning.reason == "missing_parent"
        assert warning.record_id == comm.id

    def test_unknown_type_warns_and_keeps_tag(self, store: EntityStore) -> None:
        comm = store.upsert_record("communications", {"related_to_type": "Widgets", "related_to_id": "w1"})

        assert comm.related_to_type == "Widgets"
        assert store.integrity_warnings[0].reason == "unknown_type"

    def test_unrelated_update_does_not_warn_again(self, store: EntityStore) -> None:
        comm = store.upsert_record("communications", {"related_to_type": "leads", "related_to_id": "ghost"})
        store.upsert_record("communications", {"id": comm.id, "subject": "edited"})
        assert len(store.integrity_warnings) == 1

    def test_relation_change_moves_index(self, store: EntityStore, lead, account) -> None:
        comm = store.upsert_record("communications", {"related_to_type": "leads", "related_to_id": lead.id})
        store.upsert_record("communications", {
            "id": comm.id, "related_to_type": "accounts", "related_to_id": account.id,
        })

        assert store.get_communications_for_entity("leads", lead.id) == []
        assert [c.id for c in store.get_communications_for_entity("accounts", account.id)] == [comm.id]

    def test_related_records_match_raw_scan(self, store: EntityStore, lead) -> None:
        for tag in ("leads", "Leads", "LEADS"):
            store.upsert_record("tasks", {"related_to_type": tag, "related_to_id": lead.id})
        store.upsert_record("tasks", {"related_to_type": "accounts", "related_to_id": lead.id})

        raw = {t.id for t in store.list_records("tasks") if store.related_matches(t, "leads", lead.id)}
        derived = {t.id for t in store.get_related_records("leads", lead.id, ["tasks"])["tasks"]}
        assert raw == derived
        assert len(derived) == 3


class TestCustomization:
    def test_custom_field_required_and_typed(self) -> None:
        config = CRMCoreConfig(custom_fields={"leads": [
            CustomFieldDefinition(id="budget", type="number", required=True),
            CustomFieldDefinition(id="tier", type="select", options=["Gold", "Silver"]),
        ]})
        store = EntityStore(config)

        with pytest.raises(ValidationError) as exc:
            store.upsert_record("leads", LEAD_DATA)
        assert exc.value.missing_fields == ["budget"]

        with pytest.raises(ValidationError) as exc:
            store.upsert_record("leads", {**LEAD_DATA, "custom_data": {"budget": "lots", "tier": "Bronze"}})
        assert set(exc.value.invalid_fields) == {"budget", "tier"}

        lead = store.upsert_record("leads", {**LEAD_DATA, "custom_data": {"budget": 2500, "tier": "Gold"}})
        assert lead.custom_data == {"budget": 2500, "tier": "Gold"}

    def test_custom_field_default(self) -> None:
        config = CRMCoreConfig(custom_fields={"accounts": [
            CustomFieldDefinition(id="region", default_value="EMEA"),
        ]})
        store = EntityStore(config)
        account = store.upsert_record("accounts", {"name": "Acme", "industry": "Retail"})
        assert account.custom_data["region"] == "EMEA"

    def test_custom_entity(self) -> None:
        properties = CustomEntityDefinition(
            id="properties",
            name="Property",
            fields=[
                CustomFieldDefinition(id="address", required=True),
                CustomFieldDefinition(id="units", type="number"),
            ],
        )
        store = EntityStore(CRMCoreConfig(custom_entities=[properties]))

        record = store.upsert_record("Properties", {"address": "1 Main St", "units": 4})
        assert record.custom_data == {"address": "1 Main St", "units": 4}
        assert store.count("properties") == 1
        assert "properties" in store.collection_names()

        with pytest.raises(ValidationError) as exc:
            store.upsert_record("properties", {"units": 2})
        assert exc.value.missing_fields == ["address"]

    def test_custom_entity_can_be_a_relation_parent(self, store: EntityStore) -> None:
        store.register_custom_entity(CustomEntityDefinition(id="properties"))
        prop = store.upsert_record("properties", {})
        comm = store.upsert_record("communications", {"related_to_type": "Properties", "related_to_id": prop.id})

        assert comm.related_to_type == "properties"
        assert store.integrity_warnings == []

    def test_children_linked_before_registration_stay_related(self, store: EntityStore) -> None:
        comm = store.upsert_record("communications", {"related_to_type": "Properties", "related_to_id": "p1"})
        store.register_custom_entity(CustomEntityDefinition(id="Properties"))

        raw = {c.id for c in store.list_records("communications") if store.related_matches(c, "Properties", "p1")}
        derived = {c.id for c in store.get_related_records("Properties", "p1", ["communications"])["communications"]}
        assert raw == derived == {comm.id}
        assert [c.id for c in store.get_communications_for_entity("properties", "p1")] == [comm.id]

    def test_custom_entity_cannot_shadow_builtin(self, store: EntityStore) -> None:
        with pytest.raises(ValueError):
            store.register_custom_entity(CustomEntityDefinition(id="Leads"))


class TestDocuments:
    def test_invoice_totals_and_number(self, store: EntityStore, account) -> None:
        invoice = store.upsert_record("invoices", {
            "account_id": account.id,
            "issue_date": date(2025, 1, 1),
            "due_date": date(2025, 1, 31),
            "line_items": [{"description": "Widgets", "qty": 3, "unit_price": 19.99, "tax_rate": 8.25}],
            "amount_paid": 20,
        })

        assert isinstance(invoice, Invoice)
        assert invoice.invoice_number == "INV-1001"
        assert invoice.invoice_date == date(2025, 1, 1)
        assert invoice.line_items[0].line_total == 59.97
        assert invoice.subtotal == 59.97
        assert invoice.tax_total == 4.95
        assert invoice.total == 64.92
        assert invoice.balance_due == 44.92

    def test_invoice_series_increments(self, make_invoice) -> None:
        assert make_invoice(100).invoice_number == "INV-1001"
        assert make_invoice(200).invoice_number == "INV-1002"
        assert make_invoice(300, invoice_number="MANUAL-1").invoice_number == "MANUAL-1"
        assert make_invoice(400).invoice_number == "INV-1003"

    def test_failed_create_does_not_consume_number(self, store: EntityStore, make_invoice) -> None:
        with pytest.raises(ValidationError):
            store.upsert_record("invoices", {"line_items": [{"qty": 1, "unit_price": 5}]})
        assert make_invoice(100).invoice_number == "INV-1001"

    def test_totals_recomputed_on_update(self, store: EntityStore, make_invoice) -> None:
        invoice = make_invoice(100)
        updated = store.upsert_record("invoices", {
            "id": invoice.id,
            "line_items": [{"qty": 2, "unit_price": 100, "tax_rate": 10}],
        })
        assert updated.total == 220.0
        assert updated.invoice_number == invoice.invoice_number

    def test_totals_derived_without_line_items(self, account) -> None:
        store = EntityStore(CRMCoreConfig(validation={"required_fields": {"invoices": ["account_id"]}}))
        invoice = store.upsert_record("invoices", {
            "account_id": account.id, "subtotal": 5, "tax_total": 1, "total": 999, "amount_paid": 0,
        })

        assert invoice.line_items == []
        assert (invoice.subtotal, invoice.tax_total, invoice.total) == (0.0, 0.0, 0.0)
        assert invoice.total == round(invoice.subtotal + invoice.tax_total, 2)
        assert invoice.balance_due == 0.0

    def test_quote_number(self, store: EntityStore, account) -> None:
        quote = store.upsert_record("quotes", {
            "deal_id": "d1", "account_id": account.id, "line_items": [{"qty": 1, "unit_price": 50}],
        })
        assert quote.quote_number == "QT-1001"
        assert quote.total == 50.0

    def test_ticket_and_job_numbers(self, config: CRMCoreConfig) -> None:
        store = EntityStore(config, clock=lambda: FIXED)
        ticket = store.upsert_record("tickets", {
            "subject": "Broken", "description": "It broke", "priority": "High", "assignee_id": "u1",
        })
        job = store.upsert_record("jobs", {
            "subject": "Install", "account_id": "a1", "job_type": "Install", "status": "Scheduled",
        })
        assert ticket.ticket_number == "TKT-2025-0001"
        assert job.job_number == "JOB-2025-0001"


class TestInteractionRules:
    def test_meeting_booked_scores_lead_and_creates_task(self, store: EntityStore, lead) -> None:
        comm = store.upsert_record("communications", {
            "type": "Call",
            "subject": "Demo",
            "content": "Booked a demo for next week",
            "outcome": "meeting-booked",
            "related_to_type": "Leads",
            "related_to_id": lead.id,
        }, actor="u1")

        assert store.get_record("leads", lead.id).score == 15
        tasks = store.get_related_records("leads", lead.id, ["tasks"])["tasks"]
        assert len(tasks) == 1
        task = tasks[0]
        assert task.title == "Follow up: Demo"
        assert task.priority == "High"
        assert task.assignee_id == "u1"
        assert task.created_by == SYSTEM_ACTOR
        assert "meeting-booked" in task.description
        assert comm.id != task.id

    def test_score_is_clamped(self, store: EntityStore, lead) -> None:
        store.upsert_record("communications", {
            "outcome": "no-answer", "related_to_type": "leads", "related_to_id": lead.id,
        })
        assert store.get_record("leads", lead.id).score == 0
        assert store.count("tasks") == 0

    def test_next_step_creates_task_with_title(self, store: EntityStore, account) -> None:
        store.upsert_record("communications", {
            "subject": "Check-in",
            "next_step": "Send pricing",
            "next_follow_up_date": "2025-02-01",
            "related_to_type": "accounts",
            "related_to_id": account.id,
        })
        task = store.list_records("tasks")[0]
        assert task.title == "Send pricing"
        assert task.due_date == "2025-02-01"
        assert task.priority == "Medium"

    def test_rules_can_be_disabled(self) -> None:
        store = EntityStore(CRMCoreConfig(interaction_rules={"enabled": False}))
        lead = store.upsert_record("leads", LEAD_DATA)
        store.upsert_record("communications", {
            "outcome": "meeting-booked", "related_to_type": "leads", "related_to_id": lead.id,
        })
        assert store.get_record("leads", lead.id).score == 0
        assert store.count("tasks") == 0


class TestAuditing:
    def test_writes_are_audited(self, store: EntityStore, lead) -> None:
        store.upsert_record("leads", {"id": lead.id, "status": "Contacted"}, actor="u2")
        store.delete_record("leads", lead.id, actor="u3")

        history = store.audit_trail.get_entity_history("leads", lead.id)
        assert [e.action for e in history] == [AuditAction.CREATE, AuditAction.UPDATE, AuditAction.DELETE]
        assert history[1].user_id == "u2"
        assert "status" in history[1].changed_fields
        assert history[2].new_values is None
        assert store.audit_trail.verify_chain() == (True, [])

    def test_failed_write_is_not_audited(self, store: EntityStore) -> None:
        with pytest.raises(ValidationError):
            store.upsert_record("leads", {"name": "x"})
        assert len(store.audit_trail) == 0

    def test_audit_can_be_disabled(self) -> None:
        store = EntityStore(CRMCoreConfig(audit={"enabled": False}))
        store.upsert_record("leads", LEAD_DATA)
        assert len(store.audit_trail) == 0


class TestVisibility:
    def test_list_records_filtered_by_owner(self, store: EntityStore) -> None:
        agent = store.upsert_record("users", {"name": "Agent", "role": "agent"})
        admin = store.upsert_record("users", {"name": "Admin", "role": "admin"})
        mine = store.upsert_record("leads", {**LEAD_DATA, "owner_id": agent.id})
        store.upsert_record("leads", {**LEAD_DATA, "owner_id": "someone-else"})

        assert [r.id for r in store.list_records("leads", visible_to=agent.id)] == [mine.id]
        assert len(store.list_records("leads", visible_to=admin)) == 2
        assert store.can_access_record(mine, agent)
        assert not store.can_access_record(mine, None)

    def test_custom_access_policy(self, config: CRMCoreConfig) -> None:
        store = EntityStore(config, access_policy=lambda record, user, s: True)
        lead = store.upsert_record("leads", LEAD_DATA)
        assert store.can_access_record(lead)


class TestBulkLoad:
    def test_load_keeps_identity(self, store: EntityStore) -> None:
        created = datetime(2024, 6, 1, 12, 0)
        loaded = store.load_records("leads", [{
            **LEAD_DATA, "id": "lead-1", "created_at": created, "updated_at": created, "created_by": "import",
        }])

        record = store.get_record("leads", "lead-1")
        assert loaded == 1
        assert record.created_at == created.replace(tzinfo=timezone.utc)
        assert record.created_by == "import"
        assert len(store.audit_trail) == 0

    def test_load_requires_id(self, store: EntityStore) -> None:
        with pytest.raises(ValidationError) as exc:
            store.load_records("leads", [LEAD_DATA])
        assert exc.value.missing_fields == ["id"]

    def test_clear(self, store: EntityStore, lead) -> None:
        store.upsert_record("communications", {"related_to_type": "leads", "related_to_id": lead.id})
        store.clear()
        assert store.count("leads") == 0
        assert store.get_communications_for_entity("leads", lead.id) == []


class TestConcurrency:
    def test_parallel_creates(self, store: EntityStore) -> None:
        def worker() -> None:
            for _ in range(25):
                store.upsert_record("leads", LEAD_DATA)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        records = store.list_records("leads")
        assert len(records) == 100
        assert len({r.updated_at for r in records}) == 100
        assert store.audit_trail.verify_chain()[0]
