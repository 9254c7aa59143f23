"""Tests for the Markdown exporter."""

from crmcore.exporters.markdown import render_markdown
from crmcore.models.report import (
    AuditFailure,
    FailureCode,
    IntegrityReport,
    IntegritySummary,
    OrphanReference,
    RelationshipHealth,
    SeedIntegrity,
    SelectorDiscrepancy,
    TabCoverage,
)


class TestMarkdownExporter:
    def test_basic_render(self) -> None:
        report = IntegrityReport(
            summary=IntegritySummary(total_checks=16, passed=16, failed=0, integrity_score=100),
            collections={"leads": 3, "tasks": 0},
        )
        md = render_markdown(report)
        assert md.startswith("# CRM Integrity Report")
        assert "| **Integrity Score** | 100/100 |" in md
        assert "| leads | 3 |" in md
        assert "| tasks |" not in md
        assert "No failures detected." in md
        assert "crmcore" in md

    def test_render_with_failures(self) -> None:
        report = IntegrityReport(
            summary=IntegritySummary(total_checks=4, passed=3, failed=1, integrity_score=75),
            relationships=RelationshipHealth(
                orphan_count=1,
                orphans=[OrphanReference(parent_type="leads", parent_id="l9", child_id="t1", child_type="tasks")],
            ),
            failures=[
                AuditFailure(
                    failure_code=FailureCode.ORPHAN_REFERENCE,
                    entity_type="tasks",
                    record_id="t1",
                    expected="Existing leads/l9",
                    actual="Missing",
                    likely_cause="Parent deleted without its children.",
                    where_to_look="delete_record callers",
                ),
            ],
        )
        md = render_markdown(report)
        assert "### 🟠 ORPHAN_REFERENCE (1)" in md
        assert "| tasks | `t1` | Existing leads/l9 | Missing |" in md
        assert "**Likely cause:** Parent deleted without its children." in md
        assert "## 🔗 Relationships (1 orphans)" in md
        assert "No failures detected." not in md

    def test_render_sections(self) -> None:
        report = IntegrityReport(
            selector_discrepancies=[
                SelectorDiscrepancy(name="leads", id="l1", child_collection="tasks", expected=2, actual=1),
            ],
            tab_coverage={"leads": [TabCoverage(id="l1", name="Ada", tabs={"COMMS": 2, "TASKS": 1})]},
            seed_integrity=SeedIntegrity(status="modified", issues=["Missing leads in bootstrap state."]),
        )
        md = render_markdown(report)
        assert "| leads | `l1` | tasks | 2 | 1 |" in md
        assert "| Ada | 2 | 1 | 0 | 0 |" in md
        assert "## 🌱 Seed Integrity (modified)" in md
        assert "- Missing leads in bootstrap state." in md

    def test_report_to_markdown_delegates(self) -> None:
        report = IntegrityReport()
        assert report.to_markdown() == render_markdown(report)
