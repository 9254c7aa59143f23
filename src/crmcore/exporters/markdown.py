"""
Markdown report exporter.

Renders an IntegrityReport as Markdown, suitable for a pull request,
an issue tracker or any Markdown viewer.
"""

from __future__ import annotations

from crmcore.models.report import FailureCode, IntegrityReport

_FAILURE_EMOJI = {
    FailureCode.SETTINGS_WIPE: "🔴",
    FailureCode.SELECTOR_BYPASS: "🔴",
    FailureCode.ORPHAN_REFERENCE: "🟠",
    FailureCode.RELATION_KEY_MISMATCH: "🟡",
    FailureCode.RELATION_CASING_MISMATCH: "🟡",
}


def render_markdown(report: IntegrityReport) -> str:
    """Render an IntegrityReport as Markdown."""
    lines: list[str] = []

    # Header
    lines.append("# CRM Integrity Report")
    lines.append("")
    lines.append(f"*Generated: {report.generated_at.strftime('%Y-%m-%d %H:%M UTC')}*")
    lines.append("")

    # Summary
    summary = report.summary
    lines.append("## 📊 Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| **Total Checks** | {summary.total_checks} |")
    lines.append(f"| **Passed** | {summary.passed} |")
    lines.append(f"| **Failed** | {summary.failed} |")
    lines.append(f"| **Integrity Score** | {summary.integrity_score}/100 |")
    lines.append("")

    if report.collections:
        lines.append("## 🗂️ Collections")
        lines.append("")
        lines.append("| Collection | Records |")
        lines.append("|------------|---------|")
        for name, count in sorted(report.collections.items()):
            if count:
                lines.append(f"| {name} | {count} |")
        lines.append("")

    # Failures grouped by code
    lines.append("## 🔍 Failures")
    lines.append("")
    if not report.failures:
        lines.append("No failures detected.")
        lines.append("")

    for code in FailureCode:
        failures = report.failures_by_code(code)
        if not failures:
            continue

        lines.append(f"### {_FAILURE_EMOJI[code]} {code.value} ({len(failures)})")
        lines.append("")
        lines.append("| Entity | Record | Expected | Actual |")
        lines.append("|--------|--------|----------|--------|")
        for failure in failures:
            lines.append(
                f"| {failure.entity_type} | `{failure.record_id}` | "
                f"{failure.expected} | {failure.actual} |"
            )
        lines.append("")
        first = failures[0]
        if first.likely_cause:
            lines.append(f"**Likely cause:** {first.likely_cause}")
        if first.where_to_look:
            lines.append(f"**Where to look:** {first.where_to_look}")
        lines.append("")

    # Settings
    settings = report.settings
    lines.append(f"## ⚙️ Settings ({settings.health})")
    lines.append("")
    for key, check in settings.checks.items():
        mark = "✅" if check.ok else "❌"
        issues = f": {'; '.join(check.issues)}" if check.issues else ""
        lines.append(f"- {mark} {key}{issues}")
    lines.append("")

    # Relationships
    relationships = report.relationships
    if relationships.orphans or relationships.casing_issues:
        lines.append(f"## 🔗 Relationships ({relationships.orphan_count} orphans)")
        lines.append("")
        for orphan in relationships.orphans:
            lines.append(
                f"- {orphan.child_type}/`{orphan.child_id}` -> "
                f"{orphan.parent_type}/`{orphan.parent_id}`"
            )
        for issue in relationships.casing_issues:
            lines.append(f"- {issue}")
        lines.append("")

    if report.selector_discrepancies:
        lines.append("## 🧭 Selector Discrepancies")
        lines.append("")
        lines.append("| Selector | Parent | Collection | Expected | Actual |")
        lines.append("|----------|--------|------------|----------|--------|")
        for d in report.selector_discrepancies:
            lines.append(f"| {d.name} | `{d.id}` | {d.child_collection} | {d.expected} | {d.actual} |")
        lines.append("")

    # Tab coverage
    if any(report.tab_coverage.values()):
        lines.append("## 📑 Tab Coverage")
        lines.append("")
        for parent_type, entries in report.tab_coverage.items():
            if not entries:
                continue
            lines.append(f"### {parent_type}")
            lines.append("")
            lines.append("| Record | COMMS | TASKS | DOCS | TICKETS |")
            lines.append("|--------|-------|-------|------|---------|")
            for entry in entries:
                tabs = entry.tabs
                lines.append(
                    f"| {entry.name} | {tabs.get('COMMS', 0)} | {tabs.get('TASKS', 0)} | "
                    f"{tabs.get('DOCS', 0)} | {tabs.get('TICKETS', 0)} |"
                )
            lines.append("")

    # Persona filters
    persona = report.persona_filters
    lines.append("## 👤 Persona Filters")
    lines.append("")
    lines.append(
        f"Active user **{persona.active_user or 'none'}** ({persona.active_role}) "
        f"cannot see {persona.total_hidden} records."
    )
    lines.append("")
    if persona.impact_by_collection:
        lines.append("| Collection | Total | Visible | Hidden |")
        lines.append("|------------|-------|---------|--------|")
        for name, impact in persona.impact_by_collection.items():
            lines.append(f"| {name} | {impact.total} | {impact.visible} | {impact.hidden} |")
        lines.append("")

    # Seed
    seed = report.seed_integrity
    lines.append(f"## 🌱 Seed Integrity ({seed.status})")
    lines.append("")
    for issue in seed.issues:
        lines.append(f"- {issue}")
    if seed.issues:
        lines.append("")

    lines.append("---")
    lines.append("*Report generated by crmcore*")

    return "\n".join(lines)
