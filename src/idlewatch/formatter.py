"""Output formatters for alert reports."""

import json

from rich.console import Console
from rich.text import Text
from rich.tree import Tree

from idlewatch.models import Alert, Severity

SEVERITY_COLORS = {
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "dim",
}


def _escape_md_cell(value: str) -> str:
    """Escape characters that break markdown table cells."""
    return value.replace("|", "\\|").replace("\n", " ")


def _sorted(alerts: list[Alert]) -> list[Alert]:
    return sorted(alerts, key=lambda a: (-a.severity, a.resource_type.value, a.resource_id))


def format_json(alerts: list[Alert], failures: list[str] | None = None) -> str:
    """Format alerts as JSON."""
    failures = failures or []
    by_severity = {s.name: 0 for s in sorted(Severity, reverse=True)}
    for a in alerts:
        by_severity[a.severity.name] += 1

    return json.dumps(
        {
            "summary": {
                "total_alerts": len(alerts),
                "by_severity": by_severity,
                "failures": len(failures),
            },
            "alerts": [
                {
                    "alert_id": a.alert_id,
                    "resource_id": a.resource_id,
                    "resource_type": a.resource_type.value,
                    "alert_type": a.alert_type,
                    "severity": a.severity.name,
                    "message": a.message,
                    "rule_id": a.rule_id,
                    "resolved": a.resolved,
                    "created_at": a.created_at.isoformat(),
                }
                for a in _sorted(alerts)
            ],
            "failures": failures,
        },
        indent=2,
    )


def format_markdown(alerts: list[Alert], failures: list[str] | None = None) -> str:
    """Format alerts as Markdown."""
    failures = failures or []
    if not alerts and not failures:
        return "No alerts raised."

    lines = [f"## Alert Report — {len(alerts)} alerts", ""]

    if alerts:
        lines.append("| Resource | Type | Alert | Severity | Message |")
        lines.append("|----------|------|-------|----------|---------|")
        for a in _sorted(alerts):
            lines.append(
                f"| {_escape_md_cell(a.resource_id)} | {a.resource_type.value} "
                f"| {_escape_md_cell(a.alert_type)} | {a.severity.name} "
                f"| {_escape_md_cell(a.message)} |"
            )
        lines.append("")

    if failures:
        lines.append(f"### Not evaluated ({len(failures)})")
        lines.append("")
        lines.extend(f"- {_escape_md_cell(f)}" for f in failures)
        lines.append("")

    return "\n".join(lines)


def format_table(alerts: list[Alert], failures: list[str] | None = None) -> str:
    """Format alerts as a Rich tree view grouped by resource type, returned as a string."""
    failures = failures or []
    if not alerts and not failures:
        return "No alerts raised."

    console = Console(record=True, width=120)
    tree = Tree("[bold]Alert Report[/bold]")

    branches: dict[str, Tree] = {}
    for a in _sorted(alerts):
        kind = a.resource_type.value
        if kind not in branches:
            count = sum(1 for x in alerts if x.resource_type == a.resource_type)
            branches[kind] = tree.add(Text(f"{kind} — {count} alerts"))
        color = SEVERITY_COLORS.get(a.severity, "dim")
        resource_branch = branches[kind].add(
            Text(a.resource_id, style=color) + Text(f" [{a.severity.name}]")
        )
        resource_branch.add(Text(f"{a.alert_type}: {a.message}"))

    if failures:
        failed_branch = tree.add(Text.from_markup(f"[red]Not evaluated ({len(failures)})[/red]"))
        for f in failures:
            failed_branch.add(Text(f))

    console.print(tree)
    return console.export_text()
