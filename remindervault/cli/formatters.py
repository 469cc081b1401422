"""CLI output formatters."""

from __future__ import annotations

from datetime import datetime

from rich.table import Table

from remindervault.core.models import Reminder
from remindervault.storage.backends.base import BackendInfo, HealthReport
from remindervault.storage.probe import CapabilityReport
from remindervault.storage.query import ReminderStatistics

SEVERITY_STYLES = {"error": "red", "warning": "yellow", "info": "blue"}

STATUS_STYLES = {
    "active": "green",
    "completed": "dim",
    "overdue": "red",
    "cancelled": "dim",
    "snoozed": "yellow",
}


def _when(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _bytes(value: int | None) -> str:
    if value is None:
        return "-"
    for unit in ("B", "KiB", "MiB"):
        if value < 1024:
            return f"{value:g} {unit}"
        value = round(value / 1024, 1)
    return f"{value:g} GiB"


def format_reminder_table(reminders: list[Reminder], title: str = "Reminders") -> Table:
    """Format reminders as a table."""
    table = Table(title=f"{title} ({len(reminders)} total)")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Due", style="cyan")
    table.add_column("Category")
    table.add_column("Priority", justify="right")
    table.add_column("Status")

    for reminder in reminders:
        status = reminder.status.value
        table.add_row(
            reminder.id or "-",
            reminder.title,
            _when(reminder.due),
            reminder.category.value,
            str(reminder.priority),
            f"[{STATUS_STYLES.get(status, 'white')}]{status}[/]",
        )

    return table


def format_statistics(stats: ReminderStatistics) -> Table:
    """Format reminder statistics as a table."""
    table = Table(title="Reminder Statistics", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")

    table.add_row("Total", str(stats.total))
    for status in ("active", "completed", "overdue", "cancelled", "snoozed"):
        table.add_row(status.capitalize(), str(getattr(stats, status)))
    table.add_row("Completed today", str(stats.completed_today))
    for category, count in sorted(stats.category_counts.items()):
        table.add_row(f"Category: {category}", str(count))
    for priority, count in sorted(stats.priority_counts.items()):
        table.add_row(f"Priority {priority}", str(count))
    table.add_row("Configured alerts", str(stats.total_configured_alerts))
    table.add_row("Alerts per reminder", f"{stats.average_alerts_per_reminder:.1f}")
    table.add_row("Tier", stats.tier_name or "-")

    return table


def format_capability_report(report: CapabilityReport) -> list[Table]:
    """Format probe results and recommendations."""
    tiers = Table(title=f"Storage Capabilities ({_when(report.timestamp)})")
    tiers.add_column("Tier", style="cyan")
    tiers.add_column("Available")
    tiers.add_column("Reason")
    tiers.add_column("Quota estimate", justify="right")
    tiers.add_column("Error", style="dim")

    for tier, capability in report.capabilities.items():
        tiers.add_row(
            tier,
            "[green]yes[/green]" if capability.available else "[red]no[/red]",
            capability.reason.value,
            _bytes(capability.quota_estimate_bytes),
            capability.error or "",
        )

    if not report.recommendations:
        return [tiers]

    advice = Table(title="Recommendations")
    advice.add_column("Severity")
    advice.add_column("Message")
    advice.add_column("Action", style="dim")
    for item in report.recommendations:
        style = SEVERITY_STYLES.get(item.severity, "white")
        advice.add_row(f"[{style}]{item.severity}[/{style}]", item.message, item.action)

    return [tiers, advice]


def format_backend_info(info: BackendInfo) -> Table:
    """Format backend diagnostics as a field/value table."""
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="cyan", width=15)
    table.add_column("Value", style="white")

    table.add_row("Tier", info.tier_name)
    table.add_row("Backend", info.name)
    table.add_row("Persistent", "yes" if info.persistent else "no")
    table.add_row("Records", str(info.record_count) if info.record_count is not None else "-")
    table.add_row("Size", _bytes(info.size_bytes))
    table.add_row("Quota", _bytes(info.quota_bytes))
    for name, value in sorted(info.features.items()):
        table.add_row(name.replace("_", " ").capitalize(), str(value))
    if info.warning:
        table.add_row("Warning", f"[yellow]{info.warning}[/yellow]")

    return table


def format_health(report: HealthReport) -> str:
    """One-line health summary."""
    if report.healthy:
        return f"[green]Healthy[/green] ({report.tier_name}): {report.detail}"
    return f"[red]Unhealthy[/red] ({report.tier_name}): {report.detail}"
