"""
Console output for PolicyGate.

Renders decisions, audit history, statistics, conflicts and policy
history with the Rich library.

Design Principles:
    - Decision at a glance: the allow/deny verdict comes first
    - Status icons and colors carry the outcome
    - Progressive detail: rule errors and payloads only when asked
"""

from datetime import UTC, datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from policygate.schema import (
    AuditAction,
    AuditLogEntry,
    ConflictInfo,
    ConflictSeverity,
    EvaluationResult,
    PolicyVersion,
    SystemStatistics,
)

# Status icons
ICON_ALLOWED = "[green]✓[/green]"
ICON_DENIED = "[red]✗[/red]"
ICON_OVERRIDDEN = "[yellow]↺[/yellow]"
ICON_WARNING = "[yellow]⚠[/yellow]"
ICON_CRITICAL = "[red]‼[/red]"

_ACTION_ICONS = {
    AuditAction.ALLOWED: ICON_ALLOWED,
    AuditAction.DENIED: ICON_DENIED,
    AuditAction.OVERRIDDEN: ICON_OVERRIDDEN,
}


def _format_ms(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


def _truncate(s: str, max_len: int) -> str:
    """Truncate string with ellipsis."""
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def print_result(
    result: EvaluationResult,
    console: Console | None = None,
    verbose: bool = False,
) -> None:
    """Print one decision with the rules behind it."""
    if console is None:
        console = Console()

    header = Text()
    if result.allowed:
        header.append(" ALLOWED ", style="bold green")
    else:
        header.append(" DENIED ", style="bold red")
    if result.simulation_mode:
        header.append("│ ", style="dim")
        header.append("SIMULATION", style="bold magenta")
    console.print(Panel(header, expand=False))

    console.print(f"  [dim]Reason:[/dim]   {result.reason}")
    console.print(f"  [dim]Duration:[/dim] {result.duration_ms:.2f}ms")
    if result.conflict_detected:
        console.print(f"  {ICON_WARNING} [yellow]Allow and deny rules both triggered[/yellow]")

    if result.triggered_rules:
        console.print()
        table = Table(show_header=True, header_style="bold")
        table.add_column("", width=2)
        table.add_column("Rule", style="cyan")
        table.add_column("Scope")
        table.add_column("Priority", justify="right")
        table.add_column("Actions")
        for rule in result.triggered_rules:
            icon = ICON_DENIED if rule.effect.value == "deny" else ICON_ALLOWED
            table.add_row(
                icon,
                rule.id if not verbose else f"{rule.id} [dim]({rule.name})[/dim]",
                rule.scope.value,
                str(rule.priority),
                ", ".join(a.value for a in rule.actions) or "[dim]-[/dim]",
            )
        console.print(table)

    if result.applied_actions:
        actions = ", ".join(a.value for a in result.applied_actions)
        console.print(f"  [dim]Actions:[/dim]  {actions}")

    if result.rule_errors:
        console.print()
        console.print(f"[yellow]Skipped rules ({len(result.rule_errors)}):[/yellow]")
        for error in result.rule_errors:
            detail = error.message if verbose else _truncate(error.message, 80)
            console.print(f"  • {error.rule_id}: [dim]{error.error_type}[/dim] {detail}")


def print_entries(
    entries: list[AuditLogEntry],
    console: Console | None = None,
    verbose: bool = False,
) -> None:
    """Print audit entries as a table, in the order given."""
    if console is None:
        console = Console()

    if not entries:
        console.print("[dim]No audit entries[/dim]")
        return

    table = Table(show_header=True, header_style="bold", show_lines=verbose, expand=True)
    table.add_column("", width=2)
    table.add_column("Time", style="dim", width=19)
    table.add_column("Entry", style="dim", width=12)
    table.add_column("Agent", style="cyan")
    table.add_column("Task")
    table.add_column("Rules")
    table.add_column("Duration", justify="right", width=10)

    for entry in entries:
        rules = ", ".join(entry.triggered_rules) or "[dim]-[/dim]"
        if entry.error:
            rules += f"\n[red]{entry.error if verbose else _truncate(entry.error, 60)}[/red]"
        if verbose and entry.payload:
            rules += f"\n[dim]payload:[/dim] {_truncate(str(entry.payload), 100)}"
        task = entry.task_name or entry.task_id
        if entry.simulation_mode:
            task += " [magenta](sim)[/magenta]"
        table.add_row(
            _ACTION_ICONS[entry.action],
            _format_ms(entry.timestamp),
            entry.id,
            entry.agent_id,
            task,
            rules,
            f"{entry.duration:.2f}ms",
        )

    console.print(table)


def print_statistics(stats: SystemStatistics, console: Console | None = None) -> None:
    """Print all-time totals and the top violators."""
    if console is None:
        console = Console()

    console.print("[bold]Statistics[/bold]")
    console.print()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column("Metric", style="dim")
    stats_table.add_column("Value")
    stats_table.add_row("Evaluated", str(stats.total_tasks_evaluated))
    stats_table.add_row(
        "Allowed",
        f"[green]{stats.total_allowed}[/green]" if stats.total_allowed > 0 else "0",
    )
    stats_table.add_row(
        "Denied",
        f"[red]{stats.total_denied}[/red]" if stats.total_denied > 0 else "0",
    )
    stats_table.add_row(
        "Overridden",
        f"[yellow]{stats.total_overridden}[/yellow]" if stats.total_overridden > 0 else "0",
    )
    stats_table.add_row(
        "With rule errors",
        f"[yellow]{stats.total_errors}[/yellow]" if stats.total_errors > 0 else "0",
    )
    stats_table.add_row("Avg latency", f"{stats.avg_evaluation_time:.2f}ms")
    console.print(stats_table)

    for title, counts in (
        ("Violations by Rule", stats.violations_by_rule),
        ("Violations by Agent", stats.violations_by_agent),
    ):
        if not counts:
            continue
        console.print()
        console.print(f"[bold]{title}[/bold]")
        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        for key, count in ranked[:10]:
            console.print(f"  • {key}: {count}")
        if len(ranked) > 10:
            console.print(f"  [dim]... and {len(ranked) - 10} more[/dim]")


def print_conflicts(conflicts: list[ConflictInfo], console: Console | None = None) -> None:
    """Print conflict diagnostics, critical first."""
    if console is None:
        console = Console()

    if not conflicts:
        console.print(f"{ICON_ALLOWED} No conflicts detected")
        return

    ordered = sorted(conflicts, key=lambda c: c.severity != ConflictSeverity.CRITICAL)
    table = Table(show_header=True, header_style="bold", expand=True)
    table.add_column("", width=2)
    table.add_column("Type")
    table.add_column("Rules", style="cyan")
    table.add_column("Details", overflow="fold")
    for conflict in ordered:
        icon = ICON_CRITICAL if conflict.severity == ConflictSeverity.CRITICAL else ICON_WARNING
        table.add_row(
            icon,
            conflict.type.value,
            f"{conflict.rule1.id}\n{conflict.rule2.id}",
            conflict.message,
        )
    console.print(table)


def print_history(versions: list[PolicyVersion], console: Console | None = None) -> None:
    """Print a policy's version history, oldest first."""
    if console is None:
        console = Console()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Version", style="cyan")
    table.add_column("Created", style="dim")
    table.add_column("By")
    table.add_column("Enabled", justify="center")
    table.add_column("Rules", justify="right")
    table.add_column("Change")
    for version in versions:
        table.add_row(
            version.version,
            version.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            version.created_by or "[dim]-[/dim]",
            ICON_ALLOWED if version.enabled else ICON_DENIED,
            str(len(version.rules)),
            version.description or "",
        )
    console.print(table)
