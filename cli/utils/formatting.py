"""Rich formatting helpers for CLI output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "staged": "blue",
    "running": "cyan",
    "awaiting": "yellow",
    "succeeded": "green",
    "failed": "red",
    "queued": "blue",
    "deadletter": "red",
    "canceled": "dim",
}


def print_success(message: str):
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    console.print(f"[blue]ℹ {message}[/blue]")


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _short(value: str | None, length: int = 8) -> str:
    return (value or "—")[:length]


def create_runs_table(runs: list[dict[str, Any]]) -> Table:
    table = Table(title="Runs", box=box.ROUNDED)

    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Job", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Recovery Point", style="yellow")
    table.add_column("Locked By", style="dim")
    table.add_column("Last Run", style="white")

    for run in runs:
        table.add_row(
            _short(run.get("id")),
            run.get("job_name", ""),
            styled_status(run.get("status", "")),
            run.get("recovery_point") or "—",
            run.get("locked_by") or "—",
            run.get("last_run_at") or "—",
        )

    return table


def create_run_panel(run: dict[str, Any]) -> Panel:
    """Detail view of one execution record"""
    lines = [
        f"• ID: [cyan]{run.get('id')}[/cyan]",
        f"• Job: [magenta]{run.get('job_name')}[/magenta]",
        f"• Key: [dim]{run.get('idempotency_key')}[/dim]",
        f"• Status: {styled_status(run.get('status', ''))}",
        f"• Recovery Point: [yellow]{run.get('recovery_point') or '—'}[/yellow]",
        f"• Locked: {run.get('locked_at') or 'no'} {run.get('locked_by') or ''}",
        f"• Last Run: {run.get('last_run_at') or '—'}",
    ]

    steps = run.get("workflow") or {}
    if steps:
        lines.append("\n[bold]Steps[/bold]")
        for name, definition in steps.items():
            marker = "→" if name == run.get("recovery_point") else " "
            awaits = len(definition.get("awaits") or [])
            suffix = f" [dim](awaits {awaits})[/dim]" if awaits else ""
            lines.append(f" {marker} {name} → {definition.get('then')}{suffix}")

    context = run.get("context") or {}
    if context:
        lines.append("\n[bold]Context[/bold]")
        for key, value in context.items():
            lines.append(f"  {key} = [yellow]{value!r}[/yellow]")

    error = run.get("error")
    if error:
        lines.append("\n[bold red]Error[/bold red]")
        lines.append(
            f"  [red]{error.get('class', 'unknown')}: {error.get('message', '')}[/red]"
        )

    border = "red" if error else "green"
    return Panel("\n".join(lines), title="Run", border_style=border)


def create_staged_table(staged_jobs: list[dict[str, Any]]) -> Table:
    table = Table(title="Staged Jobs", box=box.ROUNDED)

    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Adapter", justify="center", style="magenta")
    table.add_column("Job", style="white")
    table.add_column("Job ID", style="dim")
    table.add_column("Awaited By", style="yellow")
    table.add_column("Created", style="white")

    for row in staged_jobs:
        awaited_by = "—"
        if row.get("awaited_by_run_id"):
            awaited_by = f"{_short(row['awaited_by_run_id'])}:{row.get('awaited_step')}"
        table.add_row(
            _short(row.get("id")),
            row.get("adapter", ""),
            row.get("job_name", ""),
            row.get("job_id", ""),
            awaited_by,
            row.get("created_at", ""),
        )

    return table


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    table = Table(title="Queued Jobs", box=box.ROUNDED)

    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Job", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="right", style="yellow")
    table.add_column("Run At", style="white")
    table.add_column("Last Error", style="red")

    for job in jobs:
        table.add_row(
            _short(job.get("id")),
            job.get("job_name", ""),
            styled_status(job.get("status", "")),
            str(job.get("attempts", 0)),
            job.get("run_at", ""),
            (job.get("last_error") or "")[:60],
        )

    return table


def create_stats_panel(title: str, stats: dict[str, Any]) -> Panel:
    lines = []
    for key, value in stats.items():
        label = key.replace("_", " ").capitalize()
        if isinstance(value, dict):
            lines.append(f"[bold]{label}[/bold]")
            for sub_key, count in value.items():
                lines.append(f"  • {sub_key}: [cyan]{count}[/cyan]")
        else:
            lines.append(f"• {label}: [cyan]{value}[/cyan]")
    return Panel("\n".join(lines) or "No data", title=title, border_style="blue")
