"""Run Commands - inspect and recover execution records"""

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from ..client.endpoints import JobflowClient, JobflowClientError
from ..utils.formatting import (
    create_run_panel,
    create_runs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="runs", help="Execution record inspection and recovery")


@app.command("list")
def list_runs(
    job_name: str | None = typer.Option(None, "--job", "-j", help="Filter by job name"),
    status: str | None = typer.Option(
        None, "--status", "-s", help="staged, running, awaiting, succeeded or failed"
    ),
    limit: int = typer.Option(50, "--limit", "-l", help="Number of runs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N runs"),
):
    """📋 List runs, most recently active first"""
    try:
        with JobflowClient() as client:
            data = client.list_runs(
                job_name=job_name, status=status, limit=limit, offset=offset
            )
    except JobflowClientError as e:
        print_error(f"Failed to list runs: {e}")
        raise typer.Exit(1) from None

    runs = data.get("runs", [])
    total = data.get("total", len(runs))
    if not runs:
        console.print(Panel("📭 [yellow]No runs found[/yellow]", border_style="yellow"))
        return

    console.print(create_runs_table(runs))
    console.print(f"\n📊 Showing [cyan]{len(runs)}[/cyan] of [yellow]{total}[/yellow] runs")
    if offset + limit < total:
        console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")


@app.command("show")
def show_run(run_id: str = typer.Argument(..., help="Run ID")):
    """🔍 Show one run with its workflow, context and error"""
    try:
        with JobflowClient() as client:
            run = client.get_run(run_id)
    except JobflowClientError as e:
        print_error(f"Failed to get run: {e}")
        raise typer.Exit(1) from None

    console.print(create_run_panel(run))


@app.command("stats")
def run_stats():
    """📊 Show run statistics"""
    try:
        with JobflowClient() as client:
            stats = client.run_stats()
    except JobflowClientError as e:
        print_error(f"Failed to get run stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_panel("Run Statistics", stats))


@app.command("unlock")
def unlock_run(
    run_id: str = typer.Argument(..., help="Run ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🔓 Clear the lock of a run whose worker is gone"""
    if not yes and not Confirm.ask(
        "⚠️ Unlocking a run that is still executing lets a second worker run it. Continue?"
    ):
        console.print("Unlock cancelled.")
        return

    try:
        with JobflowClient() as client:
            client.unlock_run(run_id)
    except JobflowClientError as e:
        if e.status_code == 409:
            print_warning(f"Run {run_id} is not locked")
            return
        print_error(f"Failed to unlock run: {e}")
        raise typer.Exit(1) from None

    print_success(f"Unlocked run {run_id}")
    print_info("The next invocation with the same key resumes it")


@app.command("purge")
def purge_runs(
    older_than_days: int | None = typer.Option(
        None, "--older-than-days", "-d", help="Only runs last run before this age"
    ),
    job_name: str | None = typer.Option(None, "--job", "-j", help="Restrict to one job"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🧹 Delete finished runs that did not fail"""
    if not yes and not Confirm.ask(
        "Purged runs no longer replay; repeated invocations run again. Continue?"
    ):
        console.print("Purge cancelled.")
        return

    try:
        with JobflowClient() as client:
            result = client.purge_runs(older_than_days=older_than_days, job_name=job_name)
    except JobflowClientError as e:
        print_error(f"Failed to purge runs: {e}")
        raise typer.Exit(1) from None

    print_success(f"Purged {result.get('deleted_count', 0)} finished runs")
