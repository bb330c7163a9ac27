"""Staged Job Commands - outbox inspection and sweeping"""

import typer
from rich.console import Console

from ..client.endpoints import JobflowClient, JobflowClientError
from ..utils.formatting import create_staged_table, print_error, print_success, print_warning

console = Console()
app = typer.Typer(name="staged", help="Staged job inspection and sweeping")


@app.command("list")
def list_staged(
    limit: int = typer.Option(50, "--limit", "-l", help="Number of rows to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N rows"),
):
    """📋 List staged jobs not yet handed to their adapter"""
    try:
        with JobflowClient() as client:
            data = client.list_staged(limit=limit, offset=offset)
    except JobflowClientError as e:
        print_error(f"Failed to list staged jobs: {e}")
        raise typer.Exit(1) from None

    staged_jobs = data.get("staged_jobs", [])
    if not staged_jobs:
        print_success("No staged jobs waiting")
        return

    console.print(create_staged_table(staged_jobs))
    console.print(
        f"\n📊 [yellow]{data.get('total', len(staged_jobs))}[/yellow] staged jobs waiting"
    )


@app.command("sweep")
def sweep_staged(
    older_than_s: int | None = typer.Option(
        None, "--older-than", "-t", help="Minimum age in seconds (server default if unset)"
    ),
):
    """🧹 Enqueue staged jobs whose dispatch never completed"""
    try:
        with JobflowClient() as client:
            result = client.sweep_staged(older_than_s=older_than_s)
    except JobflowClientError as e:
        print_error(f"Failed to sweep staged jobs: {e}")
        raise typer.Exit(1) from None

    enqueued = result.get("enqueued", 0)
    failed = result.get("failed", 0)
    print_success(f"Enqueued {enqueued} staged jobs")
    if failed:
        print_warning(f"{failed} staged jobs could not be enqueued and remain staged")
