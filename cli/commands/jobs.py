"""Queue Commands - built-in queue monitoring and recovery"""

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import JobflowClient, JobflowClientError
from ..utils.formatting import (
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_success,
    styled_status,
)

console = Console()
app = typer.Typer(name="jobs", help="Built-in queue monitoring and recovery")


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    job_name: str | None = typer.Option(None, "--job", "-j", help="Filter by job name"),
    limit: int = typer.Option(50, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List queued jobs"""
    try:
        with JobflowClient() as client:
            data = client.list_jobs(
                status=status, job_name=job_name, limit=limit, offset=offset
            )
    except JobflowClientError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    if not jobs:
        console.print(Panel("📭 [yellow]Queue is empty[/yellow]", border_style="yellow"))
        return

    console.print(create_jobs_table(jobs))
    console.print(
        f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{data.get('total', len(jobs))}[/yellow] jobs"
    )


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show one queued job"""
    try:
        with JobflowClient() as client:
            job = client.get_job(job_id)
    except JobflowClientError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(
        Panel(
            f"• ID: [cyan]{job.get('id')}[/cyan]\n"
            f"• Job: {job.get('job_name')}\n"
            f"• Status: {styled_status(job.get('status', ''))}\n"
            f"• Attempts: [yellow]{job.get('attempts')}[/yellow]\n"
            f"• Run At: {job.get('run_at')}\n"
            f"• Dedupe Key: [dim]{job.get('dedupe_key') or '—'}[/dim]\n"
            f"• Error: [red]{job.get('error_code') or ''} {job.get('last_error') or ''}[/red]",
            title="Queued Job",
            border_style="blue",
        )
    )


@app.command("stats")
def job_stats():
    """📊 Show queue statistics"""
    try:
        with JobflowClient() as client:
            stats = client.job_stats()
    except JobflowClientError as e:
        print_error(f"Failed to get queue stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_panel("Queue Statistics", stats))


@app.command("retry")
def retry_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔁 Put a failed or dead-lettered job back on the queue"""
    try:
        with JobflowClient() as client:
            client.retry_job(job_id)
    except JobflowClientError as e:
        print_error(f"Failed to retry job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {job_id} queued for retry")


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🛑 Cancel a job that has not started yet"""
    try:
        with JobflowClient() as client:
            client.cancel_job(job_id)
    except JobflowClientError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {job_id} canceled")
