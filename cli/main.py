"""Jobflow CLI - Main Entry Point"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import JobflowClient, JobflowClientError
from .commands import config, jobs, runs, staged
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="jobflow",
    help="⚙️ Jobflow - idempotent workflow engine operator CLI",
    rich_markup_mode="rich",
)

app.add_typer(runs.app, name="runs")
app.add_typer(staged.app, name="staged")
app.add_typer(jobs.app, name="jobs")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API, worker and engine health"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with JobflowClient(base_url) as client:
            health = client.health_check()
    except JobflowClientError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the Jobflow API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]jobflow config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    worker = health.get("worker") or {}
    engine = health.get("engine") or {}
    console.print(
        Panel(
            f"🚀 [green]Connected[/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Active Workers: [cyan]{worker.get('active_workers', 0)}[/cyan]\n"
            f"• Queue Depth: [cyan]{worker.get('queue_depth', 0)}[/cyan]\n"
            f"• Locked Runs: [cyan]{engine.get('locked_runs', 0)}[/cyan] "
            f"([red]{engine.get('stale_locks', 0)} stale[/red])\n"
            f"• Staged Jobs: [cyan]{engine.get('staged_jobs', 0)}[/cyan]",
            title="System Status",
            border_style="green" if health.get("ok") else "red",
        )
    )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"⚙️ [bold cyan]Jobflow CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.command()
def worker(
    modules: list[str] = typer.Option(
        [], "--import", "-i", help="Module defining jobs (repeatable)"
    ),
):
    """🛠️ Run a queue worker in this process"""
    from jobflow.config.logging import setup_logging
    from jobflow.config.settings import get_settings
    from jobflow.v1.infra.jobs.worker import run_worker

    settings = get_settings()
    setup_logging(settings)
    print_info(f"Starting worker against {settings.database_url}")

    try:
        asyncio.run(run_worker(settings, modules))
    except KeyboardInterrupt:
        console.print("Worker stopped.")


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit", is_eager=True
    ),
):
    """
    ⚙️ Jobflow CLI

    Inspect runs, sweep staged jobs, manage the built-in queue and run workers.
    """
    if version:
        from . import __version__

        console.print(f"Jobflow CLI v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
