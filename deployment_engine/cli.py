# deployment_engine/cli.py
"""Command line entry point."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deployment_engine.config import DeploymentSettings, load_settings
from deployment_engine.container import build_orchestrator
from deployment_engine.core.errors import ConfigurationError, NotDeployedError
from deployment_engine.core.models import DeploymentResult, RunOutcome, StepStatus
from deployment_engine.core.redaction import secret_registry
from deployment_engine.logging_config import setup_logging
from deployment_engine.orchestrator.deployment_orchestrator import StatusReport
from deployment_engine.orchestrator.fixer import Fixer


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_ABORTED = 130

STATUS_STYLE = {
    StepStatus.OK: "[green]ok[/green]",
    StepStatus.SKIPPED: "[yellow]skipped[/yellow]",
    StepStatus.FAILED: "[red]failed[/red]",
    StepStatus.RUNNING: "[red]interrupted[/red]",
    StepStatus.PENDING: "[dim]not run[/dim]",
}

app = typer.Typer(
    name="deployment-engine",
    help="Deploy and operate the application on this VPS",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)


@dataclass
class CliState:
    env_file: Optional[Path] = None
    port: Optional[int] = None


@app.callback()
def main_options(
    ctx: typer.Context,
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Settings file (default: ./deploy.env)"),
    port: Optional[int] = typer.Option(None, "--port", help="Internal application port"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Deploy and operate the application on this VPS."""
    setup_logging(verbose=verbose)
    ctx.obj = CliState(env_file=env_file, port=port)


# ============================================
# HELPERS
# ============================================

def _settings(ctx: typer.Context) -> DeploymentSettings:
    state: CliState = ctx.obj or CliState()
    overrides = {}
    if state.port is not None:
        overrides["internal_port"] = state.port
    try:
        return load_settings(state.env_file, **overrides)
    except ValidationError as e:
        err_console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
        raise typer.Exit(code=EXIT_CONFIG) from e


def _orchestrator(ctx: typer.Context):
    return build_orchestrator(_settings(ctx))


def _guarded(action):
    """Map domain errors to exit codes."""
    try:
        return action()
    except ConfigurationError as e:
        err_console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        raise typer.Exit(code=EXIT_CONFIG) from e
    except NotDeployedError as e:
        err_console.print(f"[red]Not deployed:[/red] {escape(str(e))}")
        raise typer.Exit(code=EXIT_FAILED) from e
    except KeyboardInterrupt as e:
        err_console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit(code=EXIT_ABORTED) from e


def _report(result: DeploymentResult) -> None:
    table = Table(title=f"{result.command} ({str(result.run_id)[:8]})")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Detail")
    for step in result.steps:
        table.add_row(step.name, STATUS_STYLE[step.status], Text(secret_registry.redact(step.message)))
    console.print(table)

    for check in result.checks:
        mark = "[green]✓[/green]" if check.passed else "[red]✗[/red]"
        console.print(f"{mark} {check.name}: {escape(secret_registry.redact(check.message))} ({check.attempts} attempt(s))")

    if result.succeeded:
        if result.credentials is not None and result.credentials_generated:
            _show_credentials_once(result)
        console.print(f"[bold green]✓ {result.command} succeeded[/bold green]")
        return

    failed = result.failed_step()
    if failed is not None:
        err_console.print(f"[red]✗ {result.command} failed at step '{failed.name}':[/red] "
                          f"{escape(secret_registry.redact(failed.message))}")
        if failed.diagnostics:
            err_console.print(secret_registry.redact(failed.diagnostics), markup=False, highlight=False)

    if result.credentials is not None and result.credentials_generated:
        err_console.print(
            "[yellow]New credentials were written to the environment descriptor; "
            "they are shown only after a successful run.[/yellow]"
        )

    code = EXIT_ABORTED if result.outcome == RunOutcome.ABORTED else EXIT_FAILED
    raise typer.Exit(code=code)


def _show_credentials_once(result: DeploymentResult) -> None:
    credentials = result.credentials
    body = "\n".join([
        f"Database:        {credentials.db_name}",
        f"User:            {credentials.db_user}",
        f"Password:        {credentials.db_password}",
        f"Session secret:  {credentials.session_secret}",
        "",
        "Store these now. They will not be displayed again.",
    ])
    console.print(Panel(Text(body), title="Generated credentials", border_style="yellow"))


def _status_table(report: StatusReport) -> None:
    table = Table(title=f"pm2: {report.app_name}")
    for column in ("id", "pid", "status", "restarts", "memory"):
        table.add_column(column)
    for process in report.processes:
        table.add_row(
            str(process.pm_id),
            str(process.pid or "-"),
            process.status,
            str(process.restarts),
            f"{process.memory_bytes // (1024 * 1024)}MB",
        )
    console.print(table)

    def yes_no(value: Optional[bool]) -> str:
        if value is None:
            return "[dim]unknown[/dim]"
        return "[green]yes[/green]" if value else "[red]no[/red]"

    console.print(f"proxy route enabled:  {yes_no(report.proxy_enabled)}")
    console.print(f"proxy config valid:   {yes_no(report.proxy_valid)}")
    console.print(f"database reachable:   {yes_no(report.database_reachable)}")
    for check in report.checks:
        mark = "[green]✓[/green]" if check.passed else "[red]✗[/red]"
        console.print(f"{mark} {check.name}: {escape(check.message)}", highlight=False)


# ============================================
# COMMANDS
# ============================================

@app.command()
def deploy(
    ctx: typer.Context,
    fresh_credentials: bool = typer.Option(
        False, "--fresh-credentials", help="Generate new credentials instead of reusing .env"
    ),
):
    """Run the full pipeline."""
    orchestrator = _orchestrator(ctx)
    _report(_guarded(lambda: orchestrator.deploy(fresh_credentials=fresh_credentials)))


@app.command()
def status(ctx: typer.Context):
    """Supervisor, proxy and database health (read-only)."""
    orchestrator = _orchestrator(ctx)
    report = _guarded(orchestrator.status)
    _status_table(report)
    if not all(check.passed for check in report.checks):
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def logs(
    ctx: typer.Context,
    lines: int = typer.Option(50, "--lines", "-n", help="Lines per log"),
):
    """Tail process and proxy logs (read-only, secrets masked)."""
    orchestrator = _orchestrator(ctx)
    typer.echo(_guarded(lambda: orchestrator.logs(lines=lines)))


@app.command()
def restart(ctx: typer.Context):
    """Restart the supervised process and verify."""
    orchestrator = _orchestrator(ctx)
    _report(_guarded(orchestrator.restart))


@app.command()
def fix(
    ctx: typer.Context,
    reset_credentials: bool = typer.Option(
        False, "--reset-credentials", help="Regenerate credentials and reset the database"
    ),
):
    """Recover a partially working deployment."""
    orchestrator = _orchestrator(ctx)
    _report(_guarded(lambda: Fixer(orchestrator).fix(reset_credentials=reset_credentials)))


@app.command()
def stop(ctx: typer.Context):
    """Remove the application from the supervisor."""
    orchestrator = _orchestrator(ctx)
    _report(_guarded(orchestrator.stop))


@app.command()
def backup(ctx: typer.Context):
    """Dump the database and rotate old dumps."""
    orchestrator = _orchestrator(ctx)
    _report(_guarded(orchestrator.backup))


@app.command()
def restore(
    ctx: typer.Context,
    dump: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Dump written by backup"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Overwrite the database with a dump."""
    orchestrator = _orchestrator(ctx)
    if not yes and not typer.confirm(
        f"This will overwrite the current database with {dump.name}. Continue?", default=False
    ):
        console.print("Restore cancelled")
        raise typer.Exit(code=EXIT_ABORTED)
    _report(_guarded(lambda: orchestrator.restore(dump)))


@app.command()
def ssl(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain served by this host"),
    email: Optional[str] = typer.Option(None, "--email", help="Let's Encrypt contact (default: admin@DOMAIN)"),
):
    """Point the proxy at DOMAIN and install a certificate."""
    orchestrator = _orchestrator(ctx)
    _report(_guarded(lambda: orchestrator.ssl(domain, email=email)))


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
