"""CLI commands for clawgate."""

import asyncio
import sys
import time
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from clawgate import __logo__, __version__

app = typer.Typer(
    name="clawgate",
    help=f"{__logo__} clawgate - chat gateway for AI coding agents",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} clawgate v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """clawgate - chat gateway for AI coding agents."""
    pass


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """Initialize clawgate configuration and workspace."""
    from clawgate.config.loader import get_config_path, save_config
    from clawgate.config.schema import Config
    from clawgate.utils.helpers import get_workspace_path

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config, config_path)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    workspace = get_workspace_path(config.agent.workspace)
    console.print(f"[green]✓[/green] Created workspace at {workspace}")
    _create_workspace_templates(workspace)

    console.print(f"\n{__logo__} clawgate is ready!")
    console.print("\nNext steps:")
    console.print(f"  1. Enable a channel in [cyan]{config_path}[/cyan] (WhatsApp bridge or Telegram token)")
    console.print("  2. Fill allowedDms / allowedGroups, or nobody can reach the agent")
    console.print("  3. Start the gateway: [cyan]clawgate gateway[/cyan]")


def _create_workspace_templates(workspace: Path):
    """Create default workspace template files."""
    templates = {
        "AGENTS.md": """# Agent Instructions

You are a helpful assistant reached over chat. Be concise, accurate, and friendly.

## Guidelines

- Say what you are about to do before running commands or editing files
- Ask for clarification when the request is ambiguous
- Remember important information with the memory tool
""",
        "USER.md": """# User

Information about the user goes here.

## Preferences

- Communication style: (casual/formal)
- Timezone: (your timezone)
- Language: (your preferred language)
""",
        "MEMORY.md": """# Memory

Facts that should persist across sessions.
""",
    }

    for filename, content in templates.items():
        file_path = workspace / filename
        if not file_path.exists():
            file_path.write_text(content, encoding="utf-8")
            console.print(f"  [dim]Created {filename}[/dim]")

    (workspace / "memory").mkdir(exist_ok=True)


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    port: int = typer.Option(None, "--port", "-p", help="HTTP status port (default: config, PORT env or 4096)"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Start the clawgate gateway."""
    import uvicorn
    from loguru import logger

    from clawgate.config.loader import load_config
    from clawgate.gateway import Gateway, create_app

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")

    config = load_config()
    if port:
        config.gateway.port = port

    console.print(f"{__logo__} Starting clawgate gateway on port {config.gateway.port}...")

    gw = Gateway(config)

    if gw.channels.enabled_channels:
        console.print(f"[green]✓[/green] Channels enabled: {', '.join(gw.channels.enabled_channels)}")
    else:
        console.print("[yellow]Warning: No channels enabled[/yellow]")
    console.print(f"[green]✓[/green] Provider: {gw.agent.provider_name} ({gw.agent.provider.get_model() or 'default'})")

    cron_status = gw.cron.status()
    if cron_status["jobs"] > 0:
        console.print(f"[green]✓[/green] Cron: {cron_status['jobs']} scheduled jobs")

    uv_config = uvicorn.Config(
        create_app(gw),
        host=config.gateway.host,
        port=config.gateway.port,
        log_level="debug" if verbose else "warning",
    )
    server = uvicorn.Server(uv_config)

    async def run():
        await gw.start()
        console.print(f"[green]✓[/green] Status: http://{config.gateway.host}:{config.gateway.port} (QR code at /qr)")
        try:
            await server.serve()
        finally:
            await gw.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


# ============================================================================
# Cron Commands
# ============================================================================


cron_app = typer.Typer(help="Manage scheduled tasks")
app.add_typer(cron_app, name="cron")


def _cron_service():
    from clawgate.config.loader import load_config
    from clawgate.cron.service import CronService

    config = load_config()
    return CronService(config.cron_store_path())


@cron_app.command("list")
def cron_list(
    all: bool = typer.Option(False, "--all", "-a", help="Include disabled jobs"),
):
    """List scheduled jobs."""
    service = _cron_service()
    jobs = service.list_jobs(include_disabled=all)

    if not jobs:
        console.print("No scheduled jobs.")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Schedule")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Next Run")

    for job in jobs:
        next_run = ""
        if job.state.next_run_at_ms:
            next_run = time.strftime("%Y-%m-%d %H:%M", time.localtime(job.state.next_run_at_ms / 1000))
        status = "[green]enabled[/green]" if job.enabled else "[dim]disabled[/dim]"
        target = f"{job.payload.channel}:{job.payload.to}" if job.payload.channel else ""
        table.add_row(job.id, job.name, job.schedule.describe(), target, status, next_run)

    console.print(table)


@cron_app.command("add")
def cron_add(
    name: str = typer.Option(..., "--name", "-n", help="Job name"),
    message: str = typer.Option(..., "--message", "-m", help="Message to deliver (or task for the agent)"),
    every: int = typer.Option(None, "--every", "-e", help="Run every N seconds"),
    cron_expr: str = typer.Option(None, "--cron", "-c", help="Cron expression (e.g. '0 9 * * *')"),
    tz: str = typer.Option(None, "--tz", help="IANA timezone for --cron"),
    at: str = typer.Option(None, "--at", help="Run once at time (ISO format)"),
    invoke_agent: bool = typer.Option(False, "--agent", help="Let the agent process the message"),
    to: str = typer.Option(..., "--to", help="Chat id to deliver to"),
    channel: str = typer.Option(..., "--channel", help="Channel for delivery (e.g. 'telegram', 'whatsapp')"),
):
    """Add a scheduled job."""
    from clawgate.cron.service import CronError
    from clawgate.cron.types import CronSchedule

    if every:
        schedule = CronSchedule(kind="every", every_ms=every * 1000)
    elif cron_expr:
        schedule = CronSchedule(kind="cron", expr=cron_expr, tz=tz)
    elif at:
        try:
            dt = datetime.fromisoformat(at)
        except ValueError:
            console.print(f"[red]Error: could not parse time '{at}'[/red]")
            raise typer.Exit(1)
        schedule = CronSchedule(kind="at", at_ms=int(dt.timestamp() * 1000))
    else:
        console.print("[red]Error: Must specify --every, --cron, or --at[/red]")
        raise typer.Exit(1)

    service = _cron_service()
    try:
        job = service.add_job(
            name=name,
            schedule=schedule,
            message=message,
            channel=channel,
            to=to,
            invoke_agent=invoke_agent,
        )
    except CronError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Added job '{job.name}' ({job.id})")


@cron_app.command("remove")
def cron_remove(
    job_id: str = typer.Argument(..., help="Job ID to remove"),
):
    """Remove a scheduled job."""
    service = _cron_service()

    if service.remove_job(job_id):
        console.print(f"[green]✓[/green] Removed job {job_id}")
    else:
        console.print(f"[red]Job {job_id} not found[/red]")


@cron_app.command("enable")
def cron_enable(
    job_id: str = typer.Argument(..., help="Job ID"),
    disable: bool = typer.Option(False, "--disable", help="Disable instead of enable"),
):
    """Enable or disable a job."""
    service = _cron_service()

    job = service.enable_job(job_id, enabled=not disable)
    if job:
        status = "disabled" if disable else "enabled"
        console.print(f"[green]✓[/green] Job '{job.name}' {status}")
    else:
        console.print(f"[red]Job {job_id} not found[/red]")


@cron_app.command("run")
def cron_run(
    job_id: str = typer.Argument(..., help="Job ID to run"),
    force: bool = typer.Option(False, "--force", "-f", help="Run even if disabled"),
):
    """Deliver a job now through the configured channels."""
    from clawgate.config.loader import load_config
    from clawgate.gateway import Gateway

    config = load_config()

    async def run() -> bool:
        gw = Gateway(config)
        await gw.channels.start_all()
        try:
            return await gw.cron.run_job(job_id, force=force)
        finally:
            await gw.channels.stop_all()
            await gw.agent.close()

    if asyncio.run(run()):
        console.print("[green]✓[/green] Job executed")
    else:
        console.print(f"[red]Failed to run job {job_id}[/red]")


# ============================================================================
# Status Commands
# ============================================================================


@app.command()
def status():
    """Show clawgate status."""
    from clawgate.config.loader import get_config_path, get_data_dir, load_config
    from clawgate.config.settings import SettingsStore

    config_path = get_config_path()
    config = load_config()
    workspace = config.workspace_path
    settings = SettingsStore(get_data_dir() / "settings.json")

    console.print(f"{__logo__} clawgate Status\n")

    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Workspace: {workspace} {'[green]✓[/green]' if workspace.exists() else '[red]✗[/red]'}")

    provider = settings.get_provider() or config.agent.provider
    model = settings.get_model(provider) or "(default)"
    console.print(f"Provider: {provider} ({model})")
    console.print(f"HTTP: {config.gateway.host}:{config.gateway.port}")

    for name in ("whatsapp", "telegram"):
        channel = getattr(config.channels, name)
        state = "[green]enabled[/green]" if channel.enabled else "[dim]disabled[/dim]"
        dms = ", ".join(channel.allowed_dms) or "none"
        groups = ", ".join(channel.allowed_groups) or "none"
        console.print(f"{name}: {state} (DMs: {dms}; groups: {groups})")


if __name__ == "__main__":
    app()
