"""CLI commands for cordbridge."""

import asyncio
import contextlib
import json
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from cordbridge import __logo__, __version__

app = typer.Typer(
    name="cordbridge",
    help=f"{__logo__} cordbridge - Discord channels bridged to Claude Code",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} cordbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """cordbridge - Discord channels bridged to Claude Code."""
    pass


# ============================================================================
# Setup
# ============================================================================


@app.command()
def init():
    """Write a default config to ~/.cordbridge/config.json."""
    from cordbridge.config.loader import get_config_path, get_env_path, save_config
    from cordbridge.config.schema import Config

    config_path = get_config_path()
    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print(f"[green]✓[/green] Created secrets file at {get_env_path()} (mode 600)")
    console.print("\nNext steps:")
    console.print("  1. Put DISCORD_TOKEN, DISCORD_APPLICATION_ID and ANTHROPIC_API_KEY in [cyan]~/.cordbridge/.env[/cyan]")
    console.print("  2. Link a project: [cyan]cordbridge add-project myapp --channel-id 123...[/cyan]")
    console.print("  3. Start the bot: [cyan]cordbridge run[/cyan]")


@app.command()
def status():
    """Show configuration status."""
    from cordbridge.config.loader import get_config_path, get_env_path, load_config

    config_path = get_config_path()
    env_path = get_env_path()
    config = load_config()

    console.print(f"{__logo__} cordbridge Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[dim]defaults[/dim]'}")
    console.print(f"Secrets: {env_path} {'[green]✓[/green]' if env_path.exists() else '[yellow]missing[/yellow]'}")
    root = config.projects_root
    console.print(f"Projects root: {root} {'[green]✓[/green]' if root.is_dir() else '[red]✗[/red]'}")
    console.print(f"Sessions DB: {config.sessions_db_path}")

    missing = set(config.missing_required())
    for name in ("DISCORD_TOKEN", "DISCORD_APPLICATION_ID", "ANTHROPIC_API_KEY"):
        console.print(f"{name}: {'[red]not set[/red]' if name in missing else '[green]✓[/green]'}")
    gateway = f"http://{config.gateway.host}:{config.gateway.port}" if config.gateway.enabled else "disabled"
    console.print(f"Diagnostics API: {gateway}")


# ============================================================================
# Bot
# ============================================================================


def _log_async_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Uncaught task errors are logged; the bot keeps running."""
    from loguru import logger

    exc = context.get("exception")
    logger.error(f"Unhandled async error: {context.get('message', '')} {exc or ''}".strip())


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Start the Discord bot."""
    from loguru import logger

    from cordbridge.app import Bridge
    from cordbridge.config.loader import load_config, save_config
    from cordbridge.errors import ConfigurationError
    from cordbridge.gateway.api import create_gateway_app
    from cordbridge.logging.error_store import init_error_store

    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")

    config = load_config()
    missing = config.missing_required()
    if missing:
        for name in missing:
            console.print(f"[red]Missing {name} in environment[/red]")
        raise typer.Exit(1)
    if not config.projects_root.is_dir():
        console.print(f"[red]Projects root does not exist: {config.projects_root}[/red]")
        raise typer.Exit(1)

    # The agent SDK reads the key from the environment
    os.environ["ANTHROPIC_API_KEY"] = config.anthropic.api_key

    if config.gateway.enabled and not config.gateway.auth_token.strip():
        import secrets

        config.gateway.auth_token = secrets.token_urlsafe(32)
        save_config(config)

    init_error_store(config.error_log_path)
    console.print(f"{__logo__} Starting cordbridge...")

    async def serve():
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_log_async_exception)
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)

        bridge = Bridge(config)
        tasks = {asyncio.create_task(bridge.run()), asyncio.create_task(stop.wait())}
        if config.gateway.enabled:
            import uvicorn

            api_app = create_gateway_app(
                bridge.orchestrator, bridge.sessions, bridge.projects, config.gateway.auth_token
            )
            api_server = uvicorn.Server(
                uvicorn.Config(
                    api_app,
                    host=config.gateway.host,
                    port=config.gateway.port,
                    log_level="warning",
                    access_log=False,
                )
            )
            tasks.add(asyncio.create_task(api_server.serve()))
            console.print(f"[green]✓[/green] Diagnostics API on {config.gateway.host}:{config.gateway.port}")

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            console.print("\nShutting down...")
            await bridge.close()

    try:
        asyncio.run(serve())
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass


# ============================================================================
# Projects
# ============================================================================


@app.command()
def projects():
    """List projects linked to Discord channels."""
    from cordbridge.config.loader import load_config
    from cordbridge.errors import ProjectsRootError
    from cordbridge.projects.registry import ProjectRegistry

    config = load_config()
    registry = ProjectRegistry(config.projects_root)
    try:
        registry.discover()
    except ProjectsRootError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if registry.count() == 0:
        console.print(f"No projects found under {registry.root}.")
        return

    table = Table(title="Projects")
    table.add_column("Name", style="cyan")
    table.add_column("Channel")
    table.add_column("Model")
    table.add_column("Permission Mode")
    table.add_column("Path", style="dim")
    for project in registry.get_all():
        table.add_row(
            project.name,
            project.channel_id,
            project.model or "default",
            project.permission_mode.value,
            project.path,
        )
    console.print(table)


@app.command("add-project")
def add_project(
    name: str = typer.Argument(..., help="Project directory name under the projects root"),
    channel_id: str = typer.Option(..., "--channel-id", "-c", help="Discord channel ID"),
    model: str = typer.Option(None, "--model", "-m", help="Model ID"),
    permission_mode: str = typer.Option("default", "--permission-mode", "-p", help="default, acceptEdits, bypassPermissions or plan"),
):
    """Link a project directory to a Discord channel."""
    from cordbridge.config.loader import load_config
    from cordbridge.projects.registry import PROJECT_FILE, parse_permission_mode, write_project_file

    mode = parse_permission_mode(permission_mode)
    if mode is None:
        console.print(f"[red]Unknown permission mode: {permission_mode}[/red]")
        raise typer.Exit(1)

    config = load_config()
    directory = config.projects_root / name
    if (directory / PROJECT_FILE).exists():
        console.print(f"[yellow]{directory / PROJECT_FILE} already exists[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    path = write_project_file(directory, channel_id, model=model, permission_mode=mode)
    console.print(f"[green]✓[/green] Wrote {path}")
    console.print("  Run [cyan]/rescan[/cyan] in Discord (or restart) to pick it up.")


# ============================================================================
# Sessions
# ============================================================================

sessions_app = typer.Typer(help="Inspect stored sessions")
app.add_typer(sessions_app, name="sessions")


def _open_store():
    from cordbridge.config.loader import load_config
    from cordbridge.sessions.store import SessionStore

    return SessionStore(load_config().sessions_db_path)


@sessions_app.command("list")
def sessions_list():
    """List the active session of every channel."""
    store = _open_store()
    try:
        records = store.get_all()
    finally:
        store.close()

    if not records:
        console.print("No active sessions.")
        return

    table = Table(title="Active Sessions")
    table.add_column("Channel", style="cyan")
    table.add_column("Project")
    table.add_column("Session")
    table.add_column("Updated")
    for record in records:
        table.add_row(record.channel_id, record.project_name, record.session_id, record.updated_at)
    console.print(table)


@sessions_app.command("export")
def sessions_export(
    output: Path = typer.Option(None, "--output", "-o", help="Write JSON to this file instead of stdout"),
):
    """Export active and saved sessions as JSON."""
    store = _open_store()
    try:
        saved: dict[str, list[dict]] = {}
        for s in store.list_all_saved():
            saved.setdefault(s.channel_id, []).append(asdict(s))
        payload = {
            "sessions": [asdict(r) for r in store.get_all()],
            "saved": saved,
        }
    finally:
        store.close()

    text = json.dumps(payload, indent=2)
    if output:
        output.write_text(text + "\n", encoding="utf-8")
        console.print(f"[green]✓[/green] Exported {len(payload['sessions'])} session(s) to {output}")
    else:
        typer.echo(text)


@sessions_app.command("clear")
def sessions_clear(
    channel_id: str = typer.Argument(..., help="Discord channel ID"),
):
    """Forget the active session of a channel."""
    store = _open_store()
    try:
        if store.get(channel_id) is None:
            console.print(f"No active session for channel {channel_id}.")
            return
        store.clear(channel_id)
    finally:
        store.close()
    console.print(f"[green]✓[/green] Cleared session for channel {channel_id}")


if __name__ == "__main__":
    app()
