"""procdaemon CLI application."""

from __future__ import annotations

import os
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import psutil
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from procdaemon import __version__
from procdaemon.config import (
    ConfigError,
    load_config,
    resolve_config_path,
    save_config,
    settings_for,
)
from procdaemon.core.pidfile import PidFileManager, is_process_running, process_name
from procdaemon.core.watcher import ConfigWatcherDaemon
from procdaemon.models import DaemonSettings, Job, ProcDaemonConfig
from procdaemon.registry import UnknownDaemonError, import_modules, registry

app = typer.Typer(
    name="procdaemon",
    help="procdaemon - forking daemon supervisor",
    no_args_is_help=True,
)
console = Console()

WATCHER_ROUTE = "watcher"


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"

    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )


def register_builtin_daemons(config_path: Path | None) -> None:
    """Register the config-driven watcher unless the application has its own."""
    if WATCHER_ROUTE in registry:
        return

    def make_watcher(route: str, settings: DaemonSettings) -> ConfigWatcherDaemon:
        return ConfigWatcherDaemon(
            route,
            config_path=config_path,
            launcher=registry.launcher(config_path),
            settings=settings,
        )

    registry.register(WATCHER_ROUTE, make_watcher)


def _load_config_or_exit(config_path: Path | None) -> ProcDaemonConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _settings_or_exit(config: ProcDaemonConfig, route: str, **overrides) -> DaemonSettings:
    try:
        return settings_for(config, route, **overrides)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _prepare(modules: list[str], config_path: Path | None) -> None:
    try:
        import_modules(modules)
    except ImportError as e:
        console.print(f"[red]Can't import daemon module: {e}[/red]")
        raise typer.Exit(1)
    register_builtin_daemons(config_path)


# ============================================================================
# Daemon Commands
# ============================================================================


@app.command("run")
def run_daemon(
    route: str = typer.Argument(..., help="Daemon route, e.g. reports/export or watcher"),
    demonize: bool = typer.Option(False, "--demonize", "-d", help="Run in background"),
    multi_instance: bool = typer.Option(
        False, "--multi-instance", "-m", help="Run every job in its own child process"
    ),
    max_child_processes: Optional[int] = typer.Option(
        None, "--max-child-processes", "-n", help="Maximum concurrent child processes"
    ),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    module: list[str] = typer.Option([], "--module", "-M", help="Module that registers daemons"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run a daemon."""
    setup_logging(verbose)
    _prepare(module, config)

    cfg = _load_config_or_exit(config)
    settings = _settings_or_exit(
        cfg,
        route,
        demonize=demonize or None,
        multi_instance=multi_instance or None,
        max_child_processes=max_child_processes,
        verbose=verbose or None,
    )

    try:
        daemon = registry.create(route, settings)
    except UnknownDaemonError:
        console.print(f"[red]Unknown daemon: {process_name(route)}[/red]")
        known = ", ".join(registry.names())
        console.print(f"Registered daemons: {known}")
        raise typer.Exit(1)

    raise typer.Exit(int(daemon.run()))


@app.command("stop")
def stop_daemon(
    route: str = typer.Argument(..., help="Daemon route"),
    force: bool = typer.Option(False, "--force", help="Send SIGKILL right away"),
    timeout: int = typer.Option(60, "--timeout", "-t", help="Shutdown timeout in seconds"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Stop a running daemon."""
    name = process_name(route)
    settings = _settings_or_exit(_load_config_or_exit(config), route)
    pid = PidFileManager(settings.pid_dir).owner_if_alive(name)
    if not pid:
        console.print(f"[yellow]Daemon {name} is not running[/yellow]")
        raise typer.Exit(1)

    if force:
        try:
            os.kill(pid, signal.SIGKILL)
            console.print(f"[green]✓ Daemon {name} killed[/green]")
        except ProcessLookupError:
            console.print("[yellow]Daemon process not found[/yellow]")
        return

    console.print(f"[blue]Stopping daemon {name} (PID: {pid})...[/blue]")

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        console.print("[yellow]Daemon process not found[/yellow]")
        return

    start = time.time()
    while time.time() - start < timeout:
        if not is_process_running(pid):
            console.print(f"[green]✓ Daemon {name} stopped[/green]")
            return
        time.sleep(0.5)

    console.print("[yellow]Daemon did not stop gracefully, force killing...[/yellow]")
    try:
        os.kill(pid, signal.SIGKILL)
        console.print(f"[green]✓ Daemon {name} killed[/green]")
    except ProcessLookupError:
        pass


@app.command("status")
def daemon_status(
    route: str = typer.Argument(..., help="Daemon route"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Show daemon status."""
    name = process_name(route)
    settings = _settings_or_exit(_load_config_or_exit(config), route)
    pid = PidFileManager(settings.pid_dir).owner_if_alive(name)

    if not pid:
        console.print(f"[red]○ Daemon {name} is not running[/red]")
        raise typer.Exit(1)

    console.print(f"[green]● Daemon {name} is running (PID: {pid})[/green]")

    try:
        proc = psutil.Process(pid)
        uptime = datetime.now() - datetime.fromtimestamp(proc.create_time())
        mem = proc.memory_info().rss / (1024 * 1024)
        children = len(proc.children())

        console.print(f"  Uptime: {uptime}")
        console.print(f"  Memory: {mem:.1f} MB")
        console.print(f"  Child processes: {children}")
    except psutil.Error as e:
        console.print(f"  [yellow]No process details: {e}[/yellow]")


@app.command("list")
def list_daemons(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    module: list[str] = typer.Option([], "--module", "-M", help="Module that registers daemons"),
) -> None:
    """List registered daemons and whether they are running."""
    _prepare(module, config)
    cfg = _load_config_or_exit(config)
    watched = {job.name: job for job in cfg.watch}

    table = Table(title="Daemons")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("PID")
    table.add_column("Watched")

    for name in registry.names():
        settings = _settings_or_exit(cfg, name)
        pid = PidFileManager(settings.pid_dir).owner_if_alive(name)
        status = "[green]running[/green]" if pid else "[dim]stopped[/dim]"
        job = watched.get(name)
        if job is None:
            watch = "-"
        else:
            watch = "enabled" if job.enabled else "disabled"
        table.add_row(name, status, str(pid or "-"), watch)

    console.print(table)


@app.command("init")
def init_config(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Create a default configuration file."""
    path = resolve_config_path(config)
    if path.exists():
        console.print(f"[yellow]Config already exists at {path}[/yellow]")
        raise typer.Exit(1)

    cfg = ProcDaemonConfig(
        defaults={"sleep": 5, "memory_limit": "256MB", "max_child_processes": 10},
        watch=[Job(name="example.daemon", enabled=False)],
    )
    save_config(cfg, path)
    console.print(f"[green]✓ Created config at {path}[/green]")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"procdaemon v{__version__}")


if __name__ == "__main__":
    app()
