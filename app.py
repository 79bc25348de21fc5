#!/usr/bin/env python3
"""
resticflow command line application
Restic backup and multi-repository maintenance orchestrator
"""
import json
import logging
import socket
from pathlib import Path
from typing import Callable, Dict, List, Optional

import typer
from rich.table import Table

from config import (
    ConfigLoader,
    ContextStore,
    build_targets,
    copy_targets,
    list_config_files,
    resolve_active_backend,
)
from models.errors import ResticflowError
from models.repository import PRIMARY, RepositoryTarget
from models.settings import Settings
from models.workflow import CommandOptions, WorkflowPolicy
from services.console import ConsoleReporter
from services.deep_check import STATE_ERRORS, DeepCheckTracker
from services.env_export import SHELLS, export_environment
from services.logging_setup import configure_logging
from services.maintenance import MaintenanceContext, MaintenanceOrchestrator
from services.notification_service import Notifier
from services.paths import AppPaths
from services.process_lock import ProcessLock
from services.restic import ResticExecutor, get_restic_version

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="resticflow",
    help="Restic backup orchestration across a primary and any number of mirror repositories.",
    invoke_without_command=True,
    add_completion=False,
)
backend_app = typer.Typer(help="Manage backend selection")
config_app = typer.Typer(help="Manage configuration files")
app.add_typer(backend_app, name="backend")
app.add_typer(config_app, name="config")
app.add_typer(config_app, name="context", help="Alias of the config command group")


class AppServices:
    """Container for shared application services, initialized once per invocation"""

    def __init__(self, config_path: str = "", dry_run: bool = False, verbose: bool = False,
                 backend: str = "", json_output: bool = False,
                 engine_factory: Optional[Callable[[RepositoryTarget], object]] = None):
        self.config_path = config_path
        self.dry_run = dry_run
        self.verbose = verbose
        self.backend = backend
        self.json_output = json_output
        self.engine_factory = engine_factory
        self.reporter = ConsoleReporter()
        self.paths = AppPaths()
        self.loader = ConfigLoader(self.paths)
        self.settings: Optional[Settings] = None
        self.primary: Optional[RepositoryTarget] = None
        self.backends: Dict[str, RepositoryTarget] = {}
        self.active: Optional[RepositoryTarget] = None

    def initialize(self, require_directories: bool = False) -> Settings:
        """Load configuration and logging once"""
        if self.settings is not None:
            return self.settings
        self.settings = self.loader.load(self.config_path, require_directories=require_directories)
        configure_logging(self.settings.logging, self.verbose)
        for alternate in self.loader.alternate_paths:
            logger.info(f"Ignoring alternate config file {alternate}")

        self.primary, self.backends = build_targets(self.settings)
        active_name = self.backend or self.loader.context_store.load().active_backend
        self.active = resolve_active_backend(active_name, self.backends)
        return self.settings

    @property
    def selected(self) -> RepositoryTarget:
        return self.active or self.primary

    def engine(self, target: RepositoryTarget):
        if self.engine_factory is not None:
            return self.engine_factory(target)
        return ResticExecutor(
            target,
            dry_run=self.dry_run,
            binary=self.settings.restic_binary,
            cross_account_schemes=self.settings.cross_account_schemes,
        )

    def orchestrator(self, require_directories: bool = False, notify_success: bool = False) -> MaintenanceOrchestrator:
        settings = self.initialize(require_directories)
        context = MaintenanceContext(
            settings=settings,
            primary=self.primary,
            secondaries=copy_targets(settings, self.backends),
            backends=self.backends,
            active=self.active,
            dry_run=self.dry_run,
            engine_factory=self.engine,
            tracker_factory=lambda location: DeepCheckTracker(location, self.paths.state_dir),
            notifier=Notifier(settings.notifications, force_success=notify_success),
            reporter=self.reporter,
            process_lock=ProcessLock(self.paths.lock_file),
        )
        return MaintenanceOrchestrator(context)


def _services(ctx: typer.Context) -> AppServices:
    return ctx.obj


def _run(ctx: typer.Context, action: Callable[[], object]) -> None:
    """Run a command body, turning resticflow errors into exit code 1"""
    services = _services(ctx)
    try:
        action()
    except ResticflowError as e:
        services.reporter.error(str(e))
        raise typer.Exit(code=1)


# =============================================================================
# **DEFAULT WORKFLOW**
# =============================================================================

@app.callback()
def main_callback(
    ctx: typer.Context,
    config: str = typer.Option("", "--config", "-c", help="Config file (default: ~/.config/resticflow/config.yaml)"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Perform a trial run with no changes made"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    backend: str = typer.Option("", "--backend", "-b", help="Operate on this backend instead of the active one"),
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format"),
    prune: bool = typer.Option(False, "--prune", "-p", help="Also run prune after forget"),
    check: bool = typer.Option(False, "--check", help="Also run repository check"),
    deep: bool = typer.Option(False, "--deep", help="Run deep check (implies --check)"),
    no_backup: bool = typer.Option(False, "--no-backup", help="Skip backup operation"),
    no_forget: bool = typer.Option(False, "--no-forget", help="Skip forget operation"),
    no_prune: bool = typer.Option(False, "--no-prune", help="Skip prune operation"),
    no_check: bool = typer.Option(False, "--no-check", help="Skip check operation"),
    no_copy: bool = typer.Option(False, "--no-copy", help="Skip copy to secondary backends"),
    tag: str = typer.Option("", "--tag", "-t", help="Add extra tag to backup"),
    notify_success: bool = typer.Option(False, "--notify-success", help="Send notification on success"),
    copy_all: bool = typer.Option(False, "--copy-all", "--all-hosts", help="Process snapshots from all hosts"),
    no_hooks: bool = typer.Option(False, "--no-hooks", help="Skip all hooks"),
):
    """Without a subcommand: backup, forget, optional prune/check, then copy to every copy backend."""
    # ctx.obj may carry AppServices overrides such as engine_factory
    ctx.obj = AppServices(config, dry_run, verbose, backend, json_output, **(ctx.obj or {}))
    if ctx.invoked_subcommand is not None:
        return

    services = _services(ctx)

    def workflow():
        orchestrator = services.orchestrator(require_directories=not no_backup, notify_success=notify_success)
        if not services.dry_run and not orchestrator.engine(services.primary).is_initialized():
            raise ResticflowError("repository is not initialized. Run 'resticflow init' first")
        options = CommandOptions(tag=tag, dry_run=dry_run, deep=deep, all_hosts=copy_all,
                                 no_hooks=no_hooks, notify_success=notify_success)
        policy = WorkflowPolicy.default(
            prune=prune, check=check or deep, no_backup=no_backup, no_forget=no_forget,
            no_prune=no_prune, no_check=no_check, no_copy=no_copy,
            verify_locks=services.settings.verify_no_locks,
        )
        orchestrator.run_workflow(options, policy)

    _run(ctx, workflow)


# =============================================================================
# **MAINTENANCE COMMANDS**
# =============================================================================

@app.command()
def full(
    ctx: typer.Context,
    tag: str = typer.Option("", "--tag", "-t", help="Add extra tag to backup"),
    deep: bool = typer.Option(False, "--deep", help="Force deep check on all backends"),
    all_hosts: bool = typer.Option(False, "--all-hosts", help="Process snapshots from all hosts"),
    no_hooks: bool = typer.Option(False, "--no-hooks", help="Skip all hooks"),
):
    """Backup + forget + prune + check on primary AND all copy backends."""
    services = _services(ctx)
    options = CommandOptions(tag=tag, dry_run=services.dry_run, deep=deep, all_hosts=all_hosts, no_hooks=no_hooks)
    _run(ctx, lambda: services.orchestrator(require_directories=True).full(options))


@app.command()
def backup(
    ctx: typer.Context,
    tag: str = typer.Option("", "--tag", "-t", help="Add extra tag to backup"),
    no_hooks: bool = typer.Option(False, "--no-hooks", help="Skip all hooks"),
):
    """Back up the configured directories to the primary repository."""
    services = _services(ctx)
    options = CommandOptions(tag=tag, dry_run=services.dry_run, no_hooks=no_hooks)
    _run(ctx, lambda: services.orchestrator(require_directories=True).backup(options))


@app.command()
def forget(
    ctx: typer.Context,
    primary_only: bool = typer.Option(False, "--primary-only", help="Only the primary repository"),
    all_hosts: bool = typer.Option(False, "--all-hosts", help="Apply to snapshots from all hosts"),
):
    """Apply the retention policy to the primary and every copy backend."""
    services = _services(ctx)
    options = CommandOptions(dry_run=services.dry_run, primary_only=primary_only, all_hosts=all_hosts)
    _run(ctx, lambda: services.orchestrator().forget(options))


@app.command()
def prune(
    ctx: typer.Context,
    primary_only: bool = typer.Option(False, "--primary-only", help="Only the primary repository"),
):
    """Remove unreferenced data from the primary and every copy backend."""
    services = _services(ctx)
    options = CommandOptions(dry_run=services.dry_run, primary_only=primary_only)
    _run(ctx, lambda: services.orchestrator().prune(options))


@app.command()
def check(
    ctx: typer.Context,
    primary_only: bool = typer.Option(False, "--primary-only", help="Only the primary repository"),
    deep: bool = typer.Option(False, "--deep", help="Read all data (--read-data)"),
    subset: str = typer.Option("", "--subset", help="Read a subset of data, e.g. 1/5 or 10%"),
):
    """Verify repository integrity; deep checks run automatically once per interval."""
    services = _services(ctx)
    options = CommandOptions(dry_run=services.dry_run, primary_only=primary_only, deep=deep, read_data_subset=subset)
    _run(ctx, lambda: services.orchestrator().check(options))


@app.command()
def copy(
    ctx: typer.Context,
    snapshot_ids: Optional[List[str]] = typer.Argument(None, help="Snapshot IDs to copy (default: all)"),
    to: Optional[List[str]] = typer.Option(None, "--to", help="Target backend (repeatable)"),
    all_hosts: bool = typer.Option(False, "--all", "--all-hosts", help="Copy snapshots from all hosts"),
):
    """Copy snapshots from the primary to copy backends."""
    services = _services(ctx)
    options = CommandOptions(dry_run=services.dry_run, all_hosts=all_hosts)
    _run(ctx, lambda: services.orchestrator().copy(options, to=to or None, snapshot_ids=snapshot_ids or None))


@app.command()
def init(
    ctx: typer.Context,
    backend: str = typer.Option("", "--backend", help="Initialize only this backend"),
    all_backends: bool = typer.Option(False, "--all", help="Initialize primary and every backend"),
):
    """Initialize repositories; copy backends reuse the primary's chunker parameters."""
    services = _services(ctx)
    _run(ctx, lambda: services.orchestrator().init(backend=backend, all_backends=all_backends))


@app.command()
def unlock(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Remove without confirmation"),
    restic: bool = typer.Option(False, "--restic", help="Also remove restic repository locks"),
    all_backends: bool = typer.Option(False, "--all-backends", help="Unlock every configured backend"),
):
    """Remove the local process lock and optionally repository locks."""
    services = _services(ctx)
    _run(ctx, lambda: services.orchestrator().unlock(
        force=force, restic=restic, all_backends=all_backends, confirm=typer.confirm))


# =============================================================================
# **QUERY COMMANDS**
# =============================================================================

def _query_targets(services: AppServices, all_backends: bool) -> List[RepositoryTarget]:
    if all_backends:
        return [services.primary] + list(services.backends.values())
    return [services.selected]


@app.command()
def snapshots(
    ctx: typer.Context,
    all_hosts: bool = typer.Option(False, "--all", help="Show snapshots from all hosts"),
    latest: bool = typer.Option(False, "--latest", help="Show only the latest snapshot"),
    all_backends: bool = typer.Option(False, "--all-backends", help="Show snapshots from all backends"),
):
    """List snapshots."""
    services = _services(ctx)

    def show():
        services.initialize()
        host = "" if all_hosts else socket.gethostname()
        for target in _query_targets(services, all_backends):
            engine = services.engine(target)
            if latest:
                snapshot = engine.get_latest_snapshot()
                records = [snapshot] if snapshot else []
            else:
                records = engine.list_snapshots(hostname=host)
            if services.json_output:
                typer.echo(json.dumps([s.model_dump(mode='json') for s in records], indent=2))
                continue
            table = Table(title=f"{target.name} ({target.location})")
            for column in ("ID", "Time", "Host", "Tags", "Paths"):
                table.add_column(column)
            for s in records:
                table.add_row(s.short_id or s.id[:8], f"{s.time:%Y-%m-%d %H:%M:%S}", s.hostname,
                              ", ".join(s.tags), ", ".join(s.paths))
            services.reporter.console.print(table)
            services.reporter.line(f"{len(records)} snapshot(s)")

    _run(ctx, show)


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{size} B"


@app.command()
def stats(
    ctx: typer.Context,
    all_backends: bool = typer.Option(False, "--all-backends", help="Show stats for all backends"),
):
    """Show repository statistics."""
    services = _services(ctx)

    def show():
        services.initialize()
        for target in _query_targets(services, all_backends):
            result = services.engine(target).get_stats()
            if services.json_output:
                typer.echo(json.dumps({'backend': target.name, **result.model_dump()}))
                continue
            services.reporter.line(f"\n┌─ {target.name.upper()}")
            services.reporter.line(f"│ Total Size:  {format_bytes(result.total_size)}")
            services.reporter.line(f"│ Total Files: {result.total_file_count}")
            services.reporter.line("└─────────────────────────")

    _run(ctx, show)


@app.command()
def locks(
    ctx: typer.Context,
    all_backends: bool = typer.Option(False, "--all-backends", help="Check every configured backend"),
):
    """Show repository locks, separating this host's from other hosts'."""
    services = _services(ctx)

    def show():
        services.initialize()
        hostname = socket.gethostname()
        for target in _query_targets(services, all_backends):
            result = services.engine(target).verify_no_stale_locks(hostname)
            if services.json_output:
                typer.echo(result.model_dump_json())
                continue
            if result.has_own_locks:
                services.reporter.warning(f"{target.name}: {len(result.own_host_locks)} lock(s) held by this host")
            else:
                services.reporter.success(f"{target.name}: no locks held by this host")
            if result.has_other_locks:
                services.reporter.info(f"{target.name}: {len(result.other_host_locks)} lock(s) from other hosts")

    _run(ctx, show)


@app.command()
def env(
    ctx: typer.Context,
    shell: str = typer.Option("bash", "--shell", "-s", help=f"Output format: {', '.join(SHELLS)}"),
):
    """Print shell exports for the active backend, e.g. eval "$(resticflow env)"."""
    services = _services(ctx)

    def show():
        services.initialize()
        typer.echo(export_environment(services.selected, shell), nl=False)

    _run(ctx, show)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(ctx: typer.Context):
    """Run any restic command with the active backend's credentials."""
    services = _services(ctx)
    args = list(ctx.args)

    def passthrough():
        if not args:
            raise ResticflowError("no restic command given (example: resticflow run snapshots)")
        services.initialize()
        code = services.engine(services.selected).run_streaming(args)
        if code != 0:
            raise typer.Exit(code=code)

    _run(ctx, passthrough)


@app.command()
def status(ctx: typer.Context):
    """Show process lock and deep check status."""
    services = _services(ctx)

    def show():
        settings = services.initialize()
        lock = ProcessLock(services.paths.lock_file)
        if lock.is_locked():
            services.reporter.warning(f"Lock file: {lock.path}")
            services.reporter.line(f"   PID: {lock.get_pid()}")
            services.reporter.line(f"   Status: {lock.process_status()}")
        else:
            services.reporter.info("No active lock")

        for target in [services.primary] + copy_targets(settings, services.backends):
            tracker = DeepCheckTracker(target.location, services.paths.state_dir)
            try:
                last = tracker.last_check()
                when = f"{last:%Y-%m-%d %H:%M}" if last else "never"
            except STATE_ERRORS as e:
                logger.warning(f"Could not read deep check state {tracker.path}: {e}")
                when = "unknown (unreadable state file)"
            due_in = tracker.days_until_next(settings.deep_check_interval_days)
            next_due = f"in {due_in} day(s)" if due_in else "on next check"
            services.reporter.line(f"{target.name}: last deep check {when}, due {next_due}")

    _run(ctx, show)


@app.command()
def info(ctx: typer.Context):
    """Show a summary of the loaded configuration."""
    services = _services(ctx)

    def show():
        settings = services.initialize()
        reporter = services.reporter
        context = services.loader.context_store.load()
        reporter.banner("RESTICFLOW CONFIGURATION")

        reporter.section("📁 Configuration Source")
        if context.config_file:
            reporter.line("  ⚡ Context active: yes")
        reporter.line(f"  File:   {services.loader.loaded_path}")
        reporter.line(f"  Source: {services.loader.loaded_source}")

        reporter.section("🗄️  Primary Repository")
        reporter.line(f"  Repository: {settings.repository}")
        reporter.line(f"  Password:   {'configured' if settings.password else 'not set (check RESTIC_PASSWORD env)'}")
        if any(services.primary.uses_scheme(scheme) for scheme in settings.cross_account_schemes):
            keys = "configured" if settings.aws_access_key_id else "not set (check environment)"
            reporter.line(f"  AWS Keys:   {keys}")

        reporter.section("📂 Backup Directories")
        if not settings.directories:
            reporter.warning("No directories configured")
        for directory in settings.directories:
            missing = "" if Path(directory).exists() else " (not found)"
            reporter.line(f"  • {directory}{missing}")

        reporter.section("🚫 Exclusions")
        if settings.exclude_file:
            reporter.line(f"  Exclude file: {settings.exclude_file}")
        if settings.exclude_patterns:
            reporter.line(f"  Patterns: {len(settings.exclude_patterns)} configured")
            for pattern in settings.exclude_patterns[:5]:
                reporter.line(f"    • {pattern}")
            if len(settings.exclude_patterns) > 5:
                reporter.line(f"    ... and {len(settings.exclude_patterns) - 5} more")
        elif not settings.exclude_file:
            reporter.line("  No exclusions configured")

        reporter.section("🕐 Retention Policy")
        retention = settings.retention
        if retention.keep_within:
            reporter.line(f"  Keep within:  {retention.keep_within}")
        for label, count in (("hourly", retention.keep_hourly), ("daily", retention.keep_daily),
                             ("weekly", retention.keep_weekly), ("monthly", retention.keep_monthly),
                             ("yearly", retention.keep_yearly)):
            if count > 0:
                reporter.line(f"  Keep {label + ':':<9}{count}")

        reporter.section("💾 Secondary Backends")
        if not settings.backends:
            reporter.line("  No secondary backends configured")
        for name, backend in settings.backends.items():
            if name in settings.copy_to_backends:
                reporter.line(f"  ✓ {name} (auto-copy enabled)")
            else:
                reporter.line(f"  • {name}")
            reporter.line(f"    {backend.repository}")
        if settings.copy_to_backends:
            reporter.line(f"  Auto-copy to: {', '.join(settings.copy_to_backends)}")

        reporter.section("🔍 Deep Check")
        if settings.deep_check_interval_days > 0:
            reporter.line(f"  Interval: every {settings.deep_check_interval_days} days")
        else:
            reporter.line("  Disabled (interval = 0)")

        if settings.default_tags:
            reporter.section("🏷️  Default Tags")
            reporter.line(f"  {', '.join(settings.default_tags)}")

        reporter.section("🪝 Hooks")
        hooks = settings.hooks
        configured = [(label, path) for label, path in (
            ("Pre-backup: ", hooks.pre_backup), ("Post-backup:", hooks.post_backup),
            ("On error:   ", hooks.on_error), ("On success: ", hooks.on_success)) if path]
        for label, path in configured:
            reporter.line(f"  {label} {path}")
        if not configured:
            reporter.line("  No hooks configured")

        reporter.section("🔔 Notifications")
        notifications = settings.notifications
        if notifications.enabled:
            reporter.line("  Status: enabled")
            reporter.line(f"  On success: {'yes' if notifications.notify_on_success else 'no'}")
            reporter.line(f"  On error:   {'yes' if notifications.notify_on_error else 'no'}")
            if notifications.providers:
                reporter.line("  Providers:")
                for provider in notifications.providers:
                    reporter.line(f"    • {provider.type}")
        else:
            reporter.line("  Status: disabled")

        reporter.section("📝 Logging")
        log = settings.logging
        if log.file:
            reporter.line(f"  File:      {log.file}")
            reporter.line(f"  Level:     {log.level}")
            reporter.line(f"  Max size:  {log.max_size_mb} MB")
            reporter.line(f"  Max files: {log.max_files}")
            reporter.line(f"  Console:   {'yes' if log.console else 'no'}")
            reporter.line(f"  JSON:      {'yes' if log.json_format else 'no'}")
        else:
            reporter.line("  No log file configured")

    _run(ctx, show)


@app.command()
def version():
    """Show version information."""
    typer.echo(f"resticflow {__version__}")
    try:
        typer.echo(get_restic_version())
    except ResticflowError:
        typer.echo("restic: not found")


# =============================================================================
# **BACKEND & CONFIG SELECTION**
# =============================================================================

@backend_app.command("list")
def backend_list(ctx: typer.Context):
    """List available backends."""
    services = _services(ctx)

    def show():
        settings = services.initialize()
        active = services.selected.name
        for target in [services.primary] + list(services.backends.values()):
            marker = "→" if target.name == active else " "
            suffix = " (active)" if target.name == active else ""
            copy_flag = " [copy]" if target.name in settings.copy_to_backends else ""
            services.reporter.line(f"{marker} {target.name}{suffix}{copy_flag}")
            services.reporter.line(f"     Repository: {target.location}")

    _run(ctx, show)


@backend_app.command("use")
def backend_use(ctx: typer.Context, name: str = typer.Argument(..., help="Backend name or 'primary'")):
    """Set the active backend."""
    services = _services(ctx)

    def select():
        services.initialize()
        if name != PRIMARY:
            resolve_active_backend(name, services.backends)
        ContextStore(services.paths).set_active_backend(name)
        services.reporter.success(f"Active backend set to {name}")

    _run(ctx, select)


@config_app.command("use")
def config_use(ctx: typer.Context, path: str = typer.Argument(..., help="Config file to use by default")):
    """Remember a config file for later invocations."""
    services = _services(ctx)

    def select():
        services.loader.load(path, require_directories=False)
        ContextStore(services.paths).set_config_file(path)
        services.reporter.success(f"Using config file {path}")

    _run(ctx, select)


@config_app.command("init")
def config_init(ctx: typer.Context, path: str = typer.Argument("", help="Where to write the example config")):
    """Write an example config file with secure permissions."""
    services = _services(ctx)

    def write():
        destination = Path(path).expanduser() if path else services.paths.config_candidates()[0]
        services.loader.write_example(destination)
        services.reporter.success(f"Example configuration written to {destination}")

    _run(ctx, write)


@config_app.command("reset")
def config_reset(ctx: typer.Context):
    """Forget the remembered config file and active backend."""
    services = _services(ctx)
    ContextStore(services.paths).reset()
    services.reporter.success("Context reset")


@config_app.command("list")
def config_list(ctx: typer.Context):
    """List config files in the user and system config directories."""
    services = _services(ctx)
    reporter = services.reporter
    current = services.loader.context_store.load().config_file
    files = list_config_files(services.paths)

    reporter.section("📋 Available Configurations")
    if not files:
        reporter.line("  No configuration files found")
        reporter.line("  Create one with: resticflow config init")
    for path in files:
        if current and str(path.resolve()) == current:
            reporter.line(f"  → {path} (active)")
        else:
            reporter.line(f"    {path}")


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Show the remembered config file and active backend."""
    services = _services(ctx)
    context = services.loader.context_store.load()
    services.reporter.section("🔧 Current Context")
    services.reporter.line(f"  Config:  {context.config_file or '(default)'}")
    services.reporter.line(f"  Backend: {context.active_backend or PRIMARY}")


def main():
    app()


if __name__ == "__main__":
    main()
