import functools
import json
from pathlib import Path

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .backup_manager import BackupManager
from .config import AppSettings, default_schedule_path, default_settings_path, load_settings, save_settings
from .errors import TimeMachineError
from .models import BackupKind, FileTreeNode, ScheduleJob
from .schedule_store import ScheduleStore
from .scheduler import ScheduleEngine

console = Console()


def handle_errors(func):
    """Print typed errors and exit with their code."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        try:
            return func(*args, **kwargs)
        except TimeMachineError as e:
            console.print(f"❌ [bold red]{e}[/bold red]")
            ctx.exit(e.exit_code)

    return wrapper


def get_manager(ctx) -> BackupManager:
    return ctx.obj["manager"]


def get_engine(ctx) -> ScheduleEngine:
    manager = get_manager(ctx)
    return ScheduleEngine(ScheduleStore(ctx.obj["schedule_path"]), manager.run_scheduled_job)


@click.group()
@click.option("--settings", "-s", type=click.Path(path_type=Path), help="Settings file path")
@click.option("--schedule-file", type=click.Path(path_type=Path), help="Scheduled jobs file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, settings, schedule_file, verbose):
    logger.remove()
    logger.add(lambda msg: click.echo(msg, err=True, nl=False), level="DEBUG" if verbose else "WARNING")

    settings_path = settings or default_settings_path()
    ctx.ensure_object(dict)
    ctx.obj["settings_path"] = settings_path
    ctx.obj["schedule_path"] = schedule_file or default_schedule_path()
    ctx.obj.setdefault("manager", BackupManager(settings_loader=lambda: load_settings(settings_path)))


@cli.command("init-settings")
@click.option("--live-path", type=click.Path(path_type=Path), help="Home Assistant config directory")
@click.option("--backup-root", type=click.Path(path_type=Path), help="Where backups are stored")
@click.option("--mode", type=click.Choice(["history", "folder"]), help="Backup backend")
@click.pass_context
@handle_errors
def init_settings(ctx, live_path, backup_root, mode):
    """Create a settings file with default values."""
    settings_path = ctx.obj["settings_path"]
    if settings_path.exists():
        console.print(f"⚠️  Settings file already exists: [cyan]{settings_path}[/cyan]")
        return

    settings = AppSettings()
    changes = {}
    if live_path:
        changes["live_config_path"] = live_path
    if backup_root:
        changes["backup_root"] = backup_root
    if mode:
        changes["backend_mode"] = settings.backend_mode.parse(mode)
    save_settings(settings.replace(**changes), settings_path)
    console.print(f"📝 Created [cyan]{settings_path}[/cyan]")


@cli.command()
@click.argument("root", required=False, type=click.Path(path_type=Path))
@click.pass_context
@handle_errors
def scan(ctx, root):
    """List backup folders under the backup root."""
    refs = get_manager(ctx).scan(root)
    if not refs:
        console.print("No backups found")
        return

    table = Table(title="Backup Folders")
    table.add_column("Folder", style="cyan")
    table.add_column("Date", style="magenta")
    table.add_column("Path", style="white")
    for ref in sorted(refs, key=lambda r: (r.created_at, r.folder_name), reverse=True):
        table.add_row(ref.folder_name, ref.created_at.strftime("%Y-%m-%d %H:%M:%S"), str(ref.path))
    console.print(table)


@cli.command("write-now")
@click.option("--timezone", "-z", help="IANA timezone for the folder name")
@click.pass_context
@handle_errors
def write_now(ctx, timezone):
    """Take a manual backup now."""
    manager = get_manager(ctx)

    with Progress(
        SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console
    ) as progress:
        task = progress.add_task("Creating backup...", total=None)
        result = manager.backup_now(BackupKind.MANUAL, timezone=timezone)
        progress.update(task, description="Backup finished")

    if result.created:
        console.print(f"✅ Backup created at [bold green]{result.location}[/bold green]")
        if result.snapshot:
            console.print(f"📝 {result.snapshot.label}")
    else:
        console.print(f"ℹ️  {result.message}")

    console.print(f"Copied {len(result.copied_files)} files")
    if result.failed_files:
        console.print(f"[yellow]Failed to copy: {', '.join(result.failed_files)}[/yellow]")
    if result.pruned:
        console.print(f"🧹 Removed {len(result.pruned)} old backups")


@cli.command("list")
@click.option("--limit", "-n", default=20, help="Number of snapshots to show")
@click.pass_context
@handle_errors
def list_snapshots(ctx, limit):
    """Show snapshots, newest first."""
    snapshots = get_manager(ctx).list_snapshots()
    if not snapshots:
        console.print("No snapshots found")
        return

    table = Table(title="Backup History")
    table.add_column("ID", style="cyan")
    table.add_column("Date", style="magenta")
    table.add_column("Kind", style="green")
    table.add_column("Label", style="white")
    table.add_column("Tags", style="yellow")
    for snap in snapshots[:limit]:
        table.add_row(
            snap.id[:12] if len(snap.id) == 40 else snap.id,
            snap.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            snap.kind.value,
            snap.label or "-",
            ", ".join(snap.tags) if snap.tags else "-",
        )
    console.print(table)


@cli.command()
@click.argument("revision")
@click.argument("file_path", required=False)
@click.pass_context
@handle_errors
def diff(ctx, revision, file_path):
    """Diff a snapshot against the one before it."""
    output = get_manager(ctx).diff(revision, file_path)
    if not output:
        console.print("No differences")
        return
    click.echo(output, nl=False)


@cli.command("list-files")
@click.argument("revision")
@click.pass_context
@handle_errors
def list_files(ctx, revision):
    for path in get_manager(ctx).list_files(revision):
        click.echo(path)


def _add_tree_nodes(branch: Tree, nodes: list[FileTreeNode]):
    for node in nodes:
        label = f"{node.name}/" if node.is_dir else node.name
        style = "dim strike" if node.deleted else ("bold blue" if node.is_dir else "white")
        child = branch.add(Text(label, style=style))
        if node.is_dir:
            _add_tree_nodes(child, node.children)


@cli.command()
@click.argument("revision", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print the tree as JSON")
@click.pass_context
@handle_errors
def tree(ctx, revision, as_json):
    """Show the file tree, marking files deleted since they were backed up."""
    nodes = get_manager(ctx).tree(revision)
    if as_json:
        click.echo(json.dumps([node.to_dict() for node in nodes], indent=2))
        return

    root = Tree(revision or "latest")
    _add_tree_nodes(root, nodes)
    console.print(root)


@cli.command("show-file")
@click.argument("revision")
@click.argument("file_path")
@click.pass_context
@handle_errors
def show_file(ctx, revision, file_path):
    click.echo(get_manager(ctx).read_file(revision, file_path), nl=False)


def _print_restore(result, what: str):
    console.print(f"✅ Restored {what} to [bold cyan]{result.target}[/bold cyan]")
    if result.pre_restore and result.pre_restore.created:
        console.print(f"💾 Pre-restore backup saved at {result.pre_restore.location}")
    if result.reload_service:
        hint = "credentials configured" if result.credentials_configured else "no credentials configured"
        console.print(f"🔄 Call [bold]{result.reload_service}[/bold] to apply ({hint})")
    else:
        console.print("🔄 Restart Home Assistant to apply")


@cli.command("restore-file")
@click.argument("revision")
@click.argument("file_path")
@click.option("--destination", "-d", help="Target path relative to the live config directory")
@click.pass_context
@handle_errors
def restore_file(ctx, revision, file_path, destination):
    """Restore one file from a snapshot into the live config."""
    result = get_manager(ctx).restore_file(revision, file_path, destination)
    _print_restore(result, file_path)


@cli.command("list-items")
@click.argument("revision")
@click.argument("mode", type=click.Choice(["automations", "scripts"]))
@click.pass_context
@handle_errors
def list_items(ctx, revision, mode):
    items = get_manager(ctx).list_items(revision, mode)
    table = Table(title=f"{mode.capitalize()} in {revision}")
    table.add_column("ID", style="cyan")
    table.add_column("Alias", style="white")
    for item in items:
        table.add_row(str(item.get("id", "-")), str(item.get("alias", "-")))
    console.print(table)


@cli.command("restore-item")
@click.argument("revision")
@click.argument("mode", type=click.Choice(["automations", "scripts"]))
@click.argument("identifier")
@click.pass_context
@handle_errors
def restore_item(ctx, revision, mode, identifier):
    """Restore a single automation or script by id or alias."""
    result = get_manager(ctx).restore_item(revision, mode, identifier)
    _print_restore(result, f"{mode[:-1]} {identifier!r}")


@cli.command()
@click.pass_context
@handle_errors
def migrate(ctx):
    """Untrack legacy folder backups from the history store."""
    count = get_manager(ctx).migrate()
    if count:
        console.print(f"✅ Untracked {count} legacy backup folders")
    else:
        console.print("Nothing to migrate")


@cli.command()
@click.argument("keep", type=int)
@click.pass_context
@handle_errors
def prune(ctx, keep):
    """Delete all but the newest KEEP backups."""
    deleted = get_manager(ctx).prune(keep)
    console.print(f"🧹 Removed {len(deleted)} backups")
    for snapshot_id in deleted:
        console.print(f"  - {snapshot_id}", style="dim")


@cli.command()
@click.pass_context
@handle_errors
def stats(ctx):
    info = get_manager(ctx).stats()
    text = Text()
    for key, value in info.items():
        text.append(f"{key.replace('_', ' ').capitalize()}: {value}\n")
    console.print(Panel(text, title="Backup Statistics", expand=False))


@cli.command("validate-path")
@click.argument("path", type=click.Path(path_type=Path))
@click.pass_context
@handle_errors
def validate_path(ctx, path):
    """Check that PATH looks like a backup root."""
    if get_manager(ctx).validate_backup_root(path):
        console.print(f"✅ [green]{path}[/green] contains backups")
    else:
        console.print(f"❌ No backups found under [red]{path}[/red]")
        ctx.exit(2)


@cli.command("set-schedule")
@click.argument("job_id")
@click.argument("cron_expression")
@click.option("--timezone", "-z", help="IANA timezone the expression is evaluated in")
@click.option("--disabled", is_flag=True, help="Store the job without activating it")
@click.option("--source", help="Live config directory")
@click.option("--destination", help="Backup root")
@click.option("--keep", type=int, help="Keep only the newest N backups after each run")
@click.pass_context
@handle_errors
def set_schedule(ctx, job_id, cron_expression, timezone, disabled, source, destination, keep):
    job = ScheduleJob(
        id=job_id,
        cron_expression=cron_expression,
        timezone=timezone,
        enabled=not disabled,
        source_path=source,
        destination_path=destination,
        retention_enabled=keep is not None,
        retention_count=keep if keep is not None else 100,
    )
    get_engine(ctx).upsert(job)
    console.print(f"✅ Saved schedule [bold green]{job_id}[/bold green] ({cron_expression})")


@cli.command("remove-schedule")
@click.argument("job_id")
@click.pass_context
@handle_errors
def remove_schedule(ctx, job_id):
    if get_engine(ctx).remove(job_id):
        console.print(f"✅ Removed schedule [bold]{job_id}[/bold]")
    else:
        console.print(f"Schedule '{job_id}' not found")
        ctx.exit(2)


@cli.command("get-schedule")
@click.option("--json", "as_json", is_flag=True, help="Print the raw jobs document")
@click.pass_context
@handle_errors
def get_schedule(ctx, as_json):
    jobs = get_engine(ctx).jobs()
    if as_json:
        click.echo(json.dumps({"jobs": {job_id: job.to_json_dict() for job_id, job in jobs.items()}}, indent=2))
        return

    if not jobs:
        console.print("No scheduled jobs")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Cron", style="magenta")
    table.add_column("Timezone", style="white")
    table.add_column("Enabled", style="green")
    table.add_column("Keep", justify="right")
    for job in jobs.values():
        table.add_row(
            job.id,
            job.cron_expression,
            job.timezone or "local",
            "yes" if job.enabled else "no",
            str(job.retention_count) if job.retention_enabled else "-",
        )
    console.print(table)


@cli.command()
@click.pass_context
@handle_errors
def daemon(ctx):
    """Run scheduled backups and the file watcher in the foreground."""
    from .main import run_daemon_mode

    run_daemon_mode(get_manager(ctx), ScheduleStore(ctx.obj["schedule_path"]))


if __name__ == "__main__":
    cli()
