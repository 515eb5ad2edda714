"""CLI for the N8N backup tool (Typer + Rich)."""

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt
from rich.table import Table

from n8n_backup.archive import parse_archive_timestamp
from n8n_backup.backup import run_backup
from n8n_backup.compose import ComposeRunner
from n8n_backup.config import BackupConfig, DatabaseKind
from n8n_backup.cron import install_cron
from n8n_backup.database import mask_credentials
from n8n_backup.errors import BackupError, CommandError, ExtractionError
from n8n_backup.logging import configure_logging
from n8n_backup.notify import TelegramNotifier
from n8n_backup.restore import Restorer, RestoreRequest, RestoreSource
from n8n_backup.retention import local_archives
from n8n_backup.storage import RemoteEntry, create_remote_store
from n8n_backup.utils import format_age, format_size

app = typer.Typer(
    name="n8n-backup",
    help="Backup and restore for self-hosted N8N.",
    no_args_is_help=True,
)
console = Console()

REMOTE_SOURCE = "remote"


def _load_config() -> BackupConfig:
    """Load config, reading a local .env first for manual runs."""
    load_dotenv()
    return BackupConfig.from_env()


def _create_notifier(config: BackupConfig) -> TelegramNotifier | None:
    if not config.telegram_enabled:
        return None
    return TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id)


def _print_failure(action: str, error: BackupError) -> None:
    console.print(f"[red]{action} failed at step '{error.step}':[/] {error}")
    if isinstance(error, (ExtractionError, CommandError)) and error.output:
        console.print(error.output, markup=False, highlight=False)


# ── backup ──────────────────────────────────────────────────────────────


@app.command()
def backup(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Run a full backup: snapshot, archive, retention, transport."""
    config = _load_config()
    configure_logging(config.log_file, verbose)

    remote = create_remote_store(config)
    notifier = _create_notifier(config)
    try:
        result = run_backup(config, remote=remote, notifier=notifier)
    except BackupError as e:
        _print_failure("Backup", e)
        raise typer.Exit(1)
    finally:
        if notifier is not None:
            notifier.close()

    lines = [
        f"[bold]Archive:[/]   {result.archive}",
        f"[bold]Size:[/]      {format_size(result.size_bytes)}",
        f"[bold]Database:[/]  {result.database_kind.value}",
        f"[bold]Pruned:[/]    {len(result.deleted_local)} local, {result.deleted_remote} remote",
    ]
    if result.uploaded:
        lines.append(f"[bold]Uploaded:[/]  {result.uploaded}")
    if notifier is not None:
        lines.append(f"[bold]Telegram:[/]  {'file + status' if result.telegram_file_sent else 'status only'}")
    for warning in result.warnings:
        lines.append(f"[yellow]WARN[/] {warning}")

    title = "[green]Backup Complete[/]" if result.clean else "[yellow]Backup Complete (with warnings)[/]"
    console.print(Panel("\n".join(lines), title=title))


# ── restore ─────────────────────────────────────────────────────────────


def _retarget(config: BackupConfig, target: Path) -> BackupConfig:
    """Point the config at another install dir, keeping the data dir layout."""
    try:
        data_rel = config.data_dir.relative_to(config.install_dir)
    except ValueError:
        data_rel = Path("files")
    return replace(config, install_dir=target, data_dir=target / data_rel)


def _parse_source(source: str) -> RestoreRequest:
    if source == REMOTE_SOURCE:
        return RestoreRequest(source=RestoreSource.remote_name)
    if source.startswith(f"{REMOTE_SOURCE}:"):
        return RestoreRequest(source=RestoreSource.remote_name, location=source.split(":", 1)[1])
    return RestoreRequest(source=RestoreSource.local_path, location=source)


def _remote_table(entries: list[RemoteEntry], title: str) -> Table:
    table = Table(title=title)
    table.add_column("#", style="dim", width=4)
    table.add_column("Filename")
    table.add_column("Size", justify="right")
    table.add_column("Date")

    for i, entry in enumerate(entries, 1):
        table.add_row(
            str(i),
            entry.name,
            format_size(entry.size) if entry.size is not None else "-",
            entry.modified.strftime("%Y-%m-%d %H:%M UTC") if entry.modified else "-",
        )
    return table


def _choose(entries: list[RemoteEntry]) -> int:
    console.print(_remote_table(entries, "Select a backup to restore"))
    return IntPrompt.ask("\nSelect backup number", default=1)


@app.command()
def restore(
    source: Annotated[
        str,
        typer.Option("--source", "-s", help="Local .tar.gz path, 'remote' to pick from the remote, or 'remote:<name>'"),
    ],
    select: Annotated[
        Optional[int], typer.Option("--select", help="Remote archive number (1 = newest)")
    ] = None,
    target: Annotated[
        Optional[Path], typer.Option("--target", "-t", help="Install dir to restore into")
    ] = None,
    start: Annotated[bool, typer.Option("--start", help="docker compose up -d after restoring")] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Restore an install from a backup archive."""
    config = _load_config()
    if target is not None:
        config = _retarget(config, target)
    configure_logging(config.log_file, verbose)

    request = _parse_source(source)
    request.select = select
    remote = create_remote_store(config) if request.source is RestoreSource.remote_name else None

    console.print(f"Source:   [bold]{source}[/]")
    console.print(f"Target:   [bold]{config.install_dir}[/]")
    if not yes and not Confirm.ask("\n[yellow]This will overwrite data. Continue?[/]"):
        console.print("Aborted.")
        raise typer.Exit(0)

    restorer = Restorer(config, compose=ComposeRunner(config.install_dir), remote=remote)
    try:
        report = restorer.run(request, choose=_choose, start=start)
    except BackupError as e:
        _print_failure("Restore", e)
        raise typer.Exit(1)

    lines = [
        f"[bold]Archive:[/]   {report.archive.name}",
        f"[bold]Database:[/]  {report.database_kind.value}",
        f"[bold]Restored:[/]  {len(report.restored)} file(s)",
    ]
    for bak in report.backups:
        lines.append(f"[dim]kept {bak}[/]")
    console.print(Panel("\n".join(lines), title="[green]Restore Complete[/]"))


# ── list ────────────────────────────────────────────────────────────────


@app.command("list")
def list_backups(
    remote: Annotated[bool, typer.Option("--remote", "-r", help="List the remote store instead")] = False,
) -> None:
    """List available backups, newest first."""
    config = _load_config()

    if remote:
        store = create_remote_store(config)
        if store is None:
            console.print("[red]Error:[/] No remote store configured")
            raise typer.Exit(1)
        try:
            with console.status(f"Listing {store.label}..."):
                entries = store.list_archives()
        except BackupError as e:
            console.print(f"[red]Error:[/] {e}")
            raise typer.Exit(1)
        if not entries:
            console.print("[yellow]No backups found.[/]")
            return
        console.print(_remote_table(entries, f"Backups in {store.label}"))
        return

    archives = local_archives(config.backup_dir)
    if not archives:
        console.print("[yellow]No backups found.[/]")
        return

    table = Table(title=f"Backups in {config.backup_dir}")
    table.add_column("#", style="dim", width=4)
    table.add_column("Filename")
    table.add_column("Size", justify="right")
    table.add_column("Date")
    table.add_column("Age", style="dim")

    for i, path in enumerate(archives, 1):
        created = parse_archive_timestamp(path.name)
        table.add_row(
            str(i),
            path.name,
            format_size(path.stat().st_size),
            created.strftime("%Y-%m-%d %H:%M UTC"),
            format_age(created),
        )

    console.print(table)


# ── status ──────────────────────────────────────────────────────────────


@app.command()
def status() -> None:
    """Show configuration and the latest local backup."""
    config = _load_config()

    lines = []
    lines.append(f"[bold]Install Dir:[/]    {config.install_dir}")
    lines.append(f"[bold]Backup Dir:[/]     {config.backup_dir}")
    lines.append(f"[bold]Log File:[/]       {config.log_file}")
    lines.append("")
    lines.append(f"[bold]Database:[/]       {config.database_kind.value}")
    if config.database_kind is DatabaseKind.postgres:
        lines.append(f"  {mask_credentials(config.postgres)}")
    else:
        lines.append(f"  {config.data_dir / 'database.sqlite'}")

    lines.append("")
    lines.append(f"[bold]Local Retention:[/]  newest {config.max_local_backups}")
    if config.remote_enabled:
        store = create_remote_store(config)
        lines.append(f"[bold]Remote:[/]         {store.label}")
        lines.append(f"[bold]Remote Retention:[/] {config.remote_retention_days} days")
    else:
        lines.append("[bold]Remote:[/]         [dim](not configured)[/]")
    lines.append(f"[bold]Telegram:[/]       {'enabled' if config.telegram_enabled else '[dim]disabled[/]'}")
    lines.append(f"[bold]Cron Schedule:[/]  {config.cron_schedule}")

    archives = local_archives(config.backup_dir)
    lines.append("")
    if archives:
        latest = archives[0]
        created = parse_archive_timestamp(latest.name)
        lines.append(f"[bold]Last Backup:[/]   {latest.name} ({format_age(created)})")
    else:
        lines.append("[bold]Last Backup:[/]   [dim]never[/]")
    lines.append(f"[bold]Total Backups:[/] {len(archives)}")

    console.print(Panel("\n".join(lines), title="N8N Backup Status"))


# ── schedule ────────────────────────────────────────────────────────────


@app.command()
def schedule(
    cron: Annotated[
        Optional[str], typer.Option("--schedule", "-s", help="Cron schedule (default from env)")
    ] = None,
) -> None:
    """Install the daily backup job into the crontab."""
    config = _load_config()
    log_file = config.install_dir / "logs" / "cron.log"
    try:
        line = install_cron(cron or config.cron_schedule, [sys.executable, "-m", "n8n_backup", "backup"], log_file)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    except BackupError as e:
        _print_failure("Schedule", e)
        raise typer.Exit(1)
    console.print(f"[green]Cron job installed:[/] {line}")
