"""Command line interface for mailsync."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .audit import AuditLogger
from .config import ConfigurationError, ConfigurationManager, MailSyncConfig, SecretsManager
from .errors import (
    AccountNotFoundError,
    FolderDeletionError,
    FolderNotFoundError,
    MailSyncError,
)
from .models import Account, PassOutcome, TransportSecurity
from .orchestrator.daemon import MailSyncDaemon, MailSyncRuntime

console = Console()
error_console = Console(stderr=True)

cli = typer.Typer(help="Mailbox synchronization service")
account_app = typer.Typer(help="Account management commands")
config_app = typer.Typer(help="Configuration commands")
audit_app = typer.Typer(help="Audit log commands")
cli.add_typer(account_app, name="account")
cli.add_typer(config_app, name="config")
cli.add_typer(audit_app, name="audit")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@cli.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to mailsync.yaml"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Logging level"),
) -> None:
    """Configure logging and remember which configuration file to use."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    ctx.obj = ConfigurationManager(config_path)


def _load_config(ctx: typer.Context) -> MailSyncConfig:
    manager: ConfigurationManager = ctx.obj
    try:
        return manager.load()
    except ConfigurationError as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)


def _runtime(ctx: typer.Context) -> MailSyncRuntime:
    return MailSyncRuntime.from_config(_load_config(ctx))


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@account_app.command("add")
def add_account(
    ctx: typer.Context,
    account_id: str = typer.Option(..., "--id", help="Account identifier"),
    host: str = typer.Option(..., "--host", "-h", help="IMAP hostname"),
    username: str = typer.Option(..., "--username", "-u", help="Login name"),
    port: int = typer.Option(993, "--port", "-p", help="IMAP port"),
    security: TransportSecurity = typer.Option(TransportSecurity.SSL, "--security", help="ssl, starttls or none"),
    secret_ref: Optional[str] = typer.Option(None, "--secret-ref", help="Secret reference (defaults to the account id)"),
    password: Optional[str] = typer.Option(None, "--password", help="Store this password in the OS keychain"),
    interval: int = typer.Option(180, "--interval", "-i", help="Seconds between passes"),
) -> None:
    """Register an account in the local store."""
    try:
        account = Account(
            id=account_id,
            host=host,
            port=port,
            security=security,
            username=username,
            secret_ref=secret_ref or account_id,
            sync_interval_seconds=interval,
        )
    except ValueError as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)

    if password:
        try:
            SecretsManager().set_secret(account.secret_ref, password)
        except RuntimeError as exc:
            error_console.print(f"Error: {exc}")
            raise typer.Exit(1)

    runtime = _runtime(ctx)
    try:
        runtime.store.save_account(account)
    finally:
        runtime.close()
    console.print(f"[bold green]✓ Account {account.id} saved[/bold green]")
    if not password:
        console.print(
            f"Credentials are read from ${SecretsManager.env_var_for(account.secret_ref)} "
            "or the OS keychain."
        )


@account_app.command("list")
def list_accounts(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List registered accounts and the status of their last pass."""
    runtime = _runtime(ctx)
    try:
        accounts = runtime.store.list_accounts()
    finally:
        runtime.close()

    if json_output:
        print(json.dumps([a.model_dump(mode="json") for a in accounts], indent=2))
        return
    if not accounts:
        console.print("[yellow]No accounts registered[/yellow]")
        return

    table = Table(title=f"Accounts ({len(accounts)} total)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Host", style="green")
    table.add_column("User", style="blue")
    table.add_column("Sync", style="yellow")
    table.add_column("Status", style="yellow")
    table.add_column("Last Sync", style="magenta")
    for account in accounts:
        table.add_row(
            account.id,
            f"{account.host}:{account.port}",
            account.username,
            "on" if account.enabled and account.sync_enabled else "off",
            account.status.value,
            account.last_sync.strftime("%Y-%m-%d %H:%M:%S") if account.last_sync else "never",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@cli.command("run")
def run_daemon(ctx: typer.Context) -> None:
    """Run the sync service until interrupted."""
    config = _load_config(ctx)

    async def _serve() -> None:
        runtime = MailSyncRuntime.from_config(config)
        try:
            await MailSyncDaemon(runtime).run()
        finally:
            runtime.close()

    console.print("[bold blue]Starting mailsync daemon (Ctrl+C to stop)[/bold blue]")
    asyncio.run(_serve())
    console.print("[bold green]✓ Daemon stopped[/bold green]")


@cli.command("sync")
def sync_account(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account to synchronize"),
    consistency: bool = typer.Option(False, "--consistency", help="Also run the consistency repair"),
) -> None:
    """Run one synchronization pass now."""
    runtime = _runtime(ctx)
    try:
        result = runtime.executor.run_pass(account_id, force_consistency=consistency)
    except AccountNotFoundError as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)
    finally:
        runtime.close()

    table = Table(title=f"Pass for {account_id}: {result.outcome.value}")
    table.add_column("Folder", style="cyan")
    table.add_column("Inserted", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Error", style="red")
    for folder in result.folders:
        table.add_row(
            folder.folder_path,
            str(folder.inserted),
            str(folder.updated),
            str(folder.soft_deleted),
            folder.error or "",
        )
    console.print(table)
    if result.new_unread:
        console.print(f"[bold yellow]{result.new_unread} new unread message(s)[/bold yellow]")
    if result.outcome in (PassOutcome.AUTH_FAILED, PassOutcome.FAILED):
        error_console.print(f"Error: {result.error}")
        raise typer.Exit(1)


@cli.command("check")
def check_consistency(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account to check"),
) -> None:
    """Compare local folder counters with the server."""
    runtime = _runtime(ctx)
    try:
        report = runtime.control.run_consistency_check(account_id)
    except (AccountNotFoundError, MailSyncError) as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)
    finally:
        runtime.close()

    if report.is_consistent:
        console.print(f"[bold green]✓ {account_id}: {len(report.folders)} folder(s) consistent[/bold green]")
        return

    table = Table(title=f"Discrepancies for {account_id}")
    table.add_column("Folder", style="cyan")
    table.add_column("Local", justify="right")
    table.add_column("Remote", justify="right")
    table.add_column("Local Unread", justify="right")
    table.add_column("Remote Unread", justify="right")
    for item in report.discrepancies:
        table.add_row(
            item.folder_path,
            str(item.local_count),
            str(item.remote_count),
            str(item.local_unread),
            str(item.remote_unread),
        )
    console.print(table)
    for error in report.errors:
        error_console.print(f"Error: {error}")


@cli.command("repair")
def repair_consistency(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account to repair"),
) -> None:
    """Detect and repair counter drift for one account."""
    runtime = _runtime(ctx)
    try:
        summary = runtime.control.run_consistency_repair(account_id)
    except (AccountNotFoundError, MailSyncError) as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)
    finally:
        runtime.close()

    console.print(
        f"Checked {summary.folders_checked} folder(s), found {summary.discrepancies_found}, "
        f"fixed {summary.folders_fixed}, resynced {summary.emails_resynced} message(s)"
    )
    for error in summary.errors:
        error_console.print(f"Error: {error}")
    if summary.errors:
        raise typer.Exit(1)


@cli.command("sweep")
def consistency_sweep(ctx: typer.Context) -> None:
    """Run the consistency repair for every enabled account."""
    runtime = _runtime(ctx)
    try:
        summary = runtime.control.run_global_consistency_sweep()
    finally:
        runtime.close()
    console.print(f"{summary.successful_configs}/{summary.total_configs} account(s) repaired cleanly")
    for error in summary.errors:
        error_console.print(f"Error: {error}")
    if summary.errors:
        raise typer.Exit(1)


@cli.command("delete-folder")
def delete_folder(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account owning the folder"),
    folder_path: str = typer.Argument(..., help="Folder path"),
    local_only: bool = typer.Option(False, "--local-only", help="Do not delete the folder on the server"),
) -> None:
    """Delete an empty user folder."""
    runtime = _runtime(ctx)
    try:
        runtime.control.delete_folder(account_id, folder_path, remote=not local_only)
    except FolderNotFoundError:
        error_console.print(f"Error: Folder not found: {folder_path}")
        raise typer.Exit(1)
    except (FolderDeletionError, AccountNotFoundError, MailSyncError) as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1)
    finally:
        runtime.close()
    console.print(f"[bold green]✓ Folder {folder_path} deleted[/bold green]")


# ---------------------------------------------------------------------------
# Configuration and audit
# ---------------------------------------------------------------------------


@config_app.command("validate")
def validate_config(ctx: typer.Context) -> None:
    """Validate the configuration file."""
    manager: ConfigurationManager = ctx.obj
    errors = manager.validate()
    if errors:
        for error in errors:
            error_console.print(f"Error: {error}")
        raise typer.Exit(1)
    console.print(f"[bold green]✓ {manager.config_path} is valid[/bold green]")


@config_app.command("init")
def init_config(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write a configuration file holding the defaults."""
    manager: ConfigurationManager = ctx.obj
    if manager.config_path.exists() and not force:
        error_console.print(f"Error: {manager.config_path} already exists (use --force)")
        raise typer.Exit(1)
    manager.save(MailSyncConfig())
    console.print(f"[bold green]✓ Wrote {manager.config_path}[/bold green]")


@audit_app.command("verify")
def verify_audit(ctx: typer.Context) -> None:
    """Verify the hash chain of the audit log."""
    config = _load_config(ctx)
    audit_logger = AuditLogger(config.audit.output_dir)
    if not audit_logger.verify():
        error_console.print("Error: audit log chain is broken")
        raise typer.Exit(1)
    console.print("[bold green]✓ Audit log chain intact[/bold green]")


__all__ = ["cli"]
