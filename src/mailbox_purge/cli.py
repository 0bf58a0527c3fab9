"""CLI entry point for Mailbox Purge."""

from __future__ import annotations

import json

import click

from .auth import CredentialProvider, build_gmail_service
from .config import get_settings
from .display import (
    confirm_purge,
    console,
    create_progress,
    display_purge_plan,
    display_purge_result,
    display_scan_history,
    display_scan_summary,
    display_senders,
)
from .exceptions import MailboxPurgeError
from .logging_setup import configure_logging
from .models import RetentionAction, ScanRecord, ScanStatus, SenderAction
from .purger import execute_purge, parse_sender_actions
from .scanner import ScanOrchestrator
from .store import ScanStore

_ACTION_CHOICES = [a.value for a in RetentionAction if a is not RetentionAction.SKIP]

owner_option = click.option(
    "--owner",
    default=None,
    help="Mailbox owner id (default: settings default_owner).",
)


def _resolve_owner(owner: str | None) -> str:
    return owner or get_settings().default_owner


def _credential_provider() -> CredentialProvider:
    settings = get_settings()
    return CredentialProvider(settings.token_dir, settings.credentials_path)


def _owned_scan(store: ScanStore, scan_id: str, owner: str) -> ScanRecord:
    scan = store.get_scan(scan_id)
    if scan is None or scan.owner != owner:
        raise click.ClickException(f"Scan {scan_id} not found.")
    return scan


@click.group()
@click.version_option(version="0.1.0", prog_name="mailbox-purge")
@click.option("-v", "--verbose", is_flag=True, help="Show pipeline log events.")
def cli(verbose: bool) -> None:
    """Mailbox Purge - find senders you never read and clear them out of Gmail."""
    configure_logging("DEBUG" if verbose else "WARNING")


@cli.command()
@owner_option
def auth(owner: str | None) -> None:
    """Authorize Gmail access for an owner and store the token."""
    owner = _resolve_owner(owner)
    try:
        _credential_provider().authorize(owner)
    except FileNotFoundError as e:
        raise click.ClickException(str(e)) from e
    console.print(f"[green]Stored Gmail authorization for {owner}.[/green]")


@cli.command()
@owner_option
@click.option("--rescan", is_flag=True, help="Delete this owner's previous scans first.")
def scan(owner: str | None, rescan: bool) -> None:
    """Scan the mailbox and summarize senders."""
    owner = _resolve_owner(owner)
    settings = get_settings()

    with ScanStore(settings.db_path) as store:
        orchestrator = ScanOrchestrator(
            store, _credential_provider(), service_factory=build_gmail_service, settings=settings
        )
        # A scan still in progress here was left behind by a killed CLI run.
        orchestrator.recover_interrupted(owner)
        try:
            scan_id = orchestrator.start_scan(owner, rescan=rescan)
        except MailboxPurgeError as e:
            orchestrator.shutdown()
            raise click.ClickException(str(e)) from e

        with create_progress("Scanning") as progress:
            task = progress.add_task("scan", total=100, message="Starting scan...")

            def on_update(record: ScanRecord) -> None:
                progress.update(task, completed=record.progress, message=record.progress_message)

            unsubscribe = store.subscribe(scan_id, on_update)
            try:
                record = orchestrator.wait(scan_id)
            finally:
                unsubscribe()
                orchestrator.shutdown()

    if record is None:
        raise click.ClickException(f"Scan {scan_id} disappeared.")
    display_scan_summary(record)
    if record.status is ScanStatus.FAILED:
        raise SystemExit(1)


@cli.command()
@owner_option
def history(owner: str | None) -> None:
    """List previous scans."""
    owner = _resolve_owner(owner)
    with ScanStore(get_settings().db_path) as store:
        scans = store.list_scans(owner)

    if not scans:
        console.print("[dim]No scans yet. Run 'scan' first.[/dim]")
        return
    display_scan_history(scans)


@cli.command()
@click.argument("scan_id")
@owner_option
@click.option("--min-unopened", default=0.0, type=click.FloatRange(0, 100), help="Minimum unopened percentage.")
@click.option("--limit", default=50, type=int, help="Maximum senders to show.")
def senders(scan_id: str, owner: str | None, min_unopened: float, limit: int) -> None:
    """Show the senders of a scan, most unopened first."""
    owner = _resolve_owner(owner)
    with ScanStore(get_settings().db_path) as store:
        _owned_scan(store, scan_id, owner)
        summaries = store.list_sender_summaries(scan_id, min_unopened=min_unopened)

    if not summaries:
        console.print("[dim]No senders left in this scan.[/dim]")
        return
    display_senders(summaries, limit=limit)


@cli.command()
@click.argument("scan_id")
@owner_option
@click.option("--plan", type=click.File("r"), help="JSON list of {sender_email, action, unsubscribe}.")
@click.option("-s", "--sender", "sender_emails", multiple=True, help="Sender address (repeatable).")
@click.option("--action", type=click.Choice(_ACTION_CHOICES), default="delete_all", help="Retention action for --sender.")
@click.option("--unsubscribe", is_flag=True, help="Also unsubscribe from each --sender.")
@click.option("--execute", is_flag=True, help="Actually trash messages (default is dry-run).")
def purge(
    scan_id: str,
    owner: str | None,
    plan,
    sender_emails: tuple[str, ...],
    action: str,
    unsubscribe: bool,
    execute: bool,
) -> None:
    """Trash mail from selected senders of a scan."""
    owner = _resolve_owner(owner)
    settings = get_settings()

    if plan is not None:
        try:
            actions = parse_sender_actions(json.load(plan))
        except (json.JSONDecodeError, MailboxPurgeError) as e:
            raise click.ClickException(f"Invalid plan: {e}") from e
    else:
        actions = [
            SenderAction(sender_email=s.strip().lower(), action=RetentionAction(action), unsubscribe=unsubscribe)
            for s in sender_emails
        ]
    if not actions:
        raise click.ClickException("No senders given. Use --sender or --plan.")

    with ScanStore(settings.db_path) as store:
        _owned_scan(store, scan_id, owner)
        summaries = {s.sender_email: s for s in store.list_sender_summaries(scan_id)}
        display_purge_plan(actions, summaries)

        if not execute:
            console.print(
                "\n[yellow][DRY RUN] No messages were trashed. "
                "Use --execute to actually trash messages.[/yellow]"
            )
            return

        if not confirm_purge(actions):
            console.print("[dim]Cancelled.[/dim]")
            return

        try:
            creds = _credential_provider().get_credentials(owner)
            result = execute_purge(
                store,
                build_gmail_service(creds),
                scan_id,
                actions,
                owner=owner,
                attempts=settings.gmail_retry_attempts,
                unsubscribe_timeout=settings.unsubscribe_timeout,
            )
        except MailboxPurgeError as e:
            raise click.ClickException(str(e)) from e

    display_purge_result(result)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Interface to bind.")
@click.option("--port", default=8000, type=int, help="Port to listen on.")
def serve(host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=host, port=port)
