"""Rich-based display functions for Mailbox Purge."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.prompt import Prompt
from rich.table import Table

from .aggregation import is_deletable
from .constants import DELETABLE_UNOPENED_PCT, SENDER_TABLE_LIMIT
from .models import PurgeResult, RetentionAction, ScanRecord, ScanStatus, SenderAction, SenderSummary
from .retention import deletion_count, estimate_savings

console = Console()

_STATUS_COLORS = {
    ScanStatus.PENDING: "dim",
    ScanStatus.IN_PROGRESS: "yellow",
    ScanStatus.COMPLETED: "green",
    ScanStatus.FAILED: "red",
}


def format_bytes(size: int) -> str:
    """Human-readable byte size, e.g. 1536 -> '1.5 KB'."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def _pct_color(pct: float) -> str:
    """Return a Rich color name based on the unopened percentage."""
    if pct >= DELETABLE_UNOPENED_PCT:
        return "red"
    if pct >= 50:
        return "yellow"
    return "green"


def create_progress(description: str) -> Progress:
    """Create a configured Rich Progress bar measured in percent."""
    return Progress(
        SpinnerColumn(),
        TextColumn(f"[bold blue]{description}"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.fields[message]}"),
        TimeElapsedColumn(),
        console=console,
    )


def display_scan_history(scans: list[ScanRecord]) -> None:
    """Display an owner's scans, newest first."""
    table = Table(title="Scan History")
    table.add_column("Scan ID")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Scanned", justify="right")
    table.add_column("Deletable", justify="right")
    table.add_column("Recoverable", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Recovered", justify="right")

    for scan in scans:
        color = _STATUS_COLORS[scan.status]
        status = scan.status.value
        if scan.status is ScanStatus.IN_PROGRESS:
            status = f"{status} ({scan.progress}%)"
        table.add_row(
            scan.id,
            scan.started_at.strftime("%Y-%m-%d %H:%M"),
            f"[{color}]{status}[/{color}]",
            str(scan.total_emails_scanned),
            f"{scan.deletable_mails} from {scan.deletable_senders} senders",
            format_bytes(scan.recoverable_space),
            f"{scan.mails_deleted} from {scan.senders_deleted} senders",
            format_bytes(scan.space_recovered),
        )

    console.print(table)


def display_scan_summary(scan: ScanRecord) -> None:
    """Display the outcome of a finished scan."""
    if scan.status is ScanStatus.FAILED:
        console.print(Panel(f"[bold red]{scan.progress_message}[/bold red]", title="Scan Failed"))
        return

    console.print(
        Panel(
            f"Scanned [bold]{scan.total_emails_scanned}[/bold] messages.\n"
            f"[bold]{scan.deletable_senders}[/bold] senders with {DELETABLE_UNOPENED_PCT:.0f}%+ unopened "
            f"sent [bold]{scan.deletable_mails}[/bold] messages "
            f"({format_bytes(scan.recoverable_space)}).",
            title=f"Scan {scan.id}",
        )
    )


def display_senders(summaries: list[SenderSummary], limit: int = SENDER_TABLE_LIMIT) -> None:
    """Display sender summaries with the savings each retention action would bring."""
    table = Table(title="Senders")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Email")
    table.add_column("Name")
    table.add_column("Emails", justify="right")
    table.add_column("Unopened", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Unsub", justify="center")
    table.add_column("Delete all saves", justify="right")

    shown = summaries[:limit]
    for idx, summary in enumerate(shown, start=1):
        color = _pct_color(summary.unopened_percentage)
        email = f"[bold]{summary.sender_email}[/bold]" if is_deletable(summary) else summary.sender_email
        table.add_row(
            str(idx),
            email,
            summary.sender_name or "",
            str(summary.total_emails),
            f"[{color}]{summary.unopened_percentage:.2f}%[/{color}]",
            format_bytes(summary.total_size_bytes),
            "yes" if summary.has_unsubscribe else "",
            format_bytes(estimate_savings(summary, RetentionAction.DELETE_ALL)),
        )

    console.print(table)
    if len(summaries) > len(shown):
        console.print(f"[dim]... and {len(summaries) - len(shown)} more senders[/dim]")


def display_purge_plan(actions: list[SenderAction], summaries: dict[str, SenderSummary]) -> int:
    """Show what a purge would do and return the estimated bytes freed."""
    table = Table(title="Purge Plan")
    table.add_column("Email")
    table.add_column("Action")
    table.add_column("Unsubscribe", justify="center")
    table.add_column("Deletes", justify="right")
    table.add_column("Est. savings", justify="right")

    total_savings = 0
    for action in actions:
        summary = summaries.get(action.sender_email)
        if summary is None:
            table.add_row(action.sender_email, action.action.value, "", "[dim]not in scan[/dim]", "")
            continue
        savings = estimate_savings(summary, action.action)
        total_savings += savings
        table.add_row(
            action.sender_email,
            action.action.value,
            "yes" if action.unsubscribe else "",
            f"{deletion_count(summary.total_emails, action.action)} of {summary.total_emails}",
            format_bytes(savings),
        )

    console.print(table)
    console.print(f"[bold]Estimated space recovered: {format_bytes(total_savings)}[/bold]")
    return total_savings


def confirm_purge(actions: list[SenderAction]) -> bool:
    """Prompt the user to confirm moving messages to Gmail Trash."""
    answer = Prompt.ask(
        f'[bold red]Type "PURGE" to apply {len(actions)} sender action(s)[/bold red]',
        console=console,
    )
    return answer == "PURGE"


def display_purge_result(result: PurgeResult) -> None:
    """Display a success summary after a purge."""
    console.print(
        Panel(
            f"[bold green]Moved {result.mails_deleted} messages from {result.senders_deleted} senders "
            f"to Trash ({format_bytes(result.space_recovered)}).[/bold green]",
            title="Done",
        )
    )
