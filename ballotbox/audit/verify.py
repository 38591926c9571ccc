"""
Audit trail checker for ballotbox ledgers.

Replays the hash chain from genesis so that anyone holding a copy of the
database can confirm that no vote, right transfer or winner draw was
rewritten after it was recorded. With ``--ledger`` the report also lists
that ledger's history in order.

Usage:
    ballotbox-audit
    ballotbox-audit --database-url sqlite:///ballotbox_audit.db
    ballotbox-audit --ledger <ledger-uuid>
"""

from __future__ import annotations

import argparse
import sys
import time
from uuid import UUID

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ballotbox.audit.models import AuditEntryDB
from ballotbox.audit.trail import AuditTrail
from ballotbox.config import settings

console = Console()


def _history_table(entries: list[AuditEntryDB], title: str) -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Event", style="green")
    table.add_column("Ledger", style="magenta")
    table.add_column("Actor", style="yellow")
    table.add_column("Details")
    table.add_column("Hash", style="dim")

    for entry in entries:
        details = ", ".join(f"{k}={v}" for k, v in sorted(entry.content.items()))
        table.add_row(
            str(entry.sequence_number),
            entry.event_type,
            str(entry.ledger_id)[:8] if entry.ledger_id else "-",
            escape(entry.actor),
            escape(details[:60]),
            entry.entry_hash[:12],
        )
    return table


def run_audit(
    database_url: str,
    verbose: bool = False,
    ledger_id: UUID | None = None,
) -> bool:
    """
    Verify the audit chain stored at ``database_url`` and print a report.

    A database without an audit table, or with an empty one, has nothing to
    contradict and counts as valid.

    Args:
        database_url: SQLAlchemy connection string.
        verbose: List every entry in the trail.
        ledger_id: List only the events of this ledger.

    Returns:
        True if the chain is valid, False otherwise.
    """
    trail = AuditTrail(database_url)
    if not trail.is_initialized() or trail.get_entry_count() == 0:
        console.print(f"[yellow]No audit entries at {database_url}; nothing to verify[/yellow]")
        return True

    started = time.perf_counter()
    is_valid, verified, message = trail.verify_chain()
    elapsed = time.perf_counter() - started

    summary = Table.grid(padding=(0, 2))
    summary.add_row("Database", database_url)
    summary.add_row("Entries", str(trail.get_entry_count()))
    summary.add_row(
        "Chain",
        "[bold green]intact[/bold green]" if is_valid
        else f"[bold red]broken at entry {verified}[/bold red]",
    )
    summary.add_row("Detail", message)
    summary.add_row("Checked in", f"{elapsed:.3f}s")
    console.print(summary)

    if ledger_id is not None:
        console.print(_history_table(trail.get_entries_for_ledger(ledger_id), f"Ledger {ledger_id}"))
    elif verbose:
        entries = list(reversed(trail.get_latest_entries(limit=trail.get_entry_count())))
        console.print(_history_table(entries, "Audit trail"))

    return is_valid


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Verify a ballotbox audit trail")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to BALLOTBOX_DATABASE_URL / .env)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="List every entry")
    parser.add_argument("--ledger", type=UUID, default=None, help="List one ledger's events")
    args = parser.parse_args(argv)

    ok = run_audit(args.database_url or settings.database_url, args.verbose, args.ledger)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
