"""
Deadline Scheduler — earliest-deadline-first settlement of ledgers.

Every ledger registers its deadline here when it is opened. The scheduler
answers "is anything due", hands out the earliest-due entry, and executes
it: the entry is marked done and the ledger is closed, which settles it.

Entries are indexed by a min-heap keyed on (deadline, registration order),
so ties go to the ledger registered first and registration and execution
stay O(log N). Executed entries are never deleted; they remain in the
registration log for audit. The heap drops them lazily.

Each entry executes at most once. A second ``execute`` of the same entry
fails with ``AlreadyExecuted`` and never touches the ledger again.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from ballotbox.voting.errors import AlreadyExecuted, NotDueYet
from ballotbox.voting.schema import LedgerState, SettlementOutcome

if TYPE_CHECKING:
    from ballotbox.voting.ledger import VotingLedger

logger = logging.getLogger(__name__)


@dataclass
class ScheduleEntry:
    """A ledger's registered deadline and whether it has been settled."""

    ledger: VotingLedger
    deadline: datetime
    sequence: int
    done: bool = False
    executed_at: datetime | None = None
    outcome: SettlementOutcome | None = field(default=None, repr=False)


class DeadlineScheduler:
    """
    Registry of (ledger, deadline) pairs with earliest-deadline-first execution.

    Usage:
        scheduler = DeadlineScheduler()
        scheduler.register(ledger, ledger.deadline)
        ...
        while (entry := scheduler.poll_due(now)) is not None:
            scheduler.execute(entry, now)
    """

    def __init__(self) -> None:
        self._entries: list[ScheduleEntry] = []
        self._heap: list[tuple[datetime, int, ScheduleEntry]] = []
        self._sequence = itertools.count()
        self._next_wake: datetime | None = None

    @property
    def next_wake_time(self) -> datetime | None:
        """Earliest deadline among entries not yet done; None if none remain."""
        return self._next_wake

    def register(self, ledger: VotingLedger, deadline: datetime) -> ScheduleEntry:
        """Add an entry for ``ledger`` due at ``deadline``."""
        entry = ScheduleEntry(ledger=ledger, deadline=deadline, sequence=next(self._sequence))
        self._entries.append(entry)
        heapq.heappush(self._heap, (entry.deadline, entry.sequence, entry))

        if self._next_wake is None or deadline < self._next_wake:
            self._next_wake = deadline

        logger.info(
            "Deadline registered: ledger=%s deadline=%s",
            str(ledger.id)[:8], deadline.isoformat(),
        )
        return entry

    def is_due(self, now: datetime) -> bool:
        """True iff some entry not yet done has a deadline at or before ``now``."""
        if self._next_wake is None or now < self._next_wake:
            return False
        return self.poll_due(now) is not None

    def poll_due(self, now: datetime) -> ScheduleEntry | None:
        """Return the earliest-deadline entry that is due and not done, if any."""
        self._discard_done()
        if not self._heap:
            return None
        deadline, _, entry = self._heap[0]
        return entry if deadline <= now else None

    def execute(self, entry: ScheduleEntry, now: datetime) -> SettlementOutcome:
        """
        Settle ``entry``'s ledger.

        The entry is re-validated first, so a stale or duplicate invocation
        changes nothing. A ledger that was already closed by hand is not
        closed again; the entry is simply marked done with the ledger's
        current outcome.

        Raises:
            AlreadyExecuted: The entry is already done.
            NotDueYet: ``now`` is before the entry's deadline.
        """
        if entry.done:
            raise AlreadyExecuted(
                f"Schedule entry for ledger {entry.ledger.id} already executed "
                f"at {entry.executed_at.isoformat() if entry.executed_at else 'unknown'}"
            )
        if now < entry.deadline:
            raise NotDueYet(
                f"Ledger {entry.ledger.id} is due at {entry.deadline.isoformat()}"
            )

        entry.done = True
        entry.executed_at = now

        ledger = entry.ledger
        try:
            if ledger.state == LedgerState.OPEN:
                outcome = ledger.close(now)
            else:
                logger.info(
                    "Ledger %s was already closed; marking schedule entry done",
                    str(ledger.id)[:8],
                )
                outcome = ledger.outcome()
        finally:
            entry.outcome = ledger.outcome()
            self._discard_done()
            self._next_wake = self._heap[0][0] if self._heap else None

        logger.info(
            "Schedule entry executed: ledger=%s status=%s next_wake=%s",
            str(ledger.id)[:8],
            outcome.status.value,
            self._next_wake.isoformat() if self._next_wake else "none",
        )
        return outcome

    def run_due(self, now: datetime) -> list[SettlementOutcome]:
        """
        Execute every due entry in earliest-deadline-first order.

        A ledger whose settlement raises is logged and reported with the
        outcome it was left in; the remaining due entries still run.
        """
        outcomes = []
        while (entry := self.poll_due(now)) is not None:
            try:
                outcomes.append(self.execute(entry, now))
            except Exception:
                logger.exception(
                    "Settlement failed for ledger %s; continuing with remaining entries",
                    str(entry.ledger.id)[:8],
                )
                outcomes.append(entry.outcome)
        return outcomes

    def entries(self) -> list[ScheduleEntry]:
        """Every entry ever registered, in registration order."""
        return list(self._entries)

    def pending_entries(self) -> list[ScheduleEntry]:
        return [e for e in self._entries if not e.done]

    def entry_for(self, ledger_id: UUID) -> ScheduleEntry | None:
        return next((e for e in self._entries if e.ledger.id == ledger_id), None)

    # ── Internal ────────────────────────────────────────────────

    def _discard_done(self) -> None:
        while self._heap and self._heap[0][2].done:
            heapq.heappop(self._heap)
