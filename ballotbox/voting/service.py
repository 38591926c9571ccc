"""
Voting Service — opens ledgers and wires them to their collaborators.

A ledger is opened and its deadline registered with the scheduler in the
same step. The service owns the shared rights registry, the randomness
source and the audit recorder, and it routes randomness fulfilments back to
the ledger that asked for them.

It also applies the stuck-randomness policy: a request left unanswered for
longer than the timeout is reissued, up to a maximum number of attempts,
after which the ledger is flagged ``randomness_stalled`` for an operator.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from ballotbox.voting.clock import Clock, SystemClock
from ballotbox.voting.errors import UnknownLedger, UnknownOrStaleRequest
from ballotbox.voting.ledger import VotingLedger
from ballotbox.voting.randomness import LocalRandomnessSource, RandomnessSource
from ballotbox.voting.rights import InMemoryRightsRegistry, RightsRegistry
from ballotbox.voting.scheduler import DeadlineScheduler
from ballotbox.voting.schema import (
    AuditEventType,
    Principal,
    SelectionMode,
    SettlementOutcome,
    SettlementStatus,
)

logger = logging.getLogger(__name__)


class _RoutedRandomness:
    """
    Forwards ledger requests to the real source and remembers who asked.

    Only each ledger's latest request is routed; a new request replaces the
    one it abandons.
    """

    def __init__(self, source: RandomnessSource) -> None:
        self.source = source
        self.routes: dict[UUID, UUID] = {}

    def connect(self, callback: Any) -> None:
        self.source.connect(callback)

    def request(self, ledger_id: UUID) -> UUID:
        request_id = self.source.request(ledger_id)
        self.routes = {r: l for r, l in self.routes.items() if l != ledger_id}
        self.routes[request_id] = ledger_id
        return request_id

    def drop(self, request_id: UUID) -> None:
        self.routes.pop(request_id, None)


class VotingService:
    """
    Manages the lifecycle of voting ledgers.

    Usage:
        service = VotingService(recorder=audit_trail)
        ledger = service.open_ledger("Favorite Language", total_options=3)
        service.cast_vote(ledger.id, "alice", 2)
        ...
        service.run_due()                  # closes ledgers whose deadline passed
        service.check_stale_requests()     # reissues or flags stuck draws
    """

    def __init__(
        self,
        rights: RightsRegistry | None = None,
        randomness: RandomnessSource | None = None,
        scheduler: DeadlineScheduler | None = None,
        clock: Clock | None = None,
        recorder: Any = None,
        default_voting_hours: int = 24,
        randomness_timeout_seconds: int = 3600,
        randomness_max_attempts: int = 3,
        rights_transferable: bool = True,
    ) -> None:
        """
        Args:
            rights: Voting-right registry shared by all ledgers.
            randomness: Source for weighted-lottery draws.
            scheduler: Deadline scheduler settling the ledgers.
            clock: Current-time source.
            recorder: Optional AuditTrail receiving every event.
            default_voting_hours: Voting period when no deadline is given.
            randomness_timeout_seconds: Age at which a pending request is stale.
            randomness_max_attempts: Requests per ledger before it is flagged stalled.
            rights_transferable: Whether the default registry issues transferable rights.
        """
        self.clock = clock or SystemClock()
        self.recorder = recorder
        self.rights = rights or InMemoryRightsRegistry(
            transferable=rights_transferable, clock=self.clock, recorder=recorder,
        )
        self.randomness = randomness or LocalRandomnessSource()
        self.scheduler = scheduler or DeadlineScheduler()
        self.default_voting_hours = default_voting_hours
        self.randomness_timeout = timedelta(seconds=randomness_timeout_seconds)
        self.randomness_max_attempts = randomness_max_attempts

        self._router = _RoutedRandomness(self.randomness)
        self._router.connect(self.fulfill_randomness)
        self.ledgers: dict[UUID, VotingLedger] = {}

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> VotingService:
        """Build a service from a BallotSettings instance."""
        kwargs = {
            "default_voting_hours": settings.default_voting_hours,
            "randomness_timeout_seconds": settings.randomness_timeout_seconds,
            "randomness_max_attempts": settings.randomness_max_attempts,
            "rights_transferable": settings.rights_transferable,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    # ── Ledger lifecycle ────────────────────────────────────────

    def open_ledger(
        self,
        name: str,
        total_options: int,
        description: str = "",
        duration_hours: float | None = None,
        deadline: datetime | None = None,
        random_winner: bool = False,
    ) -> VotingLedger:
        """
        Open a ledger and register its deadline with the scheduler.

        Args:
            name: Display name.
            total_options: Number of options (≥ 2).
            description: Display description.
            duration_hours: Voting period from now. Defaults to the service's
                default voting period. Ignored when ``deadline`` is given.
            deadline: Explicit timezone-aware deadline.
            random_winner: Draw the winner by weighted lottery instead of plurality.

        Returns:
            The new, Open ledger.
        """
        if deadline is None:
            hours = self.default_voting_hours if duration_hours is None else duration_hours
            deadline = self.clock.now() + timedelta(hours=hours)

        ledger = VotingLedger(
            name=name,
            description=description,
            total_options=total_options,
            deadline=deadline,
            mode=SelectionMode.WEIGHTED_LOTTERY if random_winner else SelectionMode.DETERMINISTIC,
            rights=self.rights,
            randomness=self._router,
            clock=self.clock,
            recorder=self.recorder,
        )
        self.ledgers[ledger.id] = ledger
        self.scheduler.register(ledger, ledger.deadline)

        logger.info(
            "Ledger opened: %s '%s' options=%d mode=%s deadline=%s",
            str(ledger.id)[:8], name[:80], total_options,
            ledger.mode.value, deadline.isoformat(),
        )
        if self.recorder is not None:
            self.recorder.append(
                event_type=AuditEventType.LEDGER_OPENED,
                ledger_id=ledger.id,
                actor="service",
                content=ledger.snapshot().model_dump(mode="json"),
            )
        return ledger

    def get_ledger(self, ledger_id: UUID) -> VotingLedger:
        ledger = self.ledgers.get(ledger_id)
        if ledger is None:
            raise UnknownLedger(f"Ledger {ledger_id} not found")
        return ledger

    def list_open_ledgers(self) -> list[VotingLedger]:
        return [ledger for ledger in self.ledgers.values() if ledger.is_open]

    def list_all_ledgers(self) -> list[VotingLedger]:
        return list(self.ledgers.values())

    def latest_ledger(self) -> VotingLedger | None:
        """The most recently opened ledger."""
        return next(reversed(self.ledgers.values()), None)

    # ── Voting ──────────────────────────────────────────────────

    def cast_vote(self, ledger_id: UUID, principal: Principal, option: int) -> None:
        self.get_ledger(ledger_id).cast(principal, option)

    def change_vote(self, ledger_id: UUID, principal: Principal, new_option: int) -> None:
        self.get_ledger(ledger_id).change_vote(principal, new_option)

    def clear_vote(self, ledger_id: UUID, principal: Principal) -> None:
        self.get_ledger(ledger_id).clear_vote(principal)

    def transfer_right(self, ledger_id: UUID, from_: Principal, to: Principal) -> None:
        """Hand ``from_``'s voting right to ``to``; an Open ledger moves the choice too."""
        self.get_ledger(ledger_id)
        self.rights.transfer(ledger_id, from_, to)

    def has_voting_right(self, principal: Principal, ledger_id: UUID) -> bool:
        return self.rights.has_voting_right(principal, ledger_id)

    # ── Settlement ──────────────────────────────────────────────

    def is_due(self, now: datetime | None = None) -> bool:
        return self.scheduler.is_due(now or self.clock.now())

    def run_due(self, now: datetime | None = None) -> list[SettlementOutcome]:
        """Close and settle every ledger whose deadline has passed."""
        return self.scheduler.run_due(now or self.clock.now())

    def fulfill_randomness(self, request_id: UUID, value: int) -> SettlementOutcome:
        """
        Deliver a random value to the ledger that requested it.

        Raises:
            UnknownOrStaleRequest: The request id was never issued by this
                service, was superseded by a reissue, or was already consumed.
        """
        ledger_id = self._router.routes.get(request_id)
        if ledger_id is None:
            logger.warning("Fulfilment for unknown request %s rejected", str(request_id)[:8])
            raise UnknownOrStaleRequest(f"Request {request_id} was not issued by this service")
        try:
            outcome = self.ledgers[ledger_id].fulfill_randomness(request_id, value, self.clock.now())
        except UnknownOrStaleRequest:
            self._router.drop(request_id)
            raise
        self._router.drop(request_id)
        return outcome

    def open_requests(self) -> dict[UUID, UUID]:
        """Request ids this service still accepts fulfilments for, mapped to their ledger."""
        return dict(self._router.routes)

    def check_stale_requests(self, now: datetime | None = None) -> list[SettlementOutcome]:
        """
        Reissue or flag randomness requests older than the timeout, and retry
        Closed ledgers whose settlement never produced a request or a winner.

        A ledger that fails again is logged and skipped; the others are
        still processed.

        Returns:
            Outcomes of every ledger acted on.
        """
        now = now or self.clock.now()
        outcomes = []
        for ledger in self.ledgers.values():
            try:
                outcome = self._check_ledger(ledger, now)
            except Exception:
                logger.exception("Stale check failed for ledger %s", str(ledger.id)[:8])
                outcome = ledger.outcome()
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def _check_ledger(self, ledger: VotingLedger, now: datetime) -> SettlementOutcome | None:
        if ledger.needs_settlement:
            if (
                ledger.settlement_status == SettlementStatus.REQUEST_FAILED
                and ledger.request_attempts >= self.randomness_max_attempts
            ):
                return ledger.mark_randomness_stalled(now)
            return ledger.retry_settlement(now)

        pending = ledger.pending_request
        if pending is None or ledger.settlement_status != SettlementStatus.AWAITING_RANDOMNESS:
            return None
        if now - pending.issued_at < self.randomness_timeout:
            return None

        if ledger.request_attempts < self.randomness_max_attempts:
            logger.warning(
                "Randomness request timed out, reissuing: ledger=%s attempt=%d/%d",
                str(ledger.id)[:8], ledger.request_attempts + 1,
                self.randomness_max_attempts,
            )
            return ledger.reissue_randomness_request(now)
        return ledger.mark_randomness_stalled(now)

    def stalled_ledgers(self) -> list[VotingLedger]:
        """Ledgers waiting on an operator because the randomness source went quiet."""
        return [
            ledger for ledger in self.ledgers.values()
            if ledger.settlement_status == SettlementStatus.RANDOMNESS_STALLED
        ]
