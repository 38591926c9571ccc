"""
Voting Ledger — one vote's record: options, tally, per-principal choices, state.

The ledger is a two-state machine:

    OPEN ──[close() once now ≥ deadline]──▶ CLOSED

While Open, principals cast, change and clear votes, and the rights registry
may move a recorded choice when a voting right changes hands. Closing is
one-shot and triggers settlement:

- Deterministic ledgers resolve their winner immediately (plurality).
- Weighted-lottery ledgers issue exactly one randomness request and resolve
  when the matching fulfilment arrives.

Invariants held at every step:
    tally[i] ≥ 0 for every option
    Σ tally[1..n] = number of principals with a non-zero choice
    choices are frozen once the ledger is Closed
    at most one randomness request is pending

Local state is always committed before any outbound call (rights grants,
randomness requests, audit records), so a collaborator calling back into the
ledger sees a consistent view.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from ballotbox.voting.clock import Clock, SystemClock
from ballotbox.voting.errors import (
    AlreadyExecuted,
    AlreadyVoted,
    InvalidLedgerConfig,
    InvalidOption,
    NoExistingVote,
    NotClosed,
    NotDueYet,
    NoVotesCast,
    NoVotingRight,
    RequestAlreadyPending,
    SameOption,
    UnknownOrStaleRequest,
    VoteClosed,
)
from ballotbox.voting.randomness import RandomnessSource
from ballotbox.voting.rights import RightsRegistry
from ballotbox.voting.schema import (
    AuditEventType,
    LedgerSnapshot,
    LedgerState,
    Principal,
    RandomnessRequest,
    SelectionMode,
    SettlementOutcome,
    SettlementStatus,
)
from ballotbox.voting.selector import select_winner

logger = logging.getLogger(__name__)

_FINAL_STATUSES = (SettlementStatus.RESOLVED, SettlementStatus.NO_VOTES)


class VotingLedger:
    """
    A single vote's persistent record.

    Usage:
        ledger = VotingLedger(
            name="Best Blockchain Platform",
            total_options=3,
            deadline=clock.now() + timedelta(hours=24),
            rights=registry,
        )
        ledger.cast("alice", 2)
        ledger.change_vote("alice", 1)
        ...
        outcome = ledger.close()   # once the deadline has passed
    """

    def __init__(
        self,
        name: str,
        total_options: int,
        deadline: datetime,
        description: str = "",
        mode: SelectionMode = SelectionMode.DETERMINISTIC,
        rights: RightsRegistry | None = None,
        randomness: RandomnessSource | None = None,
        clock: Clock | None = None,
        recorder: Any = None,
        ledger_id: UUID | None = None,
    ) -> None:
        """
        Open a ledger.

        Args:
            name: Display name, immutable.
            total_options: Number of options, at least 2. Options are 1-based.
            deadline: Timezone-aware instant after which the ledger may close.
            description: Display description, immutable.
            mode: Winner-selection mode.
            rights: Registry issuing voting rights on first vote. Without one,
                votes are recorded but no rights are tracked.
            randomness: Source for weighted-lottery draws. Required in that mode.
            clock: Current-time source used when no explicit time is passed.
            recorder: Optional audit trail receiving every ledger event.
            ledger_id: Explicit id; a fresh UUID is assigned otherwise.

        Raises:
            InvalidLedgerConfig: On an empty name, fewer than two options,
                a naive deadline, or weighted mode without a randomness source.
        """
        if not name or not name.strip():
            raise InvalidLedgerConfig("Ledger name must not be empty")
        if isinstance(total_options, bool) or not isinstance(total_options, int) or total_options < 2:
            raise InvalidLedgerConfig(
                f"A ledger needs at least 2 options, got {total_options!r}"
            )
        if deadline.tzinfo is None:
            raise InvalidLedgerConfig("Ledger deadline must be timezone-aware")
        if mode == SelectionMode.WEIGHTED_LOTTERY and randomness is None:
            raise InvalidLedgerConfig("Weighted-lottery ledgers need a randomness source")

        self._id = ledger_id or uuid4()
        self._name = name
        self._description = description
        self._total_options = total_options
        self._deadline = deadline
        self._mode = mode

        self.rights = rights
        self.randomness = randomness
        self.clock = clock or SystemClock()
        self.recorder = recorder

        self._state = LedgerState.OPEN
        self._tally = [0] * (total_options + 1)
        self._choices: dict[Principal, int] = {}
        self._closed_at: datetime | None = None

        self._settlement_status = SettlementStatus.PENDING
        self._winner: int | None = None
        self._settled_at: datetime | None = None
        self._pending_request: RandomnessRequest | None = None
        self._last_request_id: UUID | None = None
        self._random_value: int | None = None
        self._request_attempts = 0

        bind = getattr(rights, "bind", None)
        if bind is not None:
            bind(self)

    # ── Read accessors ──────────────────────────────────────────

    @property
    def id(self) -> UUID:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def total_options(self) -> int:
        return self._total_options

    @property
    def deadline(self) -> datetime:
        return self._deadline

    @property
    def mode(self) -> SelectionMode:
        return self._mode

    @property
    def state(self) -> LedgerState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == LedgerState.OPEN

    @property
    def closed_at(self) -> datetime | None:
        return self._closed_at

    @property
    def tally(self) -> tuple[int, ...]:
        """Per-option counters; slot 0 is reserved and always 0."""
        return tuple(self._tally)

    @property
    def total_votes(self) -> int:
        return sum(self._tally[1:])

    @property
    def winner(self) -> int | None:
        return self._winner

    @property
    def settlement_status(self) -> SettlementStatus:
        return self._settlement_status

    @property
    def pending_request(self) -> RandomnessRequest | None:
        return self._pending_request

    @property
    def request_attempts(self) -> int:
        return self._request_attempts

    @property
    def needs_settlement(self) -> bool:
        """Closed, without an outcome, and with nothing in flight to produce one."""
        return (
            self._state == LedgerState.CLOSED
            and self._pending_request is None
            and self._settlement_status in (SettlementStatus.PENDING, SettlementStatus.REQUEST_FAILED)
        )

    def choice_of(self, principal: Principal) -> int:
        """The principal's recorded option, or 0 for no active vote."""
        return self._choices.get(principal, 0)

    def voters(self) -> dict[Principal, int]:
        """Every principal with an active vote, mapped to their option."""
        return dict(self._choices)

    # ── Voting ──────────────────────────────────────────────────

    def cast(self, principal: Principal, option: int) -> None:
        """
        Record a first vote for ``principal``.

        On success the principal is granted the ledger's voting right, unless
        they already hold it (e.g. received by transfer and then cleared).

        Raises:
            VoteClosed: The ledger is Closed.
            InvalidOption: ``option`` is outside 1..total_options.
            AlreadyVoted: The principal already has an active vote.
            NoVotingRight: The principal gave their right away and cannot
                vote again without getting it back.
        """
        self._require_open()
        self._require_valid_option(option)
        if self.choice_of(principal) != 0:
            raise AlreadyVoted(
                f"{principal} already voted for option {self.choice_of(principal)}; "
                f"use change_vote instead"
            )

        holds_right = False
        if self.rights is not None:
            holds_right = self.rights.has_voting_right(principal, self._id)
            if not holds_right and self.rights.was_granted(principal, self._id):
                raise NoVotingRight(
                    f"{principal} transferred their voting right for ledger {self._id}"
                )

        self._choices[principal] = option
        self._tally[option] += 1

        logger.info(
            "Vote cast: ledger=%s principal=%s option=%d",
            str(self._id)[:8], principal, option,
        )

        if self.rights is not None and not holds_right:
            self.rights.grant(principal, self._id)
        self._record(AuditEventType.VOTE_CAST, principal, {"option": option})

    def change_vote(self, principal: Principal, new_option: int) -> None:
        """
        Move ``principal``'s active vote to ``new_option``.

        Raises:
            VoteClosed, InvalidOption, NoExistingVote, SameOption
        """
        self._require_open()
        self._require_valid_option(new_option)
        old_option = self.choice_of(principal)
        if old_option == 0:
            raise NoExistingVote(f"{principal} has no vote to change")
        if old_option == new_option:
            raise SameOption(f"{principal} already voted for option {new_option}")

        self._tally[old_option] -= 1
        self._tally[new_option] += 1
        self._choices[principal] = new_option

        logger.info(
            "Vote changed: ledger=%s principal=%s %d -> %d",
            str(self._id)[:8], principal, old_option, new_option,
        )
        self._record(
            AuditEventType.VOTE_CHANGED,
            principal,
            {"from_option": old_option, "to_option": new_option},
        )

    def clear_vote(self, principal: Principal) -> None:
        """
        Withdraw ``principal``'s active vote, keeping their voting right.

        Lets a transfer recipient disclaim an inherited choice and cast fresh.

        Raises:
            VoteClosed: The ledger is Closed.
            NoVotingRight: The principal does not currently hold the right.
            NoExistingVote: The principal has no active vote.
        """
        self._require_open()
        if self.rights is not None and not self.rights.has_voting_right(principal, self._id):
            raise NoVotingRight(f"{principal} does not hold the voting right for ledger {self._id}")
        option = self.choice_of(principal)
        if option == 0:
            raise NoExistingVote(f"{principal} has no vote to clear")

        self._tally[option] -= 1
        del self._choices[principal]

        logger.info(
            "Vote cleared: ledger=%s principal=%s option=%d",
            str(self._id)[:8], principal, option,
        )
        self._record(AuditEventType.VOTE_CLEARED, principal, {"option": option})

    def transfer_choice(self, from_: Principal, to: Principal) -> bool:
        """
        Move ``from_``'s recorded choice to ``to``. Called by the rights registry.

        The tally is unchanged: ownership of an existing vote moves, no vote is
        added or removed. A Closed ledger, or a ``from_`` with no active vote,
        makes this a no-op.

        Returns:
            True if a choice was moved.

        Raises:
            AlreadyVoted: ``to`` already has an active vote of their own.
        """
        if self._state == LedgerState.CLOSED:
            logger.debug(
                "Choice transfer ignored on closed ledger %s: %s -> %s",
                str(self._id)[:8], from_, to,
            )
            return False

        option = self.choice_of(from_)
        if option == 0:
            return False
        if self.choice_of(to) != 0:
            raise AlreadyVoted(f"{to} already has an active vote on ledger {self._id}")

        del self._choices[from_]
        self._choices[to] = option

        logger.info(
            "Choice transferred: ledger=%s option=%d %s -> %s",
            str(self._id)[:8], option, from_, to,
        )
        self._record(
            AuditEventType.CHOICE_TRANSFERRED,
            from_,
            {"to": to, "option": option},
        )
        return True

    # ── Closing and settlement ──────────────────────────────────

    def close(self, now: datetime | None = None) -> SettlementOutcome:
        """
        Close the ledger and settle it.

        Invoked by the deadline scheduler, or by an operator once the deadline
        has passed. Deterministic ledgers come back RESOLVED; weighted ledgers
        come back AWAITING_RANDOMNESS, NO_VOTES when nobody voted, or
        REQUEST_FAILED when the randomness source raised.

        Raises:
            VoteClosed: The ledger is already Closed.
            NotDueYet: ``now`` is before the deadline.
        """
        if self._state == LedgerState.CLOSED:
            raise VoteClosed(f"Ledger {self._id} is already closed")
        now = now or self.clock.now()
        if now < self._deadline:
            raise NotDueYet(
                f"Ledger {self._id} closes at {self._deadline.isoformat()}, "
                f"it is {now.isoformat()}"
            )

        self._state = LedgerState.CLOSED
        self._closed_at = now

        logger.info(
            "Ledger closed: %s '%s' mode=%s total_votes=%d",
            str(self._id)[:8], self._name[:60], self._mode.value, self.total_votes,
        )
        self._record(
            AuditEventType.LEDGER_CLOSED,
            "scheduler",
            {"tally": list(self._tally), "closed_at": now.isoformat()},
        )
        return self._settle(now)

    def request_randomness(self, now: datetime | None = None) -> SettlementOutcome:
        """
        Issue the weighted-lottery randomness request.

        ``close()`` calls this itself; it is public for sources that need the
        request repeated after an operator has dealt with a failure.

        Raises:
            NotClosed: The ledger is still Open.
            InvalidLedgerConfig: The ledger is deterministic.
            AlreadyExecuted: The ledger already has its outcome, including
                a lottery that closed with no votes.
            RequestAlreadyPending: A request is already in flight.
        """
        self._require_awaiting_draw()
        if self._pending_request is not None:
            raise RequestAlreadyPending(
                f"Ledger {self._id} is already waiting on request "
                f"{self._pending_request.request_id}"
            )
        return self._issue_request(now or self.clock.now(), AuditEventType.RANDOMNESS_REQUESTED)

    def reissue_randomness_request(self, now: datetime | None = None) -> SettlementOutcome:
        """
        Abandon the pending randomness request and issue a new one.

        A late fulfilment of the abandoned request is rejected as stale.

        Raises:
            NotClosed, InvalidLedgerConfig, AlreadyExecuted
        """
        self._require_awaiting_draw()
        abandoned = self._pending_request
        self._pending_request = None
        if abandoned is not None:
            logger.warning(
                "Randomness request abandoned: ledger=%s request=%s attempt=%d",
                str(self._id)[:8], str(abandoned.request_id)[:8], abandoned.attempt,
            )
        return self._issue_request(now or self.clock.now(), AuditEventType.RANDOMNESS_REISSUED)

    def mark_randomness_stalled(self, now: datetime | None = None) -> SettlementOutcome:
        """
        Flag the ledger as stuck waiting on the randomness source.

        The pending request, if any, stays valid: a late fulfilment still
        resolves the ledger. Nothing else happens until an operator reissues.

        Raises:
            UnknownOrStaleRequest: No request is pending and the last one did
                not fail outright.
        """
        pending = self._pending_request
        if pending is None and self._settlement_status != SettlementStatus.REQUEST_FAILED:
            raise UnknownOrStaleRequest(f"Ledger {self._id} has no pending randomness request")

        self._settlement_status = SettlementStatus.RANDOMNESS_STALLED
        logger.critical(
            "Randomness stalled: ledger=%s request=%s attempts=%d",
            str(self._id)[:8],
            str(pending.request_id)[:8] if pending else "none",
            self._request_attempts,
        )
        self._record(
            AuditEventType.RANDOMNESS_STALLED,
            "scheduler",
            {
                "request_id": str(pending.request_id) if pending else None,
                "attempts": self._request_attempts,
                "flagged_at": (now or self.clock.now()).isoformat(),
            },
        )
        return self.outcome()

    def retry_settlement(self, now: datetime | None = None) -> SettlementOutcome:
        """
        Run settlement again for a Closed ledger that never got an outcome.

        Covers a close whose audit record or randomness request failed after
        the state change was committed.

        Raises:
            NotClosed: The ledger is still Open.
            AlreadyExecuted: The ledger already has its outcome.
            RequestAlreadyPending: A request is already in flight.
        """
        if self._state != LedgerState.CLOSED:
            raise NotClosed(f"Ledger {self._id} is still open")
        if self._settlement_status in _FINAL_STATUSES:
            raise AlreadyExecuted(f"Ledger {self._id} is already settled")
        if self._pending_request is not None:
            raise RequestAlreadyPending(
                f"Ledger {self._id} is already waiting on request "
                f"{self._pending_request.request_id}"
            )
        logger.warning(
            "Retrying settlement: ledger=%s status=%s",
            str(self._id)[:8], self._settlement_status.value,
        )
        return self._settle(now or self.clock.now())

    def fulfill_randomness(
        self,
        request_id: UUID,
        value: int,
        now: datetime | None = None,
    ) -> SettlementOutcome:
        """
        Consume the random value for the pending request and resolve the winner.

        Raises:
            UnknownOrStaleRequest: ``request_id`` is not this ledger's pending
                request. No state changes.
        """
        pending = self._pending_request
        if pending is None or pending.request_id != request_id:
            logger.warning(
                "Stale randomness fulfilment rejected: ledger=%s request=%s",
                str(self._id)[:8], str(request_id)[:8],
            )
            raise UnknownOrStaleRequest(
                f"Request {request_id} is not pending for ledger {self._id}"
            )

        winner = select_winner(self, value)
        self._pending_request = None
        self._random_value = value
        return self._resolve(winner, now or self.clock.now())

    def outcome(self) -> SettlementOutcome:
        """The ledger's settlement as it currently stands."""
        return SettlementOutcome(
            ledger_id=self._id,
            status=self._settlement_status,
            mode=self._mode,
            winner=self._winner,
            total_votes=self.total_votes,
            request_id=(
                self._pending_request.request_id
                if self._pending_request is not None
                else self._last_request_id
            ),
            random_value=self._random_value,
            settled_at=self._settled_at,
        )

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            id=self._id,
            name=self._name,
            description=self._description,
            total_options=self._total_options,
            state=self._state,
            mode=self._mode,
            deadline=self._deadline,
            tally=list(self._tally),
            total_votes=self.total_votes,
            winner=self._winner,
            settlement_status=self._settlement_status,
            pending_request_id=(
                self._pending_request.request_id if self._pending_request else None
            ),
        )

    def __repr__(self) -> str:
        return (
            f"<VotingLedger {str(self._id)[:8]} '{self._name}' "
            f"state={self._state.value} votes={self.total_votes}>"
        )

    # ── Internal ────────────────────────────────────────────────

    def _settle(self, now: datetime) -> SettlementOutcome:
        if self._mode == SelectionMode.DETERMINISTIC:
            return self._resolve(select_winner(self), now)

        if self.total_votes == 0:
            self._settlement_status = SettlementStatus.NO_VOTES
            self._settled_at = now
            logger.warning(
                "Weighted lottery closed with no votes: ledger=%s", str(self._id)[:8]
            )
            self._record(
                AuditEventType.SETTLEMENT_FAILED,
                "scheduler",
                {"reason": NoVotesCast.__name__},
            )
            return self.outcome()

        return self._issue_request(now, AuditEventType.RANDOMNESS_REQUESTED)

    def _issue_request(self, now: datetime, event_type: AuditEventType) -> SettlementOutcome:
        if self.total_votes == 0:
            raise NoVotesCast(f"Ledger {self._id} has no votes to draw from")

        self._request_attempts += 1
        try:
            request_id = self.randomness.request(self._id)
        except Exception as e:
            self._settlement_status = SettlementStatus.REQUEST_FAILED
            logger.critical(
                "Randomness request failed: ledger=%s attempt=%d error=%s",
                str(self._id)[:8], self._request_attempts, e,
            )
            self._record(
                AuditEventType.SETTLEMENT_FAILED,
                "scheduler",
                {
                    "reason": type(e).__name__,
                    "detail": str(e),
                    "attempt": self._request_attempts,
                },
            )
            return self.outcome()

        self._pending_request = RandomnessRequest(
            request_id=request_id,
            ledger_id=self._id,
            issued_at=now,
            attempt=self._request_attempts,
        )
        self._last_request_id = request_id
        self._settlement_status = SettlementStatus.AWAITING_RANDOMNESS

        self._record(
            event_type,
            "scheduler",
            {"request_id": str(request_id), "attempt": self._request_attempts},
        )
        return self.outcome()

    def _resolve(self, winner: int, now: datetime) -> SettlementOutcome:
        self._winner = winner
        self._settlement_status = SettlementStatus.RESOLVED
        self._settled_at = now

        logger.info(
            "Winner selected: ledger=%s mode=%s winner=%d votes=%d/%d",
            str(self._id)[:8], self._mode.value, winner,
            self._tally[winner], self.total_votes,
        )
        content: dict[str, Any] = {"winner": winner, "tally": list(self._tally)}
        if self._random_value is not None:
            content["random_value"] = str(self._random_value)
        self._record(AuditEventType.WINNER_SELECTED, "scheduler", content)
        return self.outcome()

    def _require_open(self) -> None:
        if self._state != LedgerState.OPEN:
            raise VoteClosed(f"Ledger {self._id} is closed to voting")

    def _require_valid_option(self, option: int) -> None:
        if isinstance(option, bool) or not isinstance(option, int):
            raise InvalidOption(f"Option must be an integer, got {option!r}")
        if not 1 <= option <= self._total_options:
            raise InvalidOption(
                f"Option {option} is outside 1..{self._total_options}"
            )

    def _require_awaiting_draw(self) -> None:
        if self._state != LedgerState.CLOSED:
            raise NotClosed(f"Ledger {self._id} is still open")
        if self._mode != SelectionMode.WEIGHTED_LOTTERY:
            raise InvalidLedgerConfig(f"Ledger {self._id} is deterministic and draws no randomness")
        if self._settlement_status in _FINAL_STATUSES:
            raise AlreadyExecuted(f"Ledger {self._id} is already settled")

    def _record(self, event_type: AuditEventType, actor: str, content: dict[str, Any]) -> None:
        if self.recorder is not None:
            self.recorder.append(
                event_type=event_type,
                ledger_id=self._id,
                actor=actor,
                content=content,
            )
