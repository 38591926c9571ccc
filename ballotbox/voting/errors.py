"""
Voting errors — named rejections raised by ledgers, rights and the scheduler.

Every precondition violation is rejected synchronously at the call that
violates it. Nothing here is retried by the core; re-polling or re-requesting
is left to the caller.
"""

from __future__ import annotations


class VotingError(Exception):
    """Base class for every rejection raised by the voting core."""
    pass


# ── Ledger state ────────────────────────────────────────────────


class VoteClosed(VotingError):
    """The ledger is Closed and no longer accepts mutations."""
    pass


class NotClosed(VotingError):
    """Winner selection was attempted on a ledger that is still Open."""
    pass


class InvalidOption(VotingError):
    """The option index is outside 1..total_options."""
    pass


class AlreadyVoted(VotingError):
    """The principal already has an active recorded choice."""
    pass


class NoExistingVote(VotingError):
    """The principal has no active recorded choice to change or clear."""
    pass


class SameOption(VotingError):
    """A vote change named the option the principal already chose."""
    pass


class InvalidLedgerConfig(VotingError):
    """A ledger was opened with an empty name or fewer than two options."""
    pass


class UnknownLedger(VotingError):
    """No ledger is registered under the given id."""
    pass


# ── Selection and randomness ────────────────────────────────────


class NoVotesCast(VotingError):
    """A weighted lottery cannot draw from an empty tally."""
    pass


class RequestAlreadyPending(VotingError):
    """The ledger already has an unfulfilled randomness request."""
    pass


class UnknownOrStaleRequest(VotingError):
    """A fulfilment referenced a request that is unknown or already consumed."""
    pass


# ── Scheduler ───────────────────────────────────────────────────


class NotDueYet(VotingError):
    """The deadline has not passed."""
    pass


class AlreadyExecuted(VotingError):
    """The schedule entry has already been executed."""
    pass


# ── Voting rights ───────────────────────────────────────────────


class NoVotingRight(VotingError):
    """The principal does not hold the voting right for this ledger."""
    pass


class RightNotTransferable(VotingError):
    """The voting right is bound to its original holder."""
    pass


class RightAlreadyHeld(VotingError):
    """The recipient already holds a voting right for this ledger."""
    pass
