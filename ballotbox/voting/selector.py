"""
Winner selection — pure functions over a closed ledger's tally.

Two modes are supported:

- Deterministic plurality: the option with the most votes wins, ties going
  to the lowest index.
- Weighted lottery: an externally supplied random integer picks an option
  with probability proportional to its share of the votes.

Tallies are indexed by option number. Slot 0 is reserved and never counted.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from ballotbox.voting.errors import NoVotesCast, NotClosed
from ballotbox.voting.schema import LedgerState, SelectionMode

if TYPE_CHECKING:
    from ballotbox.voting.ledger import VotingLedger


def _option_counts(tally: Sequence[int]) -> Sequence[int]:
    if len(tally) < 3:
        raise ValueError(
            f"Tally must hold slot 0 plus at least two options, got {len(tally)} slots"
        )
    counts = tally[1:]
    if any(count < 0 for count in counts):
        raise ValueError("Tally counters must be non-negative")
    return counts


def select_plurality(tally: Sequence[int]) -> int:
    """
    Return the option index holding the most votes.

    Ties are broken by lowest index (first seen wins), so an all-zero tally
    selects option 1.
    """
    counts = _option_counts(tally)
    winner = 1
    best = counts[0]
    for index, count in enumerate(counts[1:], start=2):
        if count > best:
            winner, best = index, count
    return winner


def select_weighted(tally: Sequence[int], random_value: int) -> int:
    """
    Draw a winner with probability proportional to each option's vote share.

    ``target = random_value mod T`` where T is the total vote count; options
    are walked in index order and the first whose running sum exceeds
    ``target`` wins.

    Raises:
        NoVotesCast: If the tally is empty (T = 0).
        ValueError: If ``random_value`` is negative.
    """
    if random_value < 0:
        raise ValueError("Random value must be a non-negative integer")

    counts = _option_counts(tally)
    total = sum(counts)
    if total == 0:
        raise NoVotesCast("Cannot draw a weighted winner: no votes were cast")

    target = random_value % total
    running = 0
    for index, count in enumerate(counts, start=1):
        running += count
        if running > target:
            return index

    # running == total > target on the last option, so the loop always returns
    raise AssertionError("weighted draw fell off the end of the tally")


def select_winner(ledger: VotingLedger, random_value: int | None = None) -> int:
    """
    Select the winner of a closed ledger according to its mode.

    Raises:
        NotClosed: If the ledger is still Open.
        NoVotesCast: Weighted mode with an empty tally.
        ValueError: Weighted mode without a random value.
    """
    if ledger.state != LedgerState.CLOSED:
        raise NotClosed(f"Ledger {ledger.id} is still open; winners are drawn after close")

    if ledger.mode == SelectionMode.DETERMINISTIC:
        return select_plurality(ledger.tally)

    if random_value is None:
        raise ValueError("Weighted lottery selection requires a random value")
    return select_weighted(ledger.tally, random_value)
