"""
Tests for the Rights Registry transfer bridge.

Validates:
- First vote grants the voting right
- Transfers move the recorded choice without touching the tally
- Soulbound rights and one-right-per-principal
- Frozen choices once the ledger is closed
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from ballotbox.voting.clock import ManualClock
from ballotbox.voting.errors import (
    NoVotingRight,
    RightAlreadyHeld,
    RightNotTransferable,
    UnknownLedger,
)
from ballotbox.voting.ledger import VotingLedger
from ballotbox.voting.rights import InMemoryRightsRegistry, RightsRegistry


def _open_ledger(registry, clock, total_options=3):
    return VotingLedger(
        name="Best DeFi Protocol",
        total_options=total_options,
        deadline=clock.now() + timedelta(hours=48),
        rights=registry,
        clock=clock,
    )


class TestRightsTransfer:
    """Test choice conservation under right transfer."""

    def setup_method(self):
        self.clock = ManualClock()
        self.registry = InMemoryRightsRegistry(clock=self.clock)
        self.ledger = _open_ledger(self.registry, self.clock)

    def test_registry_satisfies_protocol(self):
        assert isinstance(self.registry, RightsRegistry)

    def test_first_vote_grants_right(self):
        assert not self.registry.has_voting_right("P", self.ledger.id)
        self.ledger.cast("P", 1)

        right = self.registry.holder_right("P", self.ledger.id)
        assert right is not None
        assert right.original_holder == "P"
        assert right.holder == "P"
        assert right.issued_at == self.clock.now()
        assert self.registry.was_granted("P", self.ledger.id)

    def test_transfer_moves_choice_and_keeps_tally(self):
        self.ledger.cast("P", 1)
        self.ledger.cast("R", 2)
        tally_before = self.ledger.tally

        self.registry.transfer(self.ledger.id, "P", "Q")

        assert self.ledger.choice_of("P") == 0
        assert self.ledger.choice_of("Q") == 1
        assert self.ledger.tally == tally_before
        assert not self.registry.has_voting_right("P", self.ledger.id)
        assert self.registry.has_voting_right("Q", self.ledger.id)

    def test_rights_transfer_after_voting_then_change(self):
        self.ledger.cast("P", 1)
        self.registry.transfer(self.ledger.id, "P", "Q")
        self.ledger.change_vote("Q", 3)

        assert self.ledger.choice_of("P") == 0
        assert self.ledger.choice_of("Q") == 3
        assert self.ledger.tally == (0, 0, 0, 1)

    def test_sender_cannot_vote_again(self):
        self.ledger.cast("P", 1)
        self.registry.transfer(self.ledger.id, "P", "Q")

        with pytest.raises(NoVotingRight):
            self.ledger.cast("P", 2)
        assert self.ledger.total_votes == 1

    def test_recipient_can_disclaim_and_cast_fresh(self):
        self.ledger.cast("P", 1)
        self.registry.transfer(self.ledger.id, "P", "Q")
        self.ledger.clear_vote("Q")
        self.ledger.cast("Q", 2)

        assert self.ledger.tally == (0, 0, 1, 0)
        assert len(self.registry.rights_for_ledger(self.ledger.id)) == 1

    def test_transfer_of_right_without_choice(self):
        self.ledger.cast("P", 1)
        self.ledger.clear_vote("P")
        self.registry.transfer(self.ledger.id, "P", "Q")

        assert self.ledger.voters() == {}
        self.ledger.cast("Q", 3)
        assert self.ledger.tally == (0, 0, 0, 1)

    def test_transfer_updates_token(self):
        self.ledger.cast("P", 1)
        right = self.registry.transfer(self.ledger.id, "P", "Q")

        assert right.holder == "Q"
        assert right.original_holder == "P"
        assert right.transfer_count == 1
        assert self.registry.get_right(right.token_id).holder == "Q"

    def test_transfer_without_right_rejected(self):
        with pytest.raises(NoVotingRight):
            self.registry.transfer(self.ledger.id, "P", "Q")

    def test_transfer_to_existing_holder_rejected(self):
        self.ledger.cast("P", 1)
        self.ledger.cast("Q", 2)

        with pytest.raises(RightAlreadyHeld):
            self.registry.transfer(self.ledger.id, "P", "Q")
        assert self.ledger.voters() == {"P": 1, "Q": 2}
        assert self.registry.has_voting_right("P", self.ledger.id)

    def test_transfer_to_self_is_noop(self):
        self.ledger.cast("P", 2)
        right = self.registry.transfer(self.ledger.id, "P", "P")
        assert right.transfer_count == 0
        assert self.ledger.choice_of("P") == 2

    def test_grant_is_idempotent_for_current_holder(self):
        first = self.registry.grant("P", self.ledger.id)
        second = self.registry.grant("P", self.ledger.id)
        assert first.token_id == second.token_id

    def test_rights_are_per_ledger(self):
        other = _open_ledger(self.registry, self.clock)
        self.ledger.cast("P", 1)
        other.cast("P", 2)

        self.registry.transfer(self.ledger.id, "P", "Q")

        assert self.ledger.choice_of("Q") == 1
        assert other.choice_of("P") == 2
        assert other.choice_of("Q") == 0

    def test_rights_for_unbound_ledger_rejected(self):
        with pytest.raises(UnknownLedger):
            self.registry.rights_for_ledger(uuid4())


class TestClosedLedgerTransfer:
    """Recorded votes are frozen once voting closes; the token still moves."""

    def test_transfer_after_close_keeps_vote_in_place(self):
        clock = ManualClock()
        registry = InMemoryRightsRegistry(clock=clock)
        ledger = _open_ledger(registry, clock)
        ledger.cast("P", 1)
        clock.advance(timedelta(hours=48))
        ledger.close()

        registry.transfer(ledger.id, "P", "Q")

        assert registry.has_voting_right("Q", ledger.id)
        assert ledger.choice_of("P") == 1
        assert ledger.choice_of("Q") == 0
        assert ledger.tally == (0, 1, 0, 0)


class TestSoulboundRights:
    """Non-transferable rights stay with the original grantee."""

    def test_soulbound_transfer_rejected(self):
        clock = ManualClock()
        registry = InMemoryRightsRegistry(transferable=False, clock=clock)
        ledger = _open_ledger(registry, clock, total_options=2)
        ledger.cast("P", 1)

        with pytest.raises(RightNotTransferable):
            registry.transfer(ledger.id, "P", "Q")

        assert ledger.choice_of("P") == 1
        assert registry.has_voting_right("P", ledger.id)
        assert not registry.has_voting_right("Q", ledger.id)
        assert registry.holder_right("P", ledger.id).transferable is False
