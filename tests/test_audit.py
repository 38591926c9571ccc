"""
Tests for the hash-chained Audit Trail.

Validates:
- Genesis entry creation and chain verification
- Ledger events recorded in order
- Tamper detection
- The rich verification report
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from ballotbox.audit.models import AuditEntryDB, Base
from ballotbox.audit.trail import GENESIS_HASH, AuditIntegrityError, AuditTrail
from ballotbox.audit.verify import run_audit
from ballotbox.voting.clock import ManualClock
from ballotbox.voting.schema import AuditEventType
from ballotbox.voting.service import VotingService


class TestAuditTrail:
    """Test the append-only chain on an in-memory SQLite database."""

    def setup_method(self):
        self.trail = AuditTrail("sqlite://")
        self.trail.initialize()

    def test_genesis_entry(self):
        (genesis,) = self.trail.get_latest_entries()

        assert genesis.sequence_number == 0
        assert genesis.previous_hash == GENESIS_HASH
        assert genesis.event_type == AuditEventType.GENESIS.value
        assert self.trail.verify_chain()[0]

    def test_initialize_is_idempotent(self):
        self.trail.initialize()
        assert self.trail.get_entry_count() == 1

    def test_append_links_to_previous(self):
        first = self.trail.append(AuditEventType.VOTE_CAST, None, "alice", {"option": 1})
        second = self.trail.append("vote_changed", None, "alice", {"from_option": 1, "to_option": 2})

        assert second.previous_hash == first.entry_hash
        assert second.sequence_number == first.sequence_number + 1
        assert second.event_type == "vote_changed"

        ok, count, _ = self.trail.verify_chain()
        assert ok
        assert count == 3

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValueError):
            self.trail.append("ballot_stuffed", None, "mallory", {})
        assert self.trail.get_entry_count() == 1

    def test_append_before_initialize_rejected(self):
        trail = AuditTrail("sqlite://")
        assert not trail.is_initialized()
        Base.metadata.create_all(trail.engine)

        with pytest.raises(AuditIntegrityError):
            trail.append(AuditEventType.VOTE_CAST, None, "alice", {"option": 1})

    def test_tampered_content_detected(self):
        self.trail.append(AuditEventType.VOTE_CAST, None, "alice", {"option": 1})
        self.trail.append(AuditEventType.VOTE_CAST, None, "bob", {"option": 2})

        with self.trail.SessionLocal() as session:
            session.execute(
                update(AuditEntryDB)
                .where(AuditEntryDB.sequence_number == 1)
                .values(content={"option": 3})
            )
            session.commit()

        ok, index, message = self.trail.verify_chain()
        assert not ok
        assert index == 1
        assert "Hash mismatch" in message

    def test_queries_by_type(self):
        self.trail.append(AuditEventType.VOTE_CAST, None, "alice", {"option": 1})
        self.trail.append(AuditEventType.VOTE_CLEARED, None, "alice", {"option": 1})
        self.trail.append(AuditEventType.VOTE_CAST, None, "bob", {"option": 2})

        casts = self.trail.get_entries_by_type(AuditEventType.VOTE_CAST)
        assert [e.actor for e in casts] == ["bob", "alice"]


class TestLedgerAuditEvents:
    """Every state change on a ledger lands in the trail."""

    def setup_method(self):
        self.clock = ManualClock()
        self.trail = AuditTrail("sqlite://")
        self.trail.initialize()
        self.service = VotingService(clock=self.clock, recorder=self.trail)

    def _event_types(self, ledger_id):
        return [e.event_type for e in self.trail.get_entries_for_ledger(ledger_id)]

    def test_deterministic_lifecycle(self):
        ledger = self.service.open_ledger("Audited", total_options=2, duration_hours=1)
        self.service.cast_vote(ledger.id, "alice", 2)
        self.clock.advance(timedelta(hours=1))
        self.service.run_due()

        assert self._event_types(ledger.id) == [
            "ledger_opened",
            "right_granted",
            "vote_cast",
            "ledger_closed",
            "winner_selected",
        ]
        (selected,) = self.trail.get_entries_by_type(AuditEventType.WINNER_SELECTED)
        assert selected.content == {"winner": 2, "tally": [0, 0, 1]}
        assert self.trail.verify_chain()[0]

    def test_transfer_records_choice_then_right(self):
        ledger = self.service.open_ledger("Transfers", total_options=3, duration_hours=1)
        self.service.cast_vote(ledger.id, "alice", 1)
        self.service.transfer_right(ledger.id, "alice", "bob")

        assert self._event_types(ledger.id)[-2:] == [
            "choice_transferred",
            "right_transferred",
        ]

    def test_weighted_lifecycle(self):
        ledger = self.service.open_ledger(
            "Audited lottery", total_options=2, duration_hours=1, random_winner=True,
        )
        self.service.cast_vote(ledger.id, "alice", 1)
        self.clock.advance(timedelta(hours=1))
        (outcome,) = self.service.run_due()
        self.service.randomness.fulfill(outcome.request_id, 99)

        events = self._event_types(ledger.id)
        assert events[-3:] == ["ledger_closed", "randomness_requested", "winner_selected"]
        (selected,) = self.trail.get_entries_by_type(AuditEventType.WINNER_SELECTED)
        assert selected.content["random_value"] == "99"

    def test_ledger_opened_carries_snapshot(self):
        ledger = self.service.open_ledger("Snapshot", total_options=4, duration_hours=2)
        (opened,) = self.trail.get_entries_for_ledger(ledger.id)

        assert opened.content["name"] == "Snapshot"
        assert opened.content["total_options"] == 4
        assert opened.content["tally"] == [0, 0, 0, 0, 0]


class TestRunAudit:
    """Test the verification report against on-disk databases."""

    def test_valid_chain_passes(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        trail = AuditTrail(url)
        trail.initialize()
        trail.append(AuditEventType.VOTE_CAST, None, "alice", {"option": 1})

        assert run_audit(url, verbose=True)

    def test_missing_trail_is_not_a_failure(self, tmp_path):
        assert run_audit(f"sqlite:///{tmp_path / 'empty.db'}")

    def test_tampered_chain_fails(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'audit.db'}"
        trail = AuditTrail(url)
        trail.initialize()
        trail.append(AuditEventType.VOTE_CAST, None, "alice", {"option": 1})
        with trail.SessionLocal() as session:
            session.execute(
                update(AuditEntryDB)
                .where(AuditEntryDB.sequence_number == 1)
                .values(actor="mallory")
            )
            session.commit()

        assert not run_audit(url)
