"""
Tests for the Voting Service, settings and settlement loop.

Validates:
- Ledger creation with default and explicit deadlines
- Lookup helpers and pass-through voting operations
- Settings loaded from the environment
- One settlement pass against an on-disk audit trail
- The settlement loop driven for a fixed number of ticks
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
import structlog

from ballotbox.audit.trail import AuditTrail
from ballotbox.config import BallotSettings
from ballotbox.orchestrator import build_service, configure_logging, main, run_once
from ballotbox.voting.clock import ManualClock
from ballotbox.voting.errors import RightNotTransferable, UnknownLedger
from ballotbox.voting.schema import SelectionMode, SettlementStatus
from ballotbox.voting.service import VotingService


class TestVotingService:
    """Test ledger management through the service."""

    def setup_method(self):
        self.clock = ManualClock()
        self.service = VotingService(clock=self.clock)

    def test_default_voting_period(self):
        ledger = self.service.open_ledger("Default", total_options=3)
        assert ledger.deadline == self.clock.now() + timedelta(hours=24)
        assert ledger.mode == SelectionMode.DETERMINISTIC
        assert self.service.scheduler.next_wake_time == ledger.deadline

    def test_explicit_deadline_wins_over_duration(self):
        deadline = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
        ledger = self.service.open_ledger(
            "Explicit", total_options=2, duration_hours=1, deadline=deadline,
        )
        assert ledger.deadline == deadline

    def test_lookup_helpers(self):
        first = self.service.open_ledger("First", total_options=2, duration_hours=1)
        second = self.service.open_ledger("Second", total_options=2, duration_hours=5)

        assert self.service.get_ledger(first.id) is first
        assert self.service.latest_ledger() is second
        assert self.service.list_all_ledgers() == [first, second]

        self.clock.advance(timedelta(hours=1))
        self.service.run_due()
        assert self.service.list_open_ledgers() == [second]

    def test_latest_ledger_when_empty(self):
        assert self.service.latest_ledger() is None

    def test_unknown_ledger_rejected(self):
        with pytest.raises(UnknownLedger):
            self.service.get_ledger(uuid4())
        with pytest.raises(UnknownLedger):
            self.service.cast_vote(uuid4(), "alice", 1)
        with pytest.raises(UnknownLedger):
            self.service.transfer_right(uuid4(), "alice", "bob")

    def test_vote_operations(self):
        ledger = self.service.open_ledger("Ops", total_options=3)
        self.service.cast_vote(ledger.id, "alice", 1)
        self.service.cast_vote(ledger.id, "bob", 1)
        self.service.change_vote(ledger.id, "alice", 3)
        self.service.clear_vote(ledger.id, "bob")
        self.service.transfer_right(ledger.id, "alice", "carol")

        assert ledger.tally == (0, 0, 0, 1)
        assert ledger.voters() == {"carol": 3}
        assert self.service.has_voting_right("carol", ledger.id)
        assert self.service.has_voting_right("bob", ledger.id)
        assert not self.service.has_voting_right("alice", ledger.id)

    def test_is_due_follows_clock(self):
        self.service.open_ledger("Due", total_options=2, duration_hours=2)
        assert not self.service.is_due()
        self.clock.advance(timedelta(hours=2))
        assert self.service.is_due()

    def test_from_settings(self):
        config = BallotSettings(
            _env_file=None,
            default_voting_hours=6,
            rights_transferable=False,
            randomness_timeout_seconds=30,
            randomness_max_attempts=5,
        )
        service = VotingService.from_settings(config, clock=self.clock)
        ledger = service.open_ledger("Configured", total_options=2)
        service.cast_vote(ledger.id, "alice", 1)

        assert ledger.deadline == self.clock.now() + timedelta(hours=6)
        assert service.randomness_timeout == timedelta(seconds=30)
        assert service.randomness_max_attempts == 5
        with pytest.raises(RightNotTransferable):
            service.transfer_right(ledger.id, "alice", "bob")


class TestSettings:
    """Test environment-driven configuration."""

    def test_defaults(self):
        config = BallotSettings(_env_file=None)
        assert config.default_voting_hours == 24
        assert config.rights_transferable is True
        assert config.randomness_max_attempts == 3

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("BALLOTBOX_DEFAULT_VOTING_HOURS", "48")
        monkeypatch.setenv("BALLOTBOX_RIGHTS_TRANSFERABLE", "false")
        monkeypatch.setenv("BALLOTBOX_DATABASE_URL", "sqlite://")

        config = BallotSettings(_env_file=None)

        assert config.default_voting_hours == 48
        assert config.rights_transferable is False
        assert config.database_url == "sqlite://"


class TestSettlementLoop:
    """Test one pass of the settlement loop."""

    def setup_method(self):
        self.clock = ManualClock()

    def teardown_method(self):
        structlog.reset_defaults()

    def _config(self, tmp_path, **kwargs):
        return BallotSettings(
            _env_file=None,
            database_url=f"sqlite:///{tmp_path / 'ballotbox.db'}",
            **kwargs,
        )

    def test_build_service_records_to_trail(self, tmp_path):
        service = build_service(self._config(tmp_path), clock=self.clock)
        ledger = service.open_ledger("Loop", total_options=2, duration_hours=1)

        assert isinstance(service.recorder, AuditTrail)
        assert service.recorder.get_entries_for_ledger(ledger.id)[0].event_type == "ledger_opened"

    def test_run_once_settles_due_ledgers(self, tmp_path):
        service = build_service(self._config(tmp_path), clock=self.clock)
        early = service.open_ledger("Early", total_options=2, duration_hours=1)
        late = service.open_ledger("Late", total_options=2, duration_hours=3)
        service.cast_vote(early.id, "alice", 2)
        self.clock.advance(timedelta(hours=1))

        summary = run_once(service)

        assert [o.ledger_id for o in summary["settled"]] == [early.id]
        assert summary["settled"][0].winner == 2
        assert summary["stale"] == []
        assert summary["next_wake"] == late.deadline
        assert service.recorder.verify_chain()[0]

    def test_run_once_handles_stale_draws(self, tmp_path):
        config = self._config(tmp_path, randomness_timeout_seconds=10, randomness_max_attempts=1)
        service = build_service(config, clock=self.clock)
        ledger = service.open_ledger("Lottery", total_options=2, duration_hours=1, random_winner=True)
        service.cast_vote(ledger.id, "alice", 1)
        self.clock.advance(timedelta(hours=1))
        run_once(service)

        self.clock.advance(timedelta(seconds=11))
        summary = run_once(service)

        assert summary["settled"] == []
        assert [o.status for o in summary["stale"]] == [SettlementStatus.RANDOMNESS_STALLED]
        assert summary["next_wake"] is None

    def test_configure_logging(self):
        configure_logging(BallotSettings(_env_file=None, log_level="DEBUG", log_format="console"))
        structlog.get_logger().info("ballotbox.test.logging_configured")

    def test_main_settles_injected_service(self, tmp_path):
        config = self._config(tmp_path, scheduler_poll_seconds=0)
        service = build_service(config, clock=self.clock)
        ledger = service.open_ledger("Hosted", total_options=3, duration_hours=1)
        service.cast_vote(ledger.id, "alice", 3)
        self.clock.advance(timedelta(hours=1))

        asyncio.run(main(service, config, max_ticks=1))

        assert ledger.winner == 3
        assert service.list_open_ledgers() == []
        assert service.recorder.get_entries_by_type("winner_selected")[0].ledger_id == ledger.id

    def test_main_runs_the_requested_number_of_ticks(self, tmp_path):
        config = self._config(tmp_path, scheduler_poll_seconds=0)
        service = VotingService(clock=self.clock)
        ledger = service.open_ledger("Later", total_options=2, duration_hours=2)
        self.clock.advance(timedelta(hours=1))

        asyncio.run(main(service, config, max_ticks=2))

        assert ledger.is_open
