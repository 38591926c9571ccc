"""
Voting Schema — Pydantic models and enums shared by the voting core.

These are the canonical data structures for ledgers, voting rights,
randomness requests and settlement outcomes. Ledgers keep their live state
privately and hand out these models as read-only views, so a snapshot can be
serialized into the audit trail or shown to an operator without exposing the
mutable ledger.
"""

from __future__ import annotations

import enum
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, computed_field

Principal = str
"""Opaque identifier of an actor that may hold a voting right."""


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class LedgerState(str, enum.Enum):
    """Ledger state machine. Open → Closed, never the reverse."""

    OPEN = "open"
    CLOSED = "closed"


class SelectionMode(str, enum.Enum):
    """Winner-selection mode, fixed when the ledger is opened."""

    DETERMINISTIC = "deterministic"
    WEIGHTED_LOTTERY = "weighted_lottery"


class SettlementStatus(str, enum.Enum):
    """Where a ledger stands in winner selection."""

    PENDING = "pending"  # still Open
    AWAITING_RANDOMNESS = "awaiting_randomness"
    RESOLVED = "resolved"
    NO_VOTES = "no_votes"  # weighted lottery closed with an empty tally
    REQUEST_FAILED = "request_failed"  # randomness source refused the request
    RANDOMNESS_STALLED = "randomness_stalled"


class AuditEventType(str, enum.Enum):
    """Kinds of entries written to the audit trail."""

    GENESIS = "genesis"
    LEDGER_OPENED = "ledger_opened"
    VOTE_CAST = "vote_cast"
    VOTE_CHANGED = "vote_changed"
    VOTE_CLEARED = "vote_cleared"
    CHOICE_TRANSFERRED = "choice_transferred"
    RIGHT_GRANTED = "right_granted"
    RIGHT_TRANSFERRED = "right_transferred"
    LEDGER_CLOSED = "ledger_closed"
    RANDOMNESS_REQUESTED = "randomness_requested"
    RANDOMNESS_REISSUED = "randomness_reissued"
    RANDOMNESS_STALLED = "randomness_stalled"
    WINNER_SELECTED = "winner_selected"
    SETTLEMENT_FAILED = "settlement_failed"


# ════════════════════════════════════════════════════════════════
# Voting Rights
# ════════════════════════════════════════════════════════════════


class VotingRight(BaseModel):
    """
    A capability token entitling its current holder to vote on one ledger.

    Issued on a principal's first vote. Transferable rights carry the
    recorded choice with them when they change hands; non-transferable
    (soulbound) rights stay with the original grantee.
    """

    token_id: int = Field(description="Registry-wide sequential token number")
    ledger_id: UUID
    original_holder: Principal = Field(description="Principal the right was granted to")
    holder: Principal = Field(description="Principal currently holding the right")
    transferable: bool = True
    issued_at: datetime
    transfer_count: int = 0


# ════════════════════════════════════════════════════════════════
# Randomness
# ════════════════════════════════════════════════════════════════


class RandomnessRequest(BaseModel):
    """An in-flight request to the randomness source for one ledger."""

    request_id: UUID
    ledger_id: UUID
    issued_at: datetime
    attempt: int = Field(default=1, description="1 for the first request, +1 per reissue")


# ════════════════════════════════════════════════════════════════
# Settlement
# ════════════════════════════════════════════════════════════════


class SettlementOutcome(BaseModel):
    """Result of closing a ledger, or of consuming its random value."""

    ledger_id: UUID
    status: SettlementStatus
    mode: SelectionMode
    winner: int | None = Field(default=None, description="Winning option index")
    total_votes: int = 0
    request_id: UUID | None = None
    random_value: int | None = None
    settled_at: datetime | None = None

    @computed_field
    @property
    def is_final(self) -> bool:
        """Whether the ledger has a winner or has been settled without one."""
        return self.status in (SettlementStatus.RESOLVED, SettlementStatus.NO_VOTES)


class LedgerSnapshot(BaseModel):
    """Point-in-time view of a ledger, safe to serialize."""

    id: UUID
    name: str
    description: str = ""
    total_options: int
    state: LedgerState
    mode: SelectionMode
    deadline: datetime
    tally: list[int] = Field(description="Per-option counters, index 0 reserved")
    total_votes: int
    winner: int | None = None
    settlement_status: SettlementStatus
    pending_request_id: UUID | None = None
