"""
Audit Trail — SQLAlchemy model for the append-only record of ledger events.

Every vote, choice transfer, closure and winner selection lands here as one
row. Rows are never updated or deleted. Each row stores the SHA-256 hash of
(previous_hash || canonical_json(fields)), so any retroactive edit breaks
the chain and is caught by ``AuditTrail.verify_chain()``.

Column types are dialect-neutral so the trail runs on SQLite for local use
and PostgreSQL in deployment.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for audit models."""
    pass


class AuditEntryDB(Base):
    """
    A single entry in the audit trail.

    This table is APPEND-ONLY. The first row (sequence 0) is the genesis
    entry whose previous_hash is all zeros.
    """

    __tablename__ = "audit_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Chain ordering
    sequence_number = Column(
        Integer, nullable=False, unique=True, index=True,
        comment="Monotonically increasing sequence number",
    )

    # Hash chain
    previous_hash = Column(
        String(64), nullable=False,
        comment="SHA-256 hash of the previous entry",
    )
    entry_hash = Column(
        String(64), nullable=False, unique=True,
        comment="SHA-256 hash of this entry",
    )

    timestamp = Column(
        DateTime(timezone=True), nullable=False, default=func.now(),
        comment="When this entry was recorded",
    )

    event_type = Column(
        String(50), nullable=False, index=True,
        comment="Kind of ledger event (AuditEventType value)",
    )
    ledger_id = Column(
        Uuid(as_uuid=True), nullable=True,
        comment="Voting ledger the event belongs to; null for genesis",
    )
    actor = Column(
        String(200), nullable=False,
        comment="Principal or component that caused the event",
    )

    content = Column(
        JSON, nullable=False,
        comment="Event payload, structure varies by event_type",
    )

    __table_args__ = (
        Index("ix_audit_ledger_sequence", "ledger_id", "sequence_number"),
        Index("ix_audit_event_timestamp", "event_type", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEntry seq={self.sequence_number} "
            f"type={self.event_type} hash={self.entry_hash[:12]}...>"
        )
