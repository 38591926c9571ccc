"""
Audit Trail Service — append-only, hash-chained record of ledger events.

Ledgers, the rights registry and the voting service write here through
``append()``. The trail offers:
- Append with automatic hash chain computation
- Verification of the whole chain
- Queries by ledger, event type and recency

Winner selection is only as trustworthy as the record of the votes behind
it; this trail lets anyone replay and check that record.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ballotbox.audit.models import AuditEntryDB, Base
from ballotbox.voting.schema import AuditEventType

logger = logging.getLogger(__name__)


GENESIS_HASH = "0" * 64  # The "previous hash" for the first entry in the chain


class AuditIntegrityError(Exception):
    """Raised when the audit chain cannot be extended or fails verification."""
    pass


class AuditTrail:
    """
    Hash-chained audit trail backed by SQLAlchemy.

    Usage:
        trail = AuditTrail("sqlite:///ballotbox_audit.db")
        trail.initialize()  # Create tables, seed genesis entry

        trail.append(
            event_type=AuditEventType.VOTE_CAST,
            ledger_id=ledger.id,
            actor="alice",
            content={"option": 2},
        )
        ok, count, message = trail.verify_chain()
    """

    def __init__(self, database_url: str) -> None:
        """
        Args:
            database_url: SQLAlchemy connection string.
        """
        engine_kwargs: dict[str, Any] = {"echo": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees a fresh empty database
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        """Create the schema and seed the genesis entry if it is missing."""
        Base.metadata.create_all(self.engine)

        with self.SessionLocal() as session:
            existing = session.execute(
                select(AuditEntryDB).where(AuditEntryDB.sequence_number == 0)
            ).scalar_one_or_none()

            if existing is None:
                genesis = self._build_entry(
                    sequence_number=0,
                    previous_hash=GENESIS_HASH,
                    event_type=AuditEventType.GENESIS.value,
                    ledger_id=None,
                    actor="system",
                    content={
                        "message": "Genesis of the ballotbox audit trail",
                        "append_only": True,
                    },
                )
                session.add(genesis)
                session.commit()
                logger.info("Audit genesis created: hash=%s", genesis.entry_hash[:16])

    def append(
        self,
        event_type: AuditEventType | str,
        ledger_id: UUID | None,
        actor: str,
        content: dict[str, Any],
    ) -> AuditEntryDB:
        """
        Append one event to the trail. This is the only write operation.

        Raises:
            AuditIntegrityError: If the trail has not been initialized.
            ValueError: If ``event_type`` is not a known AuditEventType.
        """
        event_value = AuditEventType(event_type).value

        with self.SessionLocal() as session:
            last_entry = session.execute(
                select(AuditEntryDB)
                .order_by(AuditEntryDB.sequence_number.desc())
                .limit(1)
            ).scalar_one_or_none()

            if last_entry is None:
                raise AuditIntegrityError(
                    "Cannot append: no genesis entry found. Call initialize() first."
                )

            entry = self._build_entry(
                sequence_number=last_entry.sequence_number + 1,
                previous_hash=last_entry.entry_hash,
                event_type=event_value,
                ledger_id=ledger_id,
                actor=actor,
                content=content,
            )
            session.add(entry)
            session.commit()

            logger.debug(
                "Audit entry appended: seq=%d type=%s hash=%s",
                entry.sequence_number, event_value, entry.entry_hash[:16],
            )
            return entry

    def verify_chain(self) -> tuple[bool, int, str]:
        """
        Recompute every hash from genesis forward.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        with self.SessionLocal() as session:
            entries = session.execute(
                select(AuditEntryDB).order_by(AuditEntryDB.sequence_number.asc())
            ).scalars().all()

        if not entries:
            return False, 0, "No entries found in audit trail"

        first = entries[0]
        if first.sequence_number != 0:
            return False, 0, f"First entry has sequence {first.sequence_number}, expected 0"
        if first.previous_hash != GENESIS_HASH:
            return False, 0, "Genesis entry has incorrect previous_hash"

        for i, entry in enumerate(entries):
            expected_hash = self._compute_hash(
                entry_id=entry.id,
                sequence_number=entry.sequence_number,
                previous_hash=entry.previous_hash,
                timestamp=entry.timestamp,
                event_type=entry.event_type,
                ledger_id=entry.ledger_id,
                actor=entry.actor,
                content=entry.content,
            )
            if entry.entry_hash != expected_hash:
                return (
                    False, i,
                    f"Hash mismatch at sequence {entry.sequence_number}: "
                    f"stored={entry.entry_hash[:16]}... "
                    f"computed={expected_hash[:16]}..."
                )
            if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
                return (
                    False, i,
                    f"Chain break at sequence {entry.sequence_number}: "
                    f"previous_hash does not match prior entry's hash"
                )

        return True, len(entries), f"Chain verified: {len(entries)} entries, integrity intact"

    def is_initialized(self) -> bool:
        """Whether the audit table exists in the target database."""
        return inspect(self.engine).has_table(AuditEntryDB.__tablename__)

    def get_entries_for_ledger(self, ledger_id: UUID) -> list[AuditEntryDB]:
        """Every event recorded for one ledger, oldest first."""
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditEntryDB)
                    .where(AuditEntryDB.ledger_id == ledger_id)
                    .order_by(AuditEntryDB.sequence_number.asc())
                ).scalars().all()
            )

    def get_entries_by_type(
        self,
        event_type: AuditEventType | str,
        limit: int = 100,
    ) -> list[AuditEntryDB]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditEntryDB)
                    .where(AuditEntryDB.event_type == AuditEventType(event_type).value)
                    .order_by(AuditEntryDB.sequence_number.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_latest_entries(self, limit: int = 50) -> list[AuditEntryDB]:
        """Most recent entries first."""
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(AuditEntryDB)
                    .order_by(AuditEntryDB.sequence_number.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_entry_count(self) -> int:
        with self.SessionLocal() as session:
            result = session.execute(select(func.count()).select_from(AuditEntryDB))
            return result.scalar() or 0

    # ── Internal ────────────────────────────────────────────────

    def _build_entry(
        self,
        sequence_number: int,
        previous_hash: str,
        event_type: str,
        ledger_id: UUID | None,
        actor: str,
        content: dict[str, Any],
    ) -> AuditEntryDB:
        entry_id = uuid4()
        timestamp = datetime.now(timezone.utc)
        entry_hash = self._compute_hash(
            entry_id=entry_id,
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            timestamp=timestamp,
            event_type=event_type,
            ledger_id=ledger_id,
            actor=actor,
            content=content,
        )
        return AuditEntryDB(
            id=entry_id,
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            timestamp=timestamp,
            event_type=event_type,
            ledger_id=ledger_id,
            actor=actor,
            content=content,
        )

    @staticmethod
    def _canonical_timestamp(timestamp: datetime) -> str:
        # SQLite hands timestamps back naive; hash the naive UTC form on both sides
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
        return timestamp.isoformat()

    @classmethod
    def _compute_hash(
        cls,
        entry_id: UUID,
        sequence_number: int,
        previous_hash: str,
        timestamp: datetime,
        event_type: str,
        ledger_id: UUID | None,
        actor: str,
        content: dict[str, Any],
    ) -> str:
        """
        Hash = SHA-256(previous_hash || canonical_json(entry_fields))
        """
        hashable = {
            "id": str(entry_id),
            "sequence_number": sequence_number,
            "previous_hash": previous_hash,
            "timestamp": cls._canonical_timestamp(timestamp),
            "event_type": event_type,
            "ledger_id": str(ledger_id) if ledger_id else None,
            "actor": actor,
            "content": content,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256((previous_hash + canonical).encode("utf-8")).hexdigest()
