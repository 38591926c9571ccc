"""
Rights Registry — voting-right tokens and the choice-transfer bridge.

Each ledger issues at most one voting right per principal, on that
principal's first vote. A right is held by exactly one principal at a time.
Transferring it is the only way a recorded choice moves between principals:
the registry calls ``ledger.transfer_choice(old_holder, new_holder)`` before
it finalizes the holder change, so the ledger judges the move against its
pre-transfer state.

Once a ledger is Closed the right itself still changes hands (it is a
general-purpose capability token), but the recorded vote stays where it was.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID

from ballotbox.voting.clock import Clock, SystemClock
from ballotbox.voting.errors import (
    NoVotingRight,
    RightAlreadyHeld,
    RightNotTransferable,
    UnknownLedger,
)
from ballotbox.voting.schema import AuditEventType, Principal, VotingRight

if TYPE_CHECKING:
    from ballotbox.voting.ledger import VotingLedger

logger = logging.getLogger(__name__)


@runtime_checkable
class RightsRegistry(Protocol):
    """What a ledger needs from whoever tracks voting rights."""

    def grant(self, principal: Principal, ledger_id: UUID) -> VotingRight:
        ...

    def transfer(self, ledger_id: UUID, from_: Principal, to: Principal) -> VotingRight:
        ...

    def has_voting_right(self, principal: Principal, ledger_id: UUID) -> bool:
        ...

    def was_granted(self, principal: Principal, ledger_id: UUID) -> bool:
        ...


class InMemoryRightsRegistry:
    """
    Process-local rights registry.

    Ledgers must be bound with ``bind()`` for transfers to move their
    recorded choices. ``transferable=False`` issues soulbound rights that
    can never leave the original grantee.
    """

    def __init__(
        self,
        transferable: bool = True,
        clock: Clock | None = None,
        recorder: Any = None,
    ) -> None:
        """
        Args:
            transferable: Whether newly issued rights may change holder.
            clock: Time source for issuance timestamps.
            recorder: Optional audit trail receiving grant/transfer events.
        """
        self.transferable = transferable
        self.clock = clock or SystemClock()
        self.recorder = recorder
        self._ledgers: dict[UUID, VotingLedger] = {}
        self._rights: dict[int, VotingRight] = {}
        self._holdings: dict[tuple[UUID, Principal], int] = {}
        self._grantees: set[tuple[UUID, Principal]] = set()
        self._token_counter = 0

    def bind(self, ledger: VotingLedger) -> None:
        """Associate a ledger so transfers of its rights move recorded choices."""
        self._ledgers[ledger.id] = ledger

    def grant(self, principal: Principal, ledger_id: UUID) -> VotingRight:
        """
        Issue a voting right for ``ledger_id`` to ``principal``.

        Granting to a principal who already holds a right for the ledger
        returns the existing right rather than minting a second one.
        """
        existing = self.holder_right(principal, ledger_id)
        if existing is not None:
            return existing

        self._token_counter += 1
        right = VotingRight(
            token_id=self._token_counter,
            ledger_id=ledger_id,
            original_holder=principal,
            holder=principal,
            transferable=self.transferable,
            issued_at=self.clock.now(),
        )
        self._rights[right.token_id] = right
        self._holdings[(ledger_id, principal)] = right.token_id
        self._grantees.add((ledger_id, principal))

        logger.info(
            "Voting right granted: token=%d ledger=%s holder=%s",
            right.token_id, str(ledger_id)[:8], principal,
        )
        self._record(
            AuditEventType.RIGHT_GRANTED,
            ledger_id,
            principal,
            {"token_id": right.token_id, "transferable": right.transferable},
        )
        return right

    def transfer(self, ledger_id: UUID, from_: Principal, to: Principal) -> VotingRight:
        """
        Move ``from_``'s right for ``ledger_id`` to ``to``.

        The ledger's recorded choice follows the right while the ledger is
        Open. Exactly one slot is relocated; the tally never changes.

        Raises:
            NoVotingRight: ``from_`` holds no right for the ledger.
            RightNotTransferable: The right is soulbound.
            RightAlreadyHeld: ``to`` already holds a right for the ledger.
        """
        right = self.holder_right(from_, ledger_id)
        if right is None:
            raise NoVotingRight(f"{from_} holds no voting right for ledger {ledger_id}")
        if from_ == to:
            return right
        if not right.transferable:
            raise RightNotTransferable(
                f"Voting right #{right.token_id} is bound to {right.original_holder}"
            )
        if self.has_voting_right(to, ledger_id):
            raise RightAlreadyHeld(f"{to} already holds a voting right for ledger {ledger_id}")

        # Choice moves first, against the ledger's pre-transfer view.
        ledger = self._ledgers.get(ledger_id)
        if ledger is not None:
            ledger.transfer_choice(from_, to)

        del self._holdings[(ledger_id, from_)]
        self._holdings[(ledger_id, to)] = right.token_id
        right.holder = to
        right.transfer_count += 1

        logger.info(
            "Voting right transferred: token=%d ledger=%s %s -> %s",
            right.token_id, str(ledger_id)[:8], from_, to,
        )
        self._record(
            AuditEventType.RIGHT_TRANSFERRED,
            ledger_id,
            from_,
            {"token_id": right.token_id, "to": to},
        )
        return right

    def has_voting_right(self, principal: Principal, ledger_id: UUID) -> bool:
        return (ledger_id, principal) in self._holdings

    def was_granted(self, principal: Principal, ledger_id: UUID) -> bool:
        """Whether ``principal`` was ever issued a right for the ledger."""
        return (ledger_id, principal) in self._grantees

    def holder_right(self, principal: Principal, ledger_id: UUID) -> VotingRight | None:
        token_id = self._holdings.get((ledger_id, principal))
        return self._rights[token_id] if token_id is not None else None

    def get_right(self, token_id: int) -> VotingRight | None:
        return self._rights.get(token_id)

    def rights_for_ledger(self, ledger_id: UUID) -> list[VotingRight]:
        if ledger_id not in self._ledgers:
            raise UnknownLedger(f"Ledger {ledger_id} is not bound to this registry")
        return [r for r in self._rights.values() if r.ledger_id == ledger_id]

    # ── Internal ────────────────────────────────────────────────

    def _record(
        self,
        event_type: AuditEventType,
        ledger_id: UUID,
        actor: Principal,
        content: dict[str, Any],
    ) -> None:
        if self.recorder is not None:
            self.recorder.append(
                event_type=event_type,
                ledger_id=ledger_id,
                actor=actor,
                content=content,
            )
