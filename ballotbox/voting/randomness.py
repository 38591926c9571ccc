"""
Randomness source boundary — "commit now, fulfill later".

A ledger in weighted-lottery mode asks the source for one random value and
gets back only a request id. The value arrives later, out of band, through
the fulfilment callback the source was connected to. The core treats the
value as an opaque uniformly distributed unsigned integer.

``LocalRandomnessSource`` is an in-process implementation for development
and tests. It holds requests until told to fulfill them, which makes the
request/response gap explicit instead of hiding it behind a blocking call.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Callable, Protocol, runtime_checkable
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)

FulfillmentCallback = Callable[[UUID, int], Any]


@runtime_checkable
class RandomnessSource(Protocol):
    """External oracle delivering one random value per request, asynchronously."""

    def connect(self, callback: FulfillmentCallback) -> None:
        """Register where fulfilments are delivered."""
        ...

    def request(self, ledger_id: UUID) -> UUID:
        """Issue a request tagged with ``ledger_id`` and return its id."""
        ...


class LocalRandomnessSource:
    """
    In-process randomness source with manual fulfilment.

    Usage:
        source = LocalRandomnessSource()
        source.connect(service.fulfill_randomness)
        request_id = source.request(ledger.id)
        ...
        source.fulfill(request_id)          # draws secrets.randbits(256)
        source.fulfill(request_id, 12345)   # or a fixed value
    """

    def __init__(self, bits: int = 256) -> None:
        self.bits = bits
        self._callback: FulfillmentCallback | None = None
        self._pending: dict[UUID, UUID] = {}

    def connect(self, callback: FulfillmentCallback) -> None:
        self._callback = callback

    def request(self, ledger_id: UUID) -> UUID:
        request_id = uuid4()
        self._pending[request_id] = ledger_id
        logger.info(
            "Randomness requested: request=%s ledger=%s",
            str(request_id)[:8], str(ledger_id)[:8],
        )
        return request_id

    def pending_requests(self) -> list[UUID]:
        """Request ids issued but not yet fulfilled, oldest first."""
        return list(self._pending)

    def ledger_for(self, request_id: UUID) -> UUID | None:
        return self._pending.get(request_id)

    def fulfill(self, request_id: UUID, value: int | None = None) -> Any:
        """
        Deliver a value for ``request_id`` to the connected callback.

        The request leaves the pending set before delivery, whatever the
        callback decides to do with it.

        Raises:
            KeyError: If this source never issued ``request_id`` or already
                fulfilled it.
            RuntimeError: If no callback is connected.
        """
        if self._callback is None:
            raise RuntimeError("LocalRandomnessSource has no fulfilment callback connected")
        if request_id not in self._pending:
            raise KeyError(f"Request {request_id} is not pending at this source")

        del self._pending[request_id]
        if value is None:
            value = secrets.randbits(self.bits)
        return self._callback(request_id, value)

    def fulfill_all(self) -> list[Any]:
        """Fulfill every pending request with a fresh random value."""
        return [self.fulfill(request_id) for request_id in list(self._pending)]
