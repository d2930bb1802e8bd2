# services/market/events.py
from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

LOG = logging.getLogger("market.events")
LOG.addHandler(logging.NullHandler())

# In-process tail only; durable history lives in subscribers such as the sqlite event log.
HISTORY_LIMIT = 1000

LISTING_CREATED = "ListingCreated"
LISTING_CANCELLED = "ListingCancelled"
PURCHASE_MADE = "PurchaseMade"
BID_COMMITTED = "BidCommitted"
BID_REVEALED = "BidRevealed"
BID_REFUNDED = "BidRefunded"
AUCTION_ENDED = "AuctionEnded"
FEE_UPDATED = "MarketplaceFeeUpdated"
FEE_RECIPIENT_UPDATED = "FeeRecipientUpdated"
ROYALTIES_PAID = "RoyaltiesPaid"
FUNDS_WITHDRAWN = "FundsWithdrawn"

EVENT_KINDS = (
    LISTING_CREATED,
    LISTING_CANCELLED,
    PURCHASE_MADE,
    BID_COMMITTED,
    BID_REVEALED,
    BID_REFUNDED,
    AUCTION_ENDED,
    FEE_UPDATED,
    FEE_RECIPIENT_UPDATED,
    ROYALTIES_PAID,
    FUNDS_WITHDRAWN,
)


@dataclass(frozen=True)
class MarketEvent:
    kind: str
    ts: int
    payload: Dict[str, Any]
    seq: int = 0
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {"event_id": self.event_id, "seq": self.seq, "kind": self.kind, "ts": self.ts, **self.payload}


Subscriber = Callable[[MarketEvent], None]


class EventBus:
    """
    Audit trail of state transitions.

    Inside `transaction()` events are buffered and only published when the block
    exits cleanly; a failed operation therefore publishes nothing.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None, history_limit: Optional[int] = HISTORY_LIMIT):
        self._clock = clock or (lambda: int(time.time()))
        self._subscribers: List[Subscriber] = []
        self._pending: Optional[List[MarketEvent]] = None
        self._seq = 0
        self.history: Deque[MarketEvent] = deque(maxlen=history_limit)

    def subscribe(self, fn: Subscriber) -> None:
        self._subscribers.append(fn)

    def emit(self, kind: str, **payload: Any) -> None:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")
        evt = MarketEvent(kind=kind, ts=self._clock(), payload=payload)
        if self._pending is not None:
            self._pending.append(evt)
        else:
            self._publish([evt])

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._pending is not None:
            # nested: the outer block decides
            yield
            return
        self._pending = []
        try:
            yield
        except BaseException:
            dropped = len(self._pending)
            self._pending = None
            if dropped:
                LOG.debug("dropped %d buffered events after failed operation", dropped)
            raise
        buffered, self._pending = self._pending, None
        self._publish(buffered)

    def _publish(self, events: List[MarketEvent]) -> None:
        for evt in events:
            self._seq += 1
            evt = MarketEvent(kind=evt.kind, ts=evt.ts, payload=evt.payload, seq=self._seq, event_id=evt.event_id)
            self.history.append(evt)
            for fn in self._subscribers:
                try:
                    fn(evt)
                except Exception:
                    LOG.exception("event subscriber %r failed on %s #%d", fn, evt.kind, evt.seq)

    def of_kind(self, kind: str) -> List[MarketEvent]:
        return [e for e in self.history if e.kind == kind]

    @property
    def last_seq(self) -> int:
        return self._seq

    def resume_from(self, seq: int) -> None:
        """Continue numbering after a restored snapshot."""
        self._seq = max(self._seq, int(seq))
