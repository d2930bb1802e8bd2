# services/market/listings.py
"""
Listing / auction state machine.

Every state-changing entry point runs through `_operation`: one process-wide
lock orders calls, a reentrancy guard rejects calls made from inside a running
operation, and the whole unit of work (own state, ledger, fee config and any
in-memory collaborator) is restored if anything raises. Events raised inside
the unit are published only when it commits.
"""
from __future__ import annotations

import functools
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

from services.crypto_core.commitments import (
    NATIVE_RAIL,
    commitments_equal,
    is_commitment,
    is_rail,
    make_bid_commitment,
)
from services.market.admin import AdminCapability, Ownable
from services.market.collaborators import AssetCustody
from services.market.errors import (
    AuctionEnded,
    AuctionNotEnded,
    AuctionTooShort,
    BidIncrementTooLow,
    BidTooSoon,
    InvalidCommitment,
    InvalidPrice,
    InvalidRail,
    InvalidReveal,
    ListingInactive,
    ListingNotFound,
    MarketError,
    NoBidCommitted,
    NoBids,
    NotAnAuction,
    NotApproved,
    NotFixedPrice,
    NotOwner,
    NotSeller,
    ReentrantCall,
    RevealWindowExpired,
)
from services.market.events import (
    AUCTION_ENDED,
    BID_COMMITTED,
    BID_REFUNDED,
    BID_REVEALED,
    FUNDS_WITHDRAWN,
    LISTING_CANCELLED,
    LISTING_CREATED,
    PURCHASE_MADE,
    EventBus,
)
from services.market.fees import FeeCalculator
from services.market.ledger import EscrowLedger
from services.market.models import AssetRef, BidCommitment, Listing, ListingState, SaleSplit
from services.market.settlement import SettlementSequencer

LOG = logging.getLogger("market.listings")
LOG.addHandler(logging.NullHandler())

MIN_AUCTION_DURATION = 24 * 60 * 60
MIN_TIME_BETWEEN_BIDS = 3 * 60
COMMIT_REVEAL_WINDOW = 10 * 60
MIN_BID_INCREMENT_PCT = 5

T = TypeVar("T")


def _operation(fn: Callable[..., T]) -> Callable[..., T]:
    @functools.wraps(fn)
    def wrapper(self: "Marketplace", *args: Any, **kwargs: Any) -> T:
        me = threading.get_ident()
        if self._entered_by == me:
            raise ReentrantCall(f"{fn.__name__}: reentrant call rejected")
        with self._lock:
            self._entered_by = me
            snapshot = self._snapshot()
            try:
                with self._events.transaction():
                    return fn(self, *args, **kwargs)
            except BaseException as e:
                self._restore(snapshot)
                if isinstance(e, MarketError):
                    LOG.info("%s rejected: %s %s", fn.__name__, e.code, e)
                else:
                    LOG.error("%s aborted: %r", fn.__name__, e)
                raise
            finally:
                self._entered_by = None

    return wrapper


class Marketplace(Ownable):
    """
    Coordinates listings, sealed-bid auctions and settlement.

    `address` is the marketplace's own account: the operator sellers approve and
    the vault escrowed funds sit in. The protocol owner (`owner`) controls fee
    configuration; the subordinate ledger and calculator are owned by the
    marketplace itself once constructed.
    """

    def __init__(
        self,
        *,
        address: str,
        owner: AdminCapability,
        custody: AssetCustody,
        ledger: EscrowLedger,
        fees: FeeCalculator,
        events: EventBus,
        deployer: AdminCapability,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__(owner)
        self.address = address
        self._custody = custody
        self._ledger = ledger
        self._fees = fees
        self._events = events
        self._clock = clock or (lambda: int(time.time()))

        self._cap = AdminCapability("marketplace")
        ledger.transfer_ownership(deployer, self._cap)
        fees.transfer_ownership(deployer, self._cap)
        self._settlement = SettlementSequencer(ledger, fees, custody, self._cap)

        self._listings: Dict[int, Listing] = {}
        self._next_id = 1
        self._lock = threading.Lock()
        self._entered_by: Optional[int] = None

    # ===== internals =====
    def _now(self) -> int:
        return int(self._clock())

    def _get(self, listing_id: int) -> Listing:
        listing = self._listings.get(listing_id)
        if listing is None:
            raise ListingNotFound(f"listing {listing_id} does not exist")
        return listing

    def _participants(self) -> List[Any]:
        parts: List[Any] = [self._ledger, self._fees, self._custody, self._ledger.rails]
        return [p for p in parts if callable(getattr(p, "to_state", None))]

    # Whole-state copy per operation: cost grows with listings, escrow entries and
    # in-memory balances. Adequate for the in-memory collaborators; a persistent
    # backend would snapshot only the touched listing and accounts.
    def _snapshot(self) -> Dict[str, Any]:
        return {
            "own": self.to_state(),
            "parts": [(p, p.to_state()) for p in self._participants()],
        }

    def _restore(self, snap: Dict[str, Any]) -> None:
        self.load_state(snap["own"])
        for part, st in snap["parts"]:
            part.load_state(st)

    # ===== listing lifecycle =====
    @_operation
    def create_listing(
        self,
        caller: str,
        asset: AssetRef,
        price: int,
        payment_rail: str = NATIVE_RAIL,
        is_auction: bool = False,
        auction_duration: int = 0,
    ) -> int:
        if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
            raise InvalidPrice(f"price must be a positive integer, got {price!r}")
        if not is_rail(payment_rail):
            raise InvalidRail(f"unknown payment rail {payment_rail!r}")
        if not self._custody.verify_ownership(asset, caller):
            raise NotOwner(f"{caller} does not own {asset.key}")
        if not self._custody.verify_approval(asset, self.address):
            raise NotApproved(f"marketplace is not approved for {asset.key}")
        if is_auction and auction_duration < MIN_AUCTION_DURATION:
            raise AuctionTooShort(f"auction duration {auction_duration}s < {MIN_AUCTION_DURATION}s")

        now = self._now()
        listing_id = self._next_id
        self._next_id += 1
        listing = Listing(
            listing_id=listing_id,
            seller=caller,
            asset=asset,
            price=price,
            payment_rail=payment_rail,
            is_auction=bool(is_auction),
            created_at=now,
            auction_end_time=now + auction_duration if is_auction else 0,
            min_bid_increment=price * MIN_BID_INCREMENT_PCT // 100,
        )
        self._listings[listing_id] = listing
        self._events.emit(
            LISTING_CREATED,
            listing_id=listing_id,
            seller=caller,
            contract=asset.contract,
            token_id=asset.token_id,
            price=price,
            rail=payment_rail,
            is_auction=listing.is_auction,
            auction_end_time=listing.auction_end_time,
        )

        self._custody.take_custody(asset, caller)
        return listing_id

    @_operation
    def commit_bid(self, caller: str, listing_id: int, commitment: str) -> None:
        listing = self._get(listing_id)
        if not listing.is_active:
            raise ListingInactive(f"listing {listing_id} is not active")
        if not listing.is_auction:
            raise NotAnAuction(f"listing {listing_id} is fixed price")
        now = self._now()
        if now >= listing.auction_end_time:
            raise AuctionEnded(f"auction {listing_id} ended at {listing.auction_end_time}")
        if listing.last_bid_time and now < listing.last_bid_time + MIN_TIME_BETWEEN_BIDS:
            raise BidTooSoon(
                f"next bid on {listing_id} allowed at {listing.last_bid_time + MIN_TIME_BETWEEN_BIDS}"
            )
        if not is_commitment(commitment):
            raise InvalidCommitment("commitment must be a 32-byte hex digest")

        listing.commitments[caller] = BidCommitment(commitment.lower(), now)
        self._events.emit(BID_COMMITTED, listing_id=listing_id, bidder=caller, commitment=commitment.lower())

    @_operation
    def reveal_bid(self, caller: str, listing_id: int, amount: int, nonce: str, value: int = 0) -> None:
        listing = self._get(listing_id)
        if not listing.is_active:
            raise ListingInactive(f"listing {listing_id} is not active")
        if not listing.is_auction:
            raise NotAnAuction(f"listing {listing_id} is fixed price")
        pending = listing.commitments.get(caller)
        if pending is None:
            raise NoBidCommitted(f"{caller} has no pending commitment on {listing_id}")
        now = self._now()
        if now > pending.committed_at + COMMIT_REVEAL_WINDOW:
            raise RevealWindowExpired(f"reveal window closed at {pending.committed_at + COMMIT_REVEAL_WINDOW}")
        try:
            expected = make_bid_commitment(caller, amount, nonce)
        except ValueError as e:
            raise InvalidReveal(f"malformed reveal: {e}") from e
        if not commitments_equal(expected, pending.commitment):
            raise InvalidReveal("revealed bid does not match the commitment")
        required = listing.highest_bid + listing.min_bid_increment
        if amount < required:
            raise BidIncrementTooLow(f"bid {amount} < required {required}")

        previous_bidder, previous_bid = listing.highest_bidder, listing.highest_bid
        listing.highest_bid = amount
        listing.highest_bidder = caller
        listing.last_bid_time = now
        del listing.commitments[caller]
        self._events.emit(BID_REVEALED, listing_id=listing_id, bidder=caller, amount=amount)

        rail = listing.payment_rail
        self._ledger.hold(self._cap, rail, caller, amount, value)
        if previous_bidder is not None:
            self._ledger.release(self._cap, rail, previous_bidder, previous_bidder, previous_bid)
            self._events.emit(BID_REFUNDED, listing_id=listing_id, bidder=previous_bidder, amount=previous_bid)

    @_operation
    def buy_nft(self, caller: str, listing_id: int, value: int = 0) -> SaleSplit:
        listing = self._get(listing_id)
        if not listing.is_active:
            raise ListingInactive(f"listing {listing_id} is not active")
        if listing.is_auction:
            raise NotFixedPrice(f"listing {listing_id} is an auction")

        listing.is_active = False
        listing.state = ListingState.SOLD

        self._ledger.hold(self._cap, listing.payment_rail, caller, listing.price, value)
        split = self._settlement.settle(listing, caller, listing.price)
        self._events.emit(
            PURCHASE_MADE,
            listing_id=listing_id,
            buyer=caller,
            seller=listing.seller,
            price=listing.price,
            seller_amount=split.seller_amount,
            marketplace_fee=split.marketplace_fee,
            royalty_amount=split.royalty_amount,
        )
        return split

    @_operation
    def end_auction(self, caller: str, listing_id: int) -> SaleSplit:
        listing = self._get(listing_id)
        if not listing.is_active:
            raise ListingInactive(f"listing {listing_id} is not active")
        if not listing.is_auction:
            raise NotAnAuction(f"listing {listing_id} is fixed price")
        if self._now() < listing.auction_end_time:
            raise AuctionNotEnded(f"auction {listing_id} ends at {listing.auction_end_time}")
        if listing.highest_bidder is None:
            raise NoBids(f"auction {listing_id} has no revealed bids")

        winner, amount = listing.highest_bidder, listing.highest_bid
        listing.is_active = False
        listing.state = ListingState.ENDED
        listing.commitments.clear()

        split = self._settlement.settle(listing, winner, amount)
        self._events.emit(
            AUCTION_ENDED,
            listing_id=listing_id,
            winner=winner,
            seller=listing.seller,
            amount=amount,
            seller_amount=split.seller_amount,
            marketplace_fee=split.marketplace_fee,
            royalty_amount=split.royalty_amount,
            ended_by=caller,
        )
        return split

    @_operation
    def cancel_listing(self, caller: str, listing_id: int) -> None:
        listing = self._get(listing_id)
        if caller != listing.seller:
            raise NotSeller(f"{caller} is not the seller of {listing_id}")
        if not listing.is_active:
            raise ListingInactive(f"listing {listing_id} is not active")

        listing.is_active = False
        listing.state = ListingState.CANCELLED
        dropped = len(listing.commitments)
        listing.commitments.clear()
        if listing.highest_bidder is not None:
            # the revealed bid stays in escrow, withdrawable by its bidder
            self._ledger.unlock(self._cap, listing.payment_rail, listing.highest_bidder, listing.highest_bid)
        self._events.emit(
            LISTING_CANCELLED,
            listing_id=listing_id,
            seller=caller,
            dropped_commitments=dropped,
            unlocked_bidder=listing.highest_bidder,
            unlocked_amount=listing.highest_bid if listing.highest_bidder else 0,
        )

        self._custody.release_custody(listing.asset, listing.seller)

    @_operation
    def withdraw(self, caller: str, rail: str = NATIVE_RAIL) -> int:
        amount = self._ledger.withdraw(self._cap, rail, caller)
        self._events.emit(FUNDS_WITHDRAWN, account=caller, rail=rail, amount=amount)
        return amount

    # ===== protocol-owner surface =====
    @_operation
    def update_marketplace_fee(self, admin: AdminCapability, new_bps: int) -> None:
        self._only_owner(admin)
        self._fees.update_marketplace_fee(self._cap, new_bps)

    @_operation
    def update_fee_recipient(self, admin: AdminCapability, new_recipient: str) -> None:
        self._only_owner(admin)
        self._fees.update_fee_recipient(self._cap, new_recipient)

    # ===== views =====
    def get_listing(self, listing_id: int) -> Listing:
        return Listing.from_dict(self._get(listing_id).to_dict())

    def listings(self, active_only: bool = False, seller: Optional[str] = None) -> List[Listing]:
        out = []
        for lid in sorted(self._listings):
            rec = self._listings[lid]
            if active_only and not rec.is_active:
                continue
            if seller is not None and rec.seller != seller:
                continue
            out.append(Listing.from_dict(rec.to_dict()))
        return out

    def quote(self, listing_id: int) -> SaleSplit:
        """Settlement preview at the current price (auction: highest bid, else list price)."""
        listing = self._get(listing_id)
        amount = listing.highest_bid if listing.is_auction and listing.highest_bidder else listing.price
        return self._fees.quote(amount, listing.asset)

    def pending_withdrawal(self, rail: str, account: str) -> int:
        return self._ledger.pending(rail, account)

    def held_balance(self, rail: str, account: str) -> int:
        return self._ledger.held(rail, account)

    def escrow_total(self, rail: str) -> int:
        return self._ledger.total(rail)

    # ===== direct collaborator access =====
    @_operation
    def run_exclusive(self, action: Callable[[], T]) -> T:
        """
        Run a direct collaborator mutation (sandbox minting, funding, approvals)
        as one unit of work, so it is ordered against every other operation and
        never lost to a concurrent rollback.
        """
        return action()

    def read_exclusive(self, read: Callable[[], T]) -> T:
        if self._entered_by == threading.get_ident():
            raise ReentrantCall("read_exclusive: reentrant call rejected")
        with self._lock:
            return read()

    @property
    def fee_bps(self) -> int:
        return self._fees.fee_bps

    @property
    def fee_recipient(self) -> str:
        return self._fees.fee_recipient

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def custody(self) -> AssetCustody:
        return self._custody

    @property
    def rails(self):
        return self._ledger.rails

    # ===== snapshot =====
    def to_state(self) -> dict:
        return {
            "next_id": self._next_id,
            "listings": [l.to_dict() for l in self._listings.values()],
        }

    def load_state(self, st: dict) -> None:
        self._next_id = int(st.get("next_id", 1))
        self._listings = {int(d["listing_id"]): Listing.from_dict(d) for d in st.get("listings", [])}

    def export_state(self) -> dict:
        """Whole-system JSON-safe snapshot (marketplace + every stateful collaborator)."""
        royalty = getattr(self._fees, "royalty_lookup", None)
        with self._lock:
            return {
                "version": 1,
                "address": self.address,
                "event_seq": self._events.last_seq,
                "market": self.to_state(),
                "ledger": self._ledger.to_state(),
                "fees": self._fees.to_state(),
                "custody": self._custody.to_state() if hasattr(self._custody, "to_state") else None,
                "rails": self._ledger.rails.to_state() if hasattr(self._ledger.rails, "to_state") else None,
                "royalties": royalty.to_state() if hasattr(royalty, "to_state") else None,
            }

    def import_state(self, st: dict) -> None:
        with self._lock:
            if st.get("address") and st["address"] != self.address:
                raise ValueError(f"state belongs to marketplace {st['address']}, not {self.address}")
            self.load_state(st.get("market") or {})
            self._ledger.load_state(st.get("ledger") or {})
            self._fees.load_state(st.get("fees") or {})
            for part, key in (
                (self._custody, "custody"),
                (self._ledger.rails, "rails"),
                (getattr(self._fees, "royalty_lookup", None), "royalties"),
            ):
                if st.get(key) is not None and hasattr(part, "load_state"):
                    part.load_state(st[key])
            self._events.resume_from(int(st.get("event_seq", 0)))
