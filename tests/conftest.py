import os
import tempfile

# services.api.app builds a module-level app from the environment at import time.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="market-tests-"))

import pytest

from services.crypto_core.commitments import NATIVE_RAIL, address_for, make_bid_commitment, new_nonce
from services.market.admin import AdminCapability
from services.market.bootstrap import build_marketplace
from services.market.collaborators import InMemoryAssetRegistry, InMemoryBank, InMemoryRoyaltyRegistry
from services.market.listings import MIN_AUCTION_DURATION
from services.market.models import AssetRef

START = 1_700_000_000
FUNDING = 1_000_000


class FakeClock:
    def __init__(self, t: int = START):
        self.t = t

    def __call__(self) -> int:
        return self.t

    def advance(self, seconds: int) -> int:
        self.t += seconds
        return self.t


class Harness:
    """A marketplace wired to in-memory collaborators plus a handful of funded accounts."""

    funding = FUNDING

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.owner = AdminCapability("owner")
        self.address = address_for("marketplace")
        self.custody = InMemoryAssetRegistry(custodian=self.address)
        self.bank = InMemoryBank()
        self.royalties = InMemoryRoyaltyRegistry()
        self.fee_recipient = address_for("fee-recipient")
        self.market = build_marketplace(
            owner=self.owner,
            fee_recipient=self.fee_recipient,
            address=self.address,
            custody=self.custody,
            rails=self.bank,
            royalty_lookup=self.royalties,
            clock=clock,
        )
        self.collection = address_for("collection")
        self.creator = address_for("creator")
        self.seller = address_for("seller")
        self.alice = address_for("alice")
        self.bob = address_for("bob")
        self.carol = address_for("carol")
        for who in (self.alice, self.bob, self.carol):
            self.bank.mint(NATIVE_RAIL, who, FUNDING)
        self._next_token = 1

    # ---- setup ----
    def mint(self, owner: str = None, approve: bool = True) -> AssetRef:
        owner = owner or self.seller
        asset = AssetRef(self.collection, self._next_token)
        self._next_token += 1
        self.custody.mint(asset, owner)
        if approve:
            self.custody.approve(asset, owner, self.address)
        return asset

    def list_fixed(self, price: int = 1000, rail: str = NATIVE_RAIL) -> int:
        return self.market.create_listing(self.seller, self.mint(), price, payment_rail=rail)

    def list_auction(self, price: int = 1000, duration: int = MIN_AUCTION_DURATION) -> int:
        return self.market.create_listing(
            self.seller, self.mint(), price, is_auction=True, auction_duration=duration
        )

    # ---- bidding ----
    def commit(self, bidder: str, listing_id: int, amount: int) -> str:
        nonce = new_nonce()
        self.market.commit_bid(bidder, listing_id, make_bid_commitment(bidder, amount, nonce))
        return nonce

    def bid(self, bidder: str, listing_id: int, amount: int) -> None:
        nonce = self.commit(bidder, listing_id, amount)
        self.market.reveal_bid(bidder, listing_id, amount, nonce, value=amount)

    # ---- views ----
    def balance(self, who: str, rail: str = NATIVE_RAIL) -> int:
        return self.bank.balance_of(rail, who)

    def kinds(self):
        return [e.kind for e in self.market.events.history]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def h(clock):
    return Harness(clock)
