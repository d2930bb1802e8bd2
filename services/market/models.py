# services/market/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional


class ListingState(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    ENDED = "ended"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AssetRef:
    contract: str
    token_id: int

    @property
    def key(self) -> str:
        return f"{self.contract}:{self.token_id}"

    @classmethod
    def from_key(cls, key: str) -> "AssetRef":
        contract, token_id = key.rsplit(":", 1)
        return cls(contract, int(token_id))

    def to_dict(self) -> Dict[str, Any]:
        return {"contract": self.contract, "token_id": self.token_id}


class RoyaltyInfo(NamedTuple):
    receiver: str
    amount: int


@dataclass(frozen=True)
class SaleSplit:
    sale_amount: int
    marketplace_fee: int
    royalty_amount: int
    royalty_receiver: Optional[str]
    seller_amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sale_amount": self.sale_amount,
            "marketplace_fee": self.marketplace_fee,
            "royalty_amount": self.royalty_amount,
            "royalty_receiver": self.royalty_receiver,
            "seller_amount": self.seller_amount,
        }


@dataclass
class BidCommitment:
    commitment: str
    committed_at: int


@dataclass
class Listing:
    listing_id: int
    seller: str
    asset: AssetRef
    price: int
    payment_rail: str
    is_auction: bool
    created_at: int
    auction_end_time: int = 0
    min_bid_increment: int = 0
    is_active: bool = True
    highest_bid: int = 0
    highest_bidder: Optional[str] = None
    last_bid_time: int = 0
    state: ListingState = ListingState.ACTIVE
    buyer: Optional[str] = None
    settled: bool = False
    commitments: Dict[str, BidCommitment] = field(default_factory=dict)

    @property
    def phase(self) -> str:
        if self.state is not ListingState.ACTIVE:
            return self.state.value
        if not self.is_auction:
            return "created_fixed"
        if self.highest_bidder is None and not self.commitments:
            return "created_auction"
        return "bidding_open"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "seller": self.seller,
            "asset": self.asset.to_dict(),
            "price": self.price,
            "payment_rail": self.payment_rail,
            "is_auction": self.is_auction,
            "created_at": self.created_at,
            "auction_end_time": self.auction_end_time,
            "min_bid_increment": self.min_bid_increment,
            "is_active": self.is_active,
            "highest_bid": self.highest_bid,
            "highest_bidder": self.highest_bidder,
            "last_bid_time": self.last_bid_time,
            "state": self.state.value,
            "phase": self.phase,
            "buyer": self.buyer,
            "settled": self.settled,
            "commitments": {
                bidder: {"commitment": c.commitment, "committed_at": c.committed_at}
                for bidder, c in self.commitments.items()
            },
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Listing":
        asset = d["asset"]
        return cls(
            listing_id=int(d["listing_id"]),
            seller=d["seller"],
            asset=AssetRef(asset["contract"], int(asset["token_id"])),
            price=int(d["price"]),
            payment_rail=d["payment_rail"],
            is_auction=bool(d["is_auction"]),
            created_at=int(d["created_at"]),
            auction_end_time=int(d.get("auction_end_time", 0)),
            min_bid_increment=int(d.get("min_bid_increment", 0)),
            is_active=bool(d.get("is_active", True)),
            highest_bid=int(d.get("highest_bid", 0)),
            highest_bidder=d.get("highest_bidder"),
            last_bid_time=int(d.get("last_bid_time", 0)),
            state=ListingState(d.get("state", ListingState.ACTIVE.value)),
            buyer=d.get("buyer"),
            settled=bool(d.get("settled", False)),
            commitments={
                bidder: BidCommitment(c["commitment"], int(c["committed_at"]))
                for bidder, c in (d.get("commitments") or {}).items()
            },
        )
