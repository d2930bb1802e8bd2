from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, field_validator

from services.crypto_core.commitments import NATIVE_RAIL, is_account, is_commitment, is_rail


class _Model(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True, extra="ignore")


def _account(v: str) -> str:
    if not is_account(v):
        raise ValueError("must be a base58 32-byte account address")
    return v


def _rail(v: str) -> str:
    if not is_rail(v):
        raise ValueError("must be the native rail or a base58 token address")
    return v


class Ok(_Model):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


# ---------- market actions ----------
class CallerReq(_Model):
    caller: str = Field(..., description="Acting account (base58).")

    @field_validator("caller")
    @classmethod
    def _v_caller(cls, v: str) -> str:
        return _account(v)


class ListingCreateReq(CallerReq):
    contract: str = Field(..., description="Asset contract address (base58).")
    token_id: conint(ge=0) = Field(..., description="Token id within the contract.")
    price: conint(gt=0) = Field(..., description="Fixed price, or auction reference price (smallest units).")
    payment_rail: str = Field(NATIVE_RAIL, description="Native rail sentinel or token contract address.")
    is_auction: bool = Field(False, description="Sealed-bid auction instead of fixed price.")
    auction_duration: conint(ge=0) = Field(0, description="Auction length in seconds (>= 24h).")

    @field_validator("payment_rail")
    @classmethod
    def _v_rail(cls, v: str) -> str:
        return _rail(v)


class BuyReq(CallerReq):
    value: conint(ge=0) = Field(0, description="Native value sent with the call (native rail only).")


class CommitReq(CallerReq):
    commitment: str = Field(..., description="sha256(bidder || amount_u256_be || nonce32), hex.")

    @field_validator("commitment")
    @classmethod
    def _v_commitment(cls, v: str) -> str:
        if not is_commitment(v):
            raise ValueError("commitment must be 64 hex chars")
        return v.lower()


class RevealReq(CallerReq):
    amount: conint(ge=0) = Field(..., description="Committed bid amount.")
    nonce: str = Field(..., description="32-byte nonce used in the commitment (hex).")
    value: conint(ge=0) = Field(0, description="Native value sent with the reveal (native rail only).")


class WithdrawReq(CallerReq):
    payment_rail: str = Field(NATIVE_RAIL, description="Rail to withdraw from.")

    @field_validator("payment_rail")
    @classmethod
    def _v_rail(cls, v: str) -> str:
        return _rail(v)


# ---------- admin ----------
class FeeUpdateReq(_Model):
    fee_bps: int = Field(..., description="New marketplace fee in basis points (0..10000).")


class FeeRecipientReq(_Model):
    fee_recipient: str = Field(..., description="New fee recipient (base58).")


# ---------- sandbox ----------
class MintAssetReq(_Model):
    contract: str = Field(..., description="Asset contract address (base58).")
    token_id: conint(ge=0)
    owner: str = Field(..., description="Initial owner (base58).")

    @field_validator("owner")
    @classmethod
    def _v_owner(cls, v: str) -> str:
        return _account(v)


class ApproveAssetReq(_Model):
    contract: str
    token_id: conint(ge=0)
    owner: str = Field(..., description="Current owner granting the approval.")
    operator: Optional[str] = Field(None, description="Approved operator; defaults to the marketplace.")


class FundReq(_Model):
    account: str = Field(..., description="Account to credit (base58).")
    amount: conint(gt=0)
    payment_rail: str = Field(NATIVE_RAIL, description="Rail to credit.")

    @field_validator("account")
    @classmethod
    def _v_account(cls, v: str) -> str:
        return _account(v)

    @field_validator("payment_rail")
    @classmethod
    def _v_rail(cls, v: str) -> str:
        return _rail(v)


class RoyaltySetReq(_Model):
    contract: str
    receiver: str
    bps: conint(ge=0, le=10_000) = Field(..., description="Royalty share in basis points.")


# ---------- responses ----------
class AssetOut(_Model):
    contract: str
    token_id: int


class ListingOut(_Model):
    listing_id: int
    seller: str
    asset: AssetOut
    price: int
    payment_rail: str
    is_auction: bool
    created_at: int
    auction_end_time: int
    min_bid_increment: int
    is_active: bool
    highest_bid: int
    highest_bidder: Optional[str] = None
    last_bid_time: int
    state: str
    phase: str
    buyer: Optional[str] = None
    settled: bool
    pending_commitments: int = Field(0, description="Number of unrevealed commitments.")


class ListingsPayload(_Model):
    items: List[ListingOut]


class ListingCreateRes(Ok):
    listing: ListingOut


class SplitOut(_Model):
    sale_amount: int
    marketplace_fee: int
    royalty_amount: int
    royalty_receiver: Optional[str] = None
    seller_amount: int


class SettlementRes(Ok):
    listing_id: int
    split: SplitOut


class EscrowBalanceRes(_Model):
    account: str
    payment_rail: str
    pending: int = Field(..., description="Withdrawable balance.")
    held: int = Field(..., description="Balance locked behind a live bid.")


class WithdrawRes(Ok):
    account: str
    payment_rail: str
    amount: int


class ConfigRes(_Model):
    address: str = Field(..., description="Marketplace account (approve this operator).")
    native_rail: str
    fee_bps: int
    fee_recipient: str
    sandbox: bool
    min_auction_duration: int
    min_time_between_bids: int
    commit_reveal_window: int
    min_bid_increment_pct: int


class EventRow(_Model):
    model_config = ConfigDict(extra="allow")

    event_id: str
    seq: int
    kind: str
    ts: int


class MetricRow(_Model):
    kind: str = Field(..., description="Event kind.")
    count: conint(ge=0) = Field(..., description="Events of this kind recorded.")
    updated_at: str = Field(..., description="ISO-8601 timestamp (UTC).")


class ReplayRes(Ok):
    replayed: int


class BalanceRes(_Model):
    account: str
    payment_rail: str
    balance: int
    assets: List[Dict[str, Any]] = Field(default_factory=list)


__all__ = [
    "Ok",
    "CallerReq",
    "ListingCreateReq",
    "BuyReq",
    "CommitReq",
    "RevealReq",
    "WithdrawReq",
    "FeeUpdateReq",
    "FeeRecipientReq",
    "MintAssetReq",
    "ApproveAssetReq",
    "FundReq",
    "RoyaltySetReq",
    "AssetOut",
    "ListingOut",
    "ListingsPayload",
    "ListingCreateRes",
    "SplitOut",
    "SettlementRes",
    "EscrowBalanceRes",
    "WithdrawRes",
    "ConfigRes",
    "EventRow",
    "MetricRow",
    "ReplayRes",
    "BalanceRes",
]
