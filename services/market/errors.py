# services/market/errors.py
from __future__ import annotations


class MarketError(RuntimeError):
    """Base class for every rejected marketplace operation."""

    code = "MARKET_ERROR"
    http_status = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)


# ===== Precondition violations: rejected before any effect =====
class PreconditionError(MarketError):
    code = "PRECONDITION_FAILED"


class ListingNotFound(PreconditionError):
    code = "LISTING_NOT_FOUND"
    http_status = 404


class NotOwner(PreconditionError):
    code = "NOT_OWNER"
    http_status = 403


class NotApproved(PreconditionError):
    code = "NOT_APPROVED"
    http_status = 403


class NotSeller(PreconditionError):
    code = "NOT_SELLER"
    http_status = 403


class InvalidPrice(PreconditionError):
    code = "INVALID_PRICE"


class InvalidRail(PreconditionError):
    code = "INVALID_RAIL"


class AuctionTooShort(PreconditionError):
    code = "AUCTION_TOO_SHORT"


class ListingInactive(PreconditionError):
    code = "LISTING_INACTIVE"
    http_status = 409


class NotAnAuction(PreconditionError):
    code = "NOT_AN_AUCTION"


class NotFixedPrice(PreconditionError):
    code = "NOT_FIXED_PRICE"


class AuctionEnded(PreconditionError):
    code = "AUCTION_ENDED"
    http_status = 409


class AuctionNotEnded(PreconditionError):
    code = "AUCTION_NOT_ENDED"
    http_status = 409


class BidTooSoon(PreconditionError):
    code = "BID_TOO_SOON"
    http_status = 429


class InvalidCommitment(PreconditionError):
    code = "INVALID_COMMITMENT"


class NoBidCommitted(PreconditionError):
    code = "NO_BID_COMMITTED"


class RevealWindowExpired(PreconditionError):
    code = "REVEAL_WINDOW_EXPIRED"
    http_status = 409


class InvalidReveal(PreconditionError):
    code = "INVALID_REVEAL"


class BidIncrementTooLow(PreconditionError):
    code = "BID_INCREMENT_TOO_LOW"


class NoBids(PreconditionError):
    code = "NO_BIDS"
    http_status = 409


class IncorrectPayment(PreconditionError):
    code = "INCORRECT_PAYMENT"


class NoFundsToWithdraw(PreconditionError):
    code = "NO_FUNDS_TO_WITHDRAW"


class ReentrantCall(PreconditionError):
    """
    A marketplace entry point was called from inside a running operation (a
    payout hook calling back into `buy_nft`, for instance). The guard trips
    before the inner call reads any listing, so a reentrant purchase of the
    same listing fails here rather than with `ListingInactive`; either way the
    outer operation is the only one that can settle.
    """

    code = "REENTRANT_CALL"
    http_status = 409


# ===== Arithmetic / configuration violations =====
class ConfigurationError(MarketError):
    code = "INVALID_CONFIGURATION"


class Unauthorized(ConfigurationError):
    code = "UNAUTHORIZED"
    http_status = 403


class FeeTooHigh(ConfigurationError):
    code = "FEE_TOO_HIGH"


class InvalidRecipient(ConfigurationError):
    code = "INVALID_RECIPIENT"


# ===== Fund / asset movement failures: abort the enclosing operation =====
class TransferFailed(MarketError):
    code = "TRANSFER_FAILED"
    http_status = 502


class InsufficientEscrow(MarketError):
    code = "INSUFFICIENT_ESCROW"
    http_status = 500


class SettlementUnderflow(MarketError):
    code = "SETTLEMENT_UNDERFLOW"
    http_status = 500


class AlreadySettled(MarketError):
    code = "ALREADY_SETTLED"
    http_status = 409
