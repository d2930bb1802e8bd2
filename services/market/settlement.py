# services/market/settlement.py
from __future__ import annotations

import logging

from services.market.admin import AdminCapability
from services.market.collaborators import AssetCustody
from services.market.errors import AlreadySettled
from services.market.fees import FeeCalculator
from services.market.ledger import EscrowLedger
from services.market.models import Listing, SaleSplit

LOG = logging.getLogger("market.settlement")
LOG.addHandler(logging.NullHandler())


class SettlementSequencer:
    """
    Side effects of a terminal sale, in fixed order:
      marketplace fee -> royalty -> seller payout -> asset to buyer.

    The caller has already flipped the listing inactive. Funds come out of the
    payer's escrow hold, so the payer must have `amount` locked on the rail.
    The seller is paid before the asset moves.
    """

    def __init__(self, ledger: EscrowLedger, fees: FeeCalculator, custody: AssetCustody, cap: AdminCapability):
        self._ledger = ledger
        self._fees = fees
        self._custody = custody
        self._cap = cap

    def settle(self, listing: Listing, payer: str, amount: int) -> SaleSplit:
        if listing.is_active or listing.settled:
            raise AlreadySettled(f"listing {listing.listing_id} is not awaiting settlement")
        listing.settled = True
        listing.buyer = payer

        rail = listing.payment_rail

        def payout(recipient: str, value: int) -> None:
            self._ledger.release(self._cap, rail, payer, recipient, value)

        split = self._fees.calculate_and_distribute_fees(
            self._cap, rail, amount, listing.asset, payout, listing_id=listing.listing_id
        )
        payout(listing.seller, split.seller_amount)
        self._custody.release_custody(listing.asset, payer)

        LOG.info(
            "settled listing=%d payer=%s sale=%d fee=%d royalty=%d seller=%d",
            listing.listing_id, payer, split.sale_amount, split.marketplace_fee,
            split.royalty_amount, split.seller_amount,
        )
        return split
