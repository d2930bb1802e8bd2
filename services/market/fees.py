# services/market/fees.py
from __future__ import annotations

import logging
from typing import Callable, Optional

from services.crypto_core.commitments import is_account
from services.crypto_core.splits import BPS_DENOMINATOR, bps_of, remainder_after
from services.market.admin import AdminCapability, Ownable
from services.market.collaborators import RoyaltyLookup
from services.market.errors import FeeTooHigh, InvalidRecipient, SettlementUnderflow
from services.market.events import FEE_RECIPIENT_UPDATED, FEE_UPDATED, ROYALTIES_PAID, EventBus
from services.market.models import AssetRef, RoyaltyInfo, SaleSplit

LOG = logging.getLogger("market.fees")
LOG.addHandler(logging.NullHandler())

DEFAULT_FEE_BPS = 250
MAX_FEE_BPS = BPS_DENOMINATOR

Payout = Callable[[str, int], None]


class FeeCalculator(Ownable):
    """Marketplace cut plus creator royalty for a sale amount."""

    def __init__(
        self,
        owner: AdminCapability,
        fee_recipient: str,
        events: EventBus,
        royalty_lookup: Optional[RoyaltyLookup] = None,
        fee_bps: int = DEFAULT_FEE_BPS,
    ):
        super().__init__(owner)
        if not 0 <= fee_bps <= MAX_FEE_BPS:
            raise FeeTooHigh(f"fee {fee_bps} bps exceeds {MAX_FEE_BPS}")
        if not is_account(fee_recipient):
            raise InvalidRecipient(f"invalid fee recipient {fee_recipient!r}")
        self.fee_bps = fee_bps
        self.fee_recipient = fee_recipient
        self.royalty_lookup = royalty_lookup
        self._events = events

    # ===== computation =====
    def lookup_royalty(self, asset: AssetRef, sale_amount: int) -> Optional[RoyaltyInfo]:
        """Best effort: any failure or nonsense answer means no royalty."""
        if self.royalty_lookup is None:
            return None
        try:
            info = self.royalty_lookup.royalty_info(asset, sale_amount)
        except Exception as e:
            LOG.warning("royalty lookup failed for %s: %s", asset.key, e)
            return None
        if info is None:
            return None
        try:
            receiver, amount = info
            amount = int(amount)
        except (TypeError, ValueError):
            LOG.warning("royalty lookup for %s returned malformed %r", asset.key, info)
            return None
        if amount <= 0 or not is_account(receiver):
            return None
        return RoyaltyInfo(receiver, amount)

    def quote(self, sale_amount: int, asset: AssetRef) -> SaleSplit:
        if sale_amount < 0:
            raise SettlementUnderflow(f"negative sale amount {sale_amount}")
        fee = bps_of(sale_amount, self.fee_bps)
        royalty = self.lookup_royalty(asset, sale_amount)
        if royalty is not None and royalty.amount > sale_amount - fee:
            LOG.warning(
                "royalty %d for %s exceeds sale %d minus fee %d; ignoring it",
                royalty.amount, asset.key, sale_amount, fee,
            )
            royalty = None
        royalty_amount = royalty.amount if royalty else 0
        try:
            seller_amount = remainder_after(sale_amount, fee, royalty_amount)
        except ArithmeticError as e:
            raise SettlementUnderflow(str(e)) from e
        return SaleSplit(
            sale_amount=sale_amount,
            marketplace_fee=fee,
            royalty_amount=royalty_amount,
            royalty_receiver=royalty.receiver if royalty else None,
            seller_amount=seller_amount,
        )

    def calculate_and_distribute_fees(
        self,
        cap: AdminCapability,
        rail: str,
        sale_amount: int,
        asset: AssetRef,
        payout: Payout,
        listing_id: Optional[int] = None,
    ) -> SaleSplit:
        """
        Pay the marketplace fee and the royalty through `payout(recipient, amount)`
        and return the split; `split.seller_amount` is what is left for the seller.
        """
        self._only_owner(cap)
        split = self.quote(sale_amount, asset)
        if split.marketplace_fee:
            payout(self.fee_recipient, split.marketplace_fee)
        if split.royalty_amount:
            payout(split.royalty_receiver, split.royalty_amount)
            self._events.emit(
                ROYALTIES_PAID,
                listing_id=listing_id,
                contract=asset.contract,
                token_id=asset.token_id,
                receiver=split.royalty_receiver,
                amount=split.royalty_amount,
                rail=rail,
            )
        return split

    # ===== administration =====
    def update_marketplace_fee(self, cap: AdminCapability, new_bps: int) -> None:
        self._only_owner(cap)
        if isinstance(new_bps, bool) or not isinstance(new_bps, int) or not 0 <= new_bps <= MAX_FEE_BPS:
            raise FeeTooHigh(f"fee must be within 0..{MAX_FEE_BPS} bps, got {new_bps!r}")
        old, self.fee_bps = self.fee_bps, new_bps
        self._events.emit(FEE_UPDATED, old_fee_bps=old, new_fee_bps=new_bps)
        LOG.info("marketplace fee %d -> %d bps", old, new_bps)

    def update_fee_recipient(self, cap: AdminCapability, new_recipient: str) -> None:
        self._only_owner(cap)
        if not is_account(new_recipient):
            raise InvalidRecipient(f"invalid fee recipient {new_recipient!r}")
        old, self.fee_recipient = self.fee_recipient, new_recipient
        self._events.emit(FEE_RECIPIENT_UPDATED, old_recipient=old, new_recipient=new_recipient)
        LOG.info("fee recipient %s -> %s", old, new_recipient)

    # ===== snapshot =====
    def to_state(self) -> dict:
        return {"fee_bps": self.fee_bps, "fee_recipient": self.fee_recipient}

    def load_state(self, st: dict) -> None:
        self.fee_bps = int(st.get("fee_bps", self.fee_bps))
        self.fee_recipient = st.get("fee_recipient", self.fee_recipient)
