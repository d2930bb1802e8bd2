# services/market/bootstrap.py
from __future__ import annotations

from typing import Callable, Optional

from services.crypto_core.commitments import new_address
from services.market.admin import AdminCapability
from services.market.collaborators import (
    AssetCustody,
    InMemoryAssetRegistry,
    InMemoryBank,
    PaymentRails,
    RoyaltyLookup,
)
from services.market.events import EventBus
from services.market.fees import DEFAULT_FEE_BPS, FeeCalculator
from services.market.ledger import EscrowLedger
from services.market.listings import Marketplace


def build_marketplace(
    *,
    owner: AdminCapability,
    fee_recipient: str,
    address: Optional[str] = None,
    custody: Optional[AssetCustody] = None,
    rails: Optional[PaymentRails] = None,
    royalty_lookup: Optional[RoyaltyLookup] = None,
    fee_bps: int = DEFAULT_FEE_BPS,
    clock: Optional[Callable[[], int]] = None,
    events: Optional[EventBus] = None,
) -> Marketplace:
    """
    Instantiate the ledger, the fee calculator and the state machine, wire them
    to the collaborators and hand ownership of the subordinates to the
    marketplace. Without explicit collaborators the in-memory ones are used,
    with the marketplace address as custodian and vault.
    """
    address = address or new_address()
    events = events or EventBus(clock)
    custody = custody if custody is not None else InMemoryAssetRegistry(custodian=address)
    rails = rails if rails is not None else InMemoryBank()

    deployer = AdminCapability("deployer")
    ledger = EscrowLedger(rails, vault=address, owner=deployer)
    fees = FeeCalculator(deployer, fee_recipient, events, royalty_lookup=royalty_lookup, fee_bps=fee_bps)
    return Marketplace(
        address=address,
        owner=owner,
        custody=custody,
        ledger=ledger,
        fees=fees,
        events=events,
        deployer=deployer,
        clock=clock,
    )
