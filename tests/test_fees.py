import logging

import pytest

from services.crypto_core.commitments import NATIVE_RAIL, address_for
from services.market.admin import AdminCapability
from services.market.collaborators import InMemoryRoyaltyRegistry
from services.market.errors import FeeTooHigh, InvalidRecipient, Unauthorized
from services.market.events import FEE_RECIPIENT_UPDATED, FEE_UPDATED, EventBus
from services.market.fees import FeeCalculator
from services.market.models import AssetRef

COLLECTION = address_for("collection")
ASSET = AssetRef(COLLECTION, 1)


@pytest.fixture
def registry():
    return InMemoryRoyaltyRegistry()


@pytest.fixture
def cap():
    return AdminCapability("owner")


@pytest.fixture
def calc(cap, registry):
    return FeeCalculator(cap, address_for("fee-recipient"), EventBus(lambda: 0), royalty_lookup=registry)


def test_quote_without_royalty(calc):
    split = calc.quote(1000, ASSET)
    assert (split.marketplace_fee, split.royalty_amount, split.seller_amount) == (25, 0, 975)
    assert split.royalty_receiver is None


def test_quote_with_royalty(calc, registry):
    registry.set_royalty(COLLECTION, address_for("creator"), 500)
    split = calc.quote(1000, ASSET)
    assert (split.marketplace_fee, split.royalty_amount, split.seller_amount) == (25, 50, 925)
    assert split.royalty_receiver == address_for("creator")


@pytest.mark.parametrize("sale,fee_bps,royalty_bps", [(1, 250, 500), (999, 10_000, 0), (12_345_678, 137, 999)])
def test_split_sums_to_sale(cap, registry, sale, fee_bps, royalty_bps):
    registry.set_royalty(COLLECTION, address_for("creator"), royalty_bps)
    calc = FeeCalculator(cap, address_for("fee-recipient"), EventBus(), royalty_lookup=registry, fee_bps=fee_bps)
    split = calc.quote(sale, ASSET)
    assert split.seller_amount + split.marketplace_fee + split.royalty_amount == sale
    assert split.seller_amount >= 0


def test_failing_royalty_lookup_means_no_royalty(calc, registry, caplog):
    registry.set_royalty(COLLECTION, address_for("creator"), 500)
    registry.break_contract(COLLECTION)
    with caplog.at_level(logging.WARNING, logger="market"):
        split = calc.quote(1000, ASSET)
    assert split.royalty_amount == 0 and split.seller_amount == 975
    assert "royalty lookup failed" in caplog.text


def test_oversized_royalty_is_ignored(calc, registry, caplog):
    registry.set_royalty(COLLECTION, address_for("creator"), 10_000)
    with caplog.at_level(logging.WARNING, logger="market"):
        split = calc.quote(1000, ASSET)
    assert split.royalty_amount == 0 and split.seller_amount == 975
    assert "exceeds sale" in caplog.text


def test_royalty_to_zero_address_is_ignored(calc, registry):
    registry.set_royalty(COLLECTION, NATIVE_RAIL, 500)
    assert calc.quote(1000, ASSET).royalty_amount == 0


def test_distribute_pays_fee_then_royalty(calc, cap, registry):
    registry.set_royalty(COLLECTION, address_for("creator"), 500)
    paid = []
    split = calc.calculate_and_distribute_fees(cap, NATIVE_RAIL, 1000, ASSET, lambda to, amt: paid.append((to, amt)))
    assert paid == [(address_for("fee-recipient"), 25), (address_for("creator"), 50)]
    assert split.seller_amount == 925


def test_distribute_requires_owner(calc):
    with pytest.raises(Unauthorized):
        calc.calculate_and_distribute_fees(AdminCapability(), NATIVE_RAIL, 1000, ASSET, lambda *a: None)


def test_update_fee(calc, cap):
    events = []
    calc._events.subscribe(events.append)
    calc.update_marketplace_fee(cap, 500)
    assert calc.fee_bps == 500
    assert calc.quote(1000, ASSET).marketplace_fee == 50
    assert events[-1].kind == FEE_UPDATED
    assert events[-1].payload == {"old_fee_bps": 250, "new_fee_bps": 500}


def test_update_fee_bounds_and_auth(calc, cap):
    with pytest.raises(FeeTooHigh):
        calc.update_marketplace_fee(cap, 10_001)
    with pytest.raises(FeeTooHigh):
        calc.update_marketplace_fee(cap, -1)
    with pytest.raises(Unauthorized):
        calc.update_marketplace_fee(AdminCapability("intruder"), 100)
    calc.update_marketplace_fee(cap, 10_000)
    assert calc.quote(1000, ASSET).seller_amount == 0


def test_update_fee_recipient(calc, cap):
    events = []
    calc._events.subscribe(events.append)
    calc.update_fee_recipient(cap, address_for("treasury"))
    assert calc.fee_recipient == address_for("treasury")
    assert events[-1].kind == FEE_RECIPIENT_UPDATED
    with pytest.raises(InvalidRecipient):
        calc.update_fee_recipient(cap, NATIVE_RAIL)
    with pytest.raises(InvalidRecipient):
        calc.update_fee_recipient(cap, "nope")


def test_matching_token_grants_access(registry):
    owner = AdminCapability("owner", token="s3cret")
    calc = FeeCalculator(owner, address_for("fee-recipient"), EventBus(), royalty_lookup=registry)
    calc.update_marketplace_fee(AdminCapability("request", token="s3cret"), 100)
    assert calc.fee_bps == 100


def test_marketplace_fee_surface_is_owner_only(h):
    with pytest.raises(Unauthorized):
        h.market.update_marketplace_fee(AdminCapability(), 100)
    h.market.update_marketplace_fee(h.owner, 100)
    assert h.market.fee_bps == 100
    h.market.update_fee_recipient(h.owner, h.carol)
    assert h.market.fee_recipient == h.carol
    assert h.kinds()[-2:] == [FEE_UPDATED, FEE_RECIPIENT_UPDATED]


def test_marketplace_ownership_transfer(h):
    successor = AdminCapability("successor")
    h.market.transfer_ownership(h.owner, successor)
    with pytest.raises(Unauthorized):
        h.market.update_marketplace_fee(h.owner, 100)
    h.market.update_marketplace_fee(successor, 100)
    assert h.market.fee_bps == 100
    # subordinate calculator stays owned by the marketplace itself
    with pytest.raises(Unauthorized):
        h.market._fees.update_marketplace_fee(successor, 300)
