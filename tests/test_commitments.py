import hashlib

import base58
import pytest

from services.crypto_core.commitments import (
    MAX_UINT256,
    NATIVE_RAIL,
    address_bytes,
    address_for,
    commitments_equal,
    is_account,
    is_address,
    is_commitment,
    is_rail,
    make_bid_commitment,
    new_address,
    new_nonce,
)
from services.crypto_core.splits import bps_of, remainder_after


def test_native_rail_is_zero_address():
    assert NATIVE_RAIL == "1" * 32
    assert address_bytes(NATIVE_RAIL) == bytes(32)
    assert is_rail(NATIVE_RAIL)
    assert not is_account(NATIVE_RAIL)


def test_address_helpers():
    a = address_for("alice")
    assert a == address_for("alice")
    assert a != address_for("bob")
    assert len(address_bytes(a)) == 32
    assert is_account(a) and is_rail(a)
    assert is_address(new_address())
    assert not is_address("not-base58-0OIl")
    assert not is_address(base58.b58encode(b"short").decode())
    assert not is_address(None)


def test_commitment_layout():
    bidder = address_for("alice")
    nonce = new_nonce()
    expected = hashlib.sha256(
        base58.b58decode(bidder) + (1050).to_bytes(32, "big") + bytes.fromhex(nonce)
    ).hexdigest()
    assert make_bid_commitment(bidder, 1050, nonce) == expected
    assert is_commitment(expected)


def test_commitment_binds_bidder_amount_and_nonce():
    nonce = new_nonce()
    c = make_bid_commitment(address_for("alice"), 1000, nonce)
    assert c != make_bid_commitment(address_for("bob"), 1000, nonce)
    assert c != make_bid_commitment(address_for("alice"), 1001, nonce)
    assert c != make_bid_commitment(address_for("alice"), 1000, new_nonce())


@pytest.mark.parametrize("amount", [-1, MAX_UINT256 + 1, True, 1.5])
def test_commitment_rejects_bad_amount(amount):
    with pytest.raises(ValueError):
        make_bid_commitment(address_for("alice"), amount, new_nonce())


def test_commitment_rejects_bad_nonce():
    with pytest.raises(ValueError):
        make_bid_commitment(address_for("alice"), 1, "abcd")
    with pytest.raises(ValueError):
        make_bid_commitment(address_for("alice"), 1, "zz" * 32)


def test_is_commitment_and_compare():
    c = make_bid_commitment(address_for("alice"), 7, new_nonce())
    assert commitments_equal(c, c.upper())
    assert not is_commitment(c[:-2])
    assert not is_commitment("g" * 64)
    assert not is_commitment(None)


def test_bps_of_truncates():
    assert bps_of(1000, 250) == 25
    assert bps_of(1050, 250) == 26
    assert bps_of(39, 250) == 0
    with pytest.raises(ValueError):
        bps_of(-1, 250)


def test_remainder_after_refuses_underflow():
    assert remainder_after(1000, 25, 50) == 925
    with pytest.raises(ArithmeticError):
        remainder_after(100, 60, 50)
    with pytest.raises(ArithmeticError):
        remainder_after(100, -1)
