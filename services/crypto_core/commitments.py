# services/crypto_core/commitments.py
from __future__ import annotations

import hashlib
import hmac
import secrets

import base58

ADDRESS_LEN = 32
NONCE_LEN = 32
MAX_UINT256 = 2**256 - 1

# base58 of 32 zero bytes; the rail identifier of the native currency
NATIVE_RAIL = base58.b58encode(bytes(ADDRESS_LEN)).decode()


def sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def address_bytes(addr: str) -> bytes:
    """
    Decode a base58 account/contract address into its 32 raw bytes.
    Raises ValueError on anything else.
    """
    if not isinstance(addr, str) or not addr:
        raise ValueError(f"Invalid address: {addr!r}")
    try:
        raw = base58.b58decode(addr)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address: {addr!r}") from e
    if len(raw) != ADDRESS_LEN:
        raise ValueError(f"Address must decode to {ADDRESS_LEN} bytes, got {len(raw)}: {addr!r}")
    return raw


def is_address(addr: object) -> bool:
    try:
        address_bytes(addr)  # type: ignore[arg-type]
        return True
    except ValueError:
        return False


def is_rail(rail: object) -> bool:
    return rail == NATIVE_RAIL or is_address(rail)


def is_account(addr: object) -> bool:
    """A usable account: a valid address that is not the zero/native sentinel."""
    return is_address(addr) and addr != NATIVE_RAIL


def new_address() -> str:
    return base58.b58encode(secrets.token_bytes(ADDRESS_LEN)).decode()


def address_for(label: str) -> str:
    """Deterministic address derived from a label (sandbox accounts, tests)."""
    return base58.b58encode(sha256(b"market-account|" + label.encode())).decode()


def new_nonce() -> str:
    return secrets.token_bytes(NONCE_LEN).hex()


def _nonce_bytes(nonce_hex: str) -> bytes:
    try:
        nonce = bytes.fromhex(nonce_hex)
    except (TypeError, ValueError) as e:
        raise ValueError("nonce must be hex") from e
    if len(nonce) != NONCE_LEN:
        raise ValueError(f"nonce must be {NONCE_LEN} bytes")
    return nonce


def make_bid_commitment(bidder: str, amount: int, nonce_hex: str) -> str:
    """
    Sealed-bid commitment: sha256(bidder_bytes32 || amount_uint256_be || nonce32), hex.

    The bidder is part of the preimage, so a commitment observed in flight cannot be
    revealed by anyone else.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0 or amount > MAX_UINT256:
        raise ValueError(f"amount out of range: {amount!r}")
    preimage = address_bytes(bidder) + amount.to_bytes(32, "big") + _nonce_bytes(nonce_hex)
    return sha256(preimage).hex()


def is_commitment(value: object) -> bool:
    if not isinstance(value, str) or len(value) != 64:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


def commitments_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.lower(), b.lower())


__all__ = [
    "ADDRESS_LEN",
    "NONCE_LEN",
    "MAX_UINT256",
    "NATIVE_RAIL",
    "sha256",
    "address_bytes",
    "is_address",
    "is_rail",
    "is_account",
    "new_address",
    "address_for",
    "new_nonce",
    "make_bid_commitment",
    "is_commitment",
    "commitments_equal",
]
