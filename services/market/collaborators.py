# services/market/collaborators.py
"""
External collaborators consumed by the marketplace core.

The core only relies on the protocols below. The in-memory implementations back
the sandbox service and the test-suite; they expose `to_state()/load_state()` so
the marketplace can roll them back together with its own state when an operation
fails half-way.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

import requests

from services.crypto_core.commitments import NATIVE_RAIL, is_address
from services.crypto_core.splits import bps_of
from services.market.errors import TransferFailed
from services.market.models import AssetRef, RoyaltyInfo

LOG = logging.getLogger("market.collaborators")
LOG.addHandler(logging.NullHandler())


# ===== Protocols =====
class AssetCustody(Protocol):
    def verify_ownership(self, asset: AssetRef, claimed_owner: str) -> bool: ...

    def verify_approval(self, asset: AssetRef, operator: str) -> bool: ...

    def take_custody(self, asset: AssetRef, from_: str) -> None: ...

    def release_custody(self, asset: AssetRef, to: str) -> None: ...

    def transfer_direct(self, asset: AssetRef, from_: str, to: str) -> None: ...


class PaymentRails(Protocol):
    def transfer(self, rail: str, from_: str, to: str, amount: int) -> None: ...


class RoyaltyLookup(Protocol):
    def royalty_info(self, asset: AssetRef, sale_amount: int) -> Optional[Tuple[str, int]]: ...


# ===== Asset custody =====
class InMemoryAssetRegistry:
    """ERC-721 style registry: one owner per asset, per-asset approvals, operators."""

    def __init__(self, custodian: str):
        self.custodian = custodian
        self._owners: Dict[AssetRef, str] = {}
        self._approvals: Dict[AssetRef, str] = {}
        self._operators: Dict[str, Set[str]] = {}
        self._in_custody: Dict[AssetRef, str] = {}  # asset -> depositor

    # --- sandbox / setup ---
    def mint(self, asset: AssetRef, owner: str) -> None:
        if asset in self._owners:
            raise TransferFailed(f"asset {asset.key} already minted")
        self._owners[asset] = owner

    def approve(self, asset: AssetRef, owner: str, operator: str) -> None:
        if self._owners.get(asset) != owner:
            raise TransferFailed(f"{owner} does not own {asset.key}")
        self._approvals[asset] = operator

    def set_approval_for_all(self, owner: str, operator: str, approved: bool = True) -> None:
        ops = self._operators.setdefault(owner, set())
        if approved:
            ops.add(operator)
        else:
            ops.discard(operator)

    def owner_of(self, asset: AssetRef) -> Optional[str]:
        return self._owners.get(asset)

    def in_custody(self, asset: AssetRef) -> bool:
        return asset in self._in_custody

    def assets_of(self, owner: str) -> List[AssetRef]:
        return sorted((a for a, o in self._owners.items() if o == owner), key=lambda a: (a.contract, a.token_id))

    # --- AssetCustody ---
    def verify_ownership(self, asset: AssetRef, claimed_owner: str) -> bool:
        return self._owners.get(asset) == claimed_owner

    def verify_approval(self, asset: AssetRef, operator: str) -> bool:
        owner = self._owners.get(asset)
        if owner is None:
            return False
        return self._approvals.get(asset) == operator or operator in self._operators.get(owner, set())

    def take_custody(self, asset: AssetRef, from_: str) -> None:
        if self._owners.get(asset) != from_:
            raise TransferFailed(f"custody: {from_} does not own {asset.key}")
        self._owners[asset] = self.custodian
        self._approvals.pop(asset, None)
        self._in_custody[asset] = from_

    def release_custody(self, asset: AssetRef, to: str) -> None:
        if asset not in self._in_custody:
            raise TransferFailed(f"custody: {asset.key} is not held")
        del self._in_custody[asset]
        self._owners[asset] = to

    def transfer_direct(self, asset: AssetRef, from_: str, to: str) -> None:
        if self._owners.get(asset) != from_:
            raise TransferFailed(f"transfer: {from_} does not own {asset.key}")
        self._owners[asset] = to
        self._approvals.pop(asset, None)

    # --- snapshot ---
    def to_state(self) -> dict:
        return {
            "custodian": self.custodian,
            "owners": {a.key: o for a, o in self._owners.items()},
            "approvals": {a.key: op for a, op in self._approvals.items()},
            "operators": {o: sorted(ops) for o, ops in self._operators.items()},
            "in_custody": {a.key: d for a, d in self._in_custody.items()},
        }

    def load_state(self, st: dict) -> None:
        self.custodian = st.get("custodian", self.custodian)
        self._owners = {AssetRef.from_key(k): v for k, v in st.get("owners", {}).items()}
        self._approvals = {AssetRef.from_key(k): v for k, v in st.get("approvals", {}).items()}
        self._operators = {o: set(ops) for o, ops in st.get("operators", {}).items()}
        self._in_custody = {AssetRef.from_key(k): v for k, v in st.get("in_custody", {}).items()}


# ===== Payment rails =====
ReceiveHook = Callable[[str, str, int], None]


class InMemoryBank:
    """
    Balances per (rail, account) for the native currency and any token rail.

    `reject(account)` makes incoming transfers to that account fail, and
    `on_receive(account, hook)` calls `hook(rail, from_, amount)` after funds land,
    which is how tests model a receiver that reenters the marketplace.
    """

    def __init__(self) -> None:
        self._balances: Dict[Tuple[str, str], int] = {}
        self._rejecting: Set[str] = set()
        self._hooks: Dict[str, ReceiveHook] = {}

    def mint(self, rail: str, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        self._balances[(rail, account)] = self._balances.get((rail, account), 0) + amount

    def balance_of(self, rail: str, account: str) -> int:
        return self._balances.get((rail, account), 0)

    def reject(self, account: str, rejecting: bool = True) -> None:
        if rejecting:
            self._rejecting.add(account)
        else:
            self._rejecting.discard(account)

    def on_receive(self, account: str, hook: Optional[ReceiveHook]) -> None:
        if hook is None:
            self._hooks.pop(account, None)
        else:
            self._hooks[account] = hook

    def transfer(self, rail: str, from_: str, to: str, amount: int) -> None:
        if amount < 0:
            raise TransferFailed(f"negative transfer amount {amount}")
        if amount == 0:
            return
        if to in self._rejecting:
            raise TransferFailed(f"{'native' if rail == NATIVE_RAIL else rail} transfer rejected by {to}")
        have = self._balances.get((rail, from_), 0)
        if have < amount:
            raise TransferFailed(f"insufficient balance: {from_} has {have}, needs {amount}")
        self._balances[(rail, from_)] = have - amount
        self._balances[(rail, to)] = self._balances.get((rail, to), 0) + amount
        hook = self._hooks.get(to)
        if hook is not None:
            hook(rail, from_, amount)

    def to_state(self) -> dict:
        return {"balances": [[r, a, v] for (r, a), v in self._balances.items() if v]}

    def load_state(self, st: dict) -> None:
        self._balances = {(r, a): int(v) for r, a, v in st.get("balances", [])}


# ===== Royalty lookup =====
class InMemoryRoyaltyRegistry:
    """Per-contract royalty (receiver, bps), ERC-2981 style."""

    def __init__(self) -> None:
        self._royalties: Dict[str, Tuple[str, int]] = {}
        self._broken: Set[str] = set()

    def set_royalty(self, contract: str, receiver: str, bps: int) -> None:
        if not 0 <= bps <= 10_000:
            raise ValueError("royalty bps must be within 0..10000")
        self._royalties[contract] = (receiver, bps)

    def clear_royalty(self, contract: str) -> None:
        self._royalties.pop(contract, None)

    def break_contract(self, contract: str, broken: bool = True) -> None:
        if broken:
            self._broken.add(contract)
        else:
            self._broken.discard(contract)

    def royalty_info(self, asset: AssetRef, sale_amount: int) -> Optional[Tuple[str, int]]:
        if asset.contract in self._broken:
            raise RuntimeError(f"royaltyInfo reverted for {asset.contract}")
        rec = self._royalties.get(asset.contract)
        if rec is None:
            return None
        receiver, bps = rec
        return RoyaltyInfo(receiver, bps_of(sale_amount, bps))

    def to_state(self) -> dict:
        return {"royalties": {c: [r, b] for c, (r, b) in self._royalties.items()}}

    def load_state(self, st: dict) -> None:
        self._royalties = {c: (r, int(b)) for c, (r, b) in st.get("royalties", {}).items()}


class HttpRoyaltyLookup:
    """
    Royalty registry reachable over HTTP:
      GET {base_url}/royalty/{contract}/{token_id}?sale_amount=N -> {"receiver": str, "amount": int}
    A 404 means "no royalty". Every other problem raises; the fee calculator
    decides what a failure means.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def royalty_info(self, asset: AssetRef, sale_amount: int) -> Optional[Tuple[str, int]]:
        r = self._session.get(
            f"{self.base_url}/royalty/{asset.contract}/{asset.token_id}",
            params={"sale_amount": sale_amount},
            timeout=self.timeout,
        )
        if r.status_code == 404:
            return None
        r.raise_for_status()
        body: Any = r.json()
        receiver = body.get("receiver")
        amount = int(body.get("amount", 0))
        if not is_address(receiver):
            raise ValueError(f"royalty registry returned invalid receiver {receiver!r}")
        return RoyaltyInfo(receiver, amount)


__all__: List[str] = [
    "AssetCustody",
    "PaymentRails",
    "RoyaltyLookup",
    "InMemoryAssetRegistry",
    "InMemoryBank",
    "InMemoryRoyaltyRegistry",
    "HttpRoyaltyLookup",
]
