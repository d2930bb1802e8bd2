# services/market/ledger.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Tuple

from services.crypto_core.commitments import NATIVE_RAIL
from services.market.admin import AdminCapability, Ownable
from services.market.collaborators import PaymentRails
from services.market.errors import IncorrectPayment, InsufficientEscrow, NoFundsToWithdraw

LOG = logging.getLogger("market.ledger")
LOG.addHandler(logging.NullHandler())


@dataclass
class EscrowEntry:
    balance: int = 0
    locked: int = 0

    @property
    def available(self) -> int:
        return self.balance - self.locked


class EscrowLedger(Ownable):
    """
    Funds held by the marketplace vault, per (rail, account).

    `balance` is everything the vault owes the account; `locked` is the part
    backing a live highest bid (or an in-flight purchase) and is only released
    by settlement or refund. `withdraw` pays out the rest.
    """

    def __init__(self, rails: PaymentRails, vault: str, owner: AdminCapability):
        super().__init__(owner)
        self.rails = rails
        self.vault = vault
        self._entries: Dict[Tuple[str, str], EscrowEntry] = {}

    def _entry(self, rail: str, account: str) -> EscrowEntry:
        return self._entries.setdefault((rail, account), EscrowEntry())

    def _prune(self, rail: str, account: str) -> None:
        e = self._entries.get((rail, account))
        if e is not None and e.balance == 0 and e.locked == 0:
            del self._entries[(rail, account)]

    # ===== views =====
    def pending(self, rail: str, account: str) -> int:
        e = self._entries.get((rail, account))
        return e.available if e else 0

    def held(self, rail: str, account: str) -> int:
        e = self._entries.get((rail, account))
        return e.locked if e else 0

    def total(self, rail: str) -> int:
        return sum(e.balance for (r, _), e in self._entries.items() if r == rail)

    # ===== mutations (owner only) =====
    def hold(self, cap: AdminCapability, rail: str, payer: str, amount: int, value: int = 0) -> int:
        """
        Pull `amount` from `payer` into the vault and lock it.
        Native rail: `value` is what accompanied the call; must cover `amount`,
        the excess goes straight back. Token rail: no native value allowed.
        Returns the refunded excess.
        """
        self._only_owner(cap)
        if amount <= 0:
            raise IncorrectPayment(f"hold amount must be > 0, got {amount}")
        if value < 0:
            raise IncorrectPayment("negative value")
        if rail == NATIVE_RAIL and value < amount:
            raise IncorrectPayment(f"sent {value}, required {amount}")
        if rail != NATIVE_RAIL and value:
            raise IncorrectPayment("native value sent with a token payment")

        e = self._entry(rail, payer)
        e.balance += amount
        e.locked += amount

        if rail == NATIVE_RAIL:
            excess = value - amount
            self.rails.transfer(rail, payer, self.vault, value)
            if excess:
                self.rails.transfer(rail, self.vault, payer, excess)
        else:
            excess = 0
            self.rails.transfer(rail, payer, self.vault, amount)

        LOG.debug("hold rail=%s payer=%s amount=%d excess=%d", rail, payer, amount, excess)
        return excess

    def release(self, cap: AdminCapability, rail: str, payer: str, recipient: str, amount: int) -> None:
        """Direct pay-out of `amount` from `payer`'s locked hold to `recipient`."""
        self._only_owner(cap)
        if amount < 0:
            raise InsufficientEscrow(f"negative release {amount}")
        if amount == 0:
            return
        e = self._entries.get((rail, payer))
        if e is None or e.locked < amount:
            held = e.locked if e else 0
            raise InsufficientEscrow(f"release of {amount} exceeds {payer}'s hold of {held}")
        e.locked -= amount
        e.balance -= amount
        self._prune(rail, payer)
        self.rails.transfer(rail, self.vault, recipient, amount)
        LOG.debug("release rail=%s payer=%s -> %s amount=%d", rail, payer, recipient, amount)

    def unlock(self, cap: AdminCapability, rail: str, account: str, amount: int) -> None:
        """Make a locked hold withdrawable by its owner. No funds move."""
        self._only_owner(cap)
        e = self._entries.get((rail, account))
        if e is None or e.locked < amount or amount < 0:
            raise InsufficientEscrow(f"unlock of {amount} exceeds {account}'s hold")
        e.locked -= amount

    def withdraw(self, cap: AdminCapability, rail: str, caller: str) -> int:
        self._only_owner(cap)
        e = self._entries.get((rail, caller))
        amount = e.available if e else 0
        if amount <= 0:
            raise NoFundsToWithdraw(f"nothing to withdraw for {caller} on rail {rail}")
        e.balance -= amount
        self._prune(rail, caller)
        self.rails.transfer(rail, self.vault, caller, amount)
        LOG.info("withdraw rail=%s caller=%s amount=%d", rail, caller, amount)
        return amount

    # ===== snapshot =====
    def to_state(self) -> dict:
        return {
            "vault": self.vault,
            "entries": [[r, a, e.balance, e.locked] for (r, a), e in self._entries.items()],
        }

    def load_state(self, st: dict) -> None:
        self.vault = st.get("vault", self.vault)
        self._entries = {(r, a): EscrowEntry(int(b), int(l)) for r, a, b, l in st.get("entries", [])}
