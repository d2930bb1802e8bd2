# services/market/admin.py
from __future__ import annotations

import hmac
import secrets
from typing import Optional

from services.market.errors import Unauthorized


class AdminCapability:
    """
    Opaque token gating a component's configuration surface.

    Two capabilities match when they carry the same secret; whoever holds a
    matching token may call the owner-only entry points.
    """

    __slots__ = ("_token", "label")

    def __init__(self, label: str = "admin", token: Optional[str] = None):
        self._token = token if token else secrets.token_hex(32)
        self.label = label

    def matches(self, other: object) -> bool:
        if not isinstance(other, AdminCapability):
            return False
        return hmac.compare_digest(self._token, other._token)

    def __repr__(self) -> str:
        return f"AdminCapability({self.label!r})"


class Ownable:
    """Single-owner mixin: the owner is a capability, not an account."""

    def __init__(self, owner: AdminCapability):
        self._owner = owner

    def _only_owner(self, cap: object) -> None:
        if not self._owner.matches(cap):
            raise Unauthorized(f"{type(self).__name__}: caller is not the owner")

    def transfer_ownership(self, cap: AdminCapability, new_owner: AdminCapability) -> None:
        self._only_owner(cap)
        if not isinstance(new_owner, AdminCapability):
            raise Unauthorized("new owner must be an AdminCapability")
        self._owner = new_owner
