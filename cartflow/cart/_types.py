"""
Cart types — line items, cart state, errors.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum, auto

from cartflow._types import ZERO

# ═══════════════════════════════════════════════════════════════════════════════
# Owner Mode
# ═══════════════════════════════════════════════════════════════════════════════


class OwnerMode(Enum):
    """Who holds the cart: a device (ephemeral) or an account (durable)."""

    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"


# ═══════════════════════════════════════════════════════════════════════════════
# Line Item
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CartLineItem:
    """
    One product in a cart.

    unit_price is the price hinted at add-time. It is re-validated
    against the price source before any charge.
    """

    product_id: str
    unit_price: Decimal
    quantity: int
    display_name: str = ""
    image_ref: str = ""

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


# ═══════════════════════════════════════════════════════════════════════════════
# Cart State
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CartState:
    """
    Immutable cart value.

    items keeps insertion order with at most one line per product_id.
    total is derived on every access, so it can never go stale.
    cart_id rotates on clear(); (cart_id, version) identifies one exact
    content state of a cart.
    """

    owner_key: str
    owner_mode: OwnerMode
    cart_id: str
    items: tuple[CartLineItem, ...] = ()
    version: int = 0
    last_mutated_at: datetime | None = None

    @staticmethod
    def empty(owner_key: str, mode: OwnerMode) -> CartState:
        return CartState(owner_key=owner_key, owner_mode=mode, cart_id=new_cart_id())

    @property
    def total(self) -> Decimal:
        return sum((item.line_total for item in self.items), ZERO)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def get(self, product_id: str) -> CartLineItem | None:
        return next((i for i in self.items if i.product_id == product_id), None)

    def quantities(self) -> dict[str, int]:
        return {item.product_id: item.quantity for item in self.items}


def new_cart_id() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════════════


class CartErrorKind(Enum):
    """Kinds of cart errors."""

    INVALID = auto()  # Rejected input, nothing changed
    NOT_FOUND = auto()  # Product not in cart
    UNAVAILABLE = auto()  # Backing store unreachable, prior state intact
    CONFLICT = auto()  # Concurrent writers kept winning the version race


@dataclass(frozen=True, slots=True)
class CartError:
    """Cart operation error."""

    kind: CartErrorKind
    message: str
    cause: Exception | None = None

    @property
    def retryable(self) -> bool:
        return self.kind in (CartErrorKind.UNAVAILABLE, CartErrorKind.CONFLICT)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "OwnerMode",
    "CartLineItem",
    "CartState",
    "new_cart_id",
    "CartErrorKind",
    "CartError",
)
