"""
Cart mutation rules — pure functions over CartState.

Every backend applies exactly these functions, so an ephemeral cart
and a durable cart answer the same sequence of calls identically.

A rule returns the *same* state object when nothing changes; stores
use that to skip the write and the observer notification.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

from kungfu import Result, Ok, Error

from cartflow._types import to_money
from cartflow.cart._types import (
    CartLineItem,
    CartState,
    CartError,
    CartErrorKind,
    new_cart_id,
)


# ═══════════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════════


def _invalid(message: str) -> Error[CartError]:
    return Error(CartError(CartErrorKind.INVALID, message))


def _check_product(product_id: object) -> CartError | None:
    if not isinstance(product_id, str) or not product_id.strip():
        return CartError(CartErrorKind.INVALID, f"Invalid product id: {product_id!r}")
    return None


def _check_quantity(quantity: object) -> CartError | None:
    # bool is an int subclass; True is not a quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        return CartError(CartErrorKind.INVALID, f"Quantity must be an integer: {quantity!r}")
    return None


def normalize_price(price_hint: object) -> Result[Decimal, CartError]:
    try:
        price = to_money(price_hint)  # type: ignore[arg-type]
    except ValueError as e:
        return Error(CartError(CartErrorKind.INVALID, str(e)))
    if price < 0:
        return _invalid(f"Negative price: {price}")
    return Ok(price)


# ═══════════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════════


def _bump(state: CartState, items: tuple[CartLineItem, ...], now: datetime) -> CartState:
    return replace(state, items=items, version=state.version + 1, last_mutated_at=now)


def _without(state: CartState, product_id: str) -> tuple[CartLineItem, ...]:
    return tuple(i for i in state.items if i.product_id != product_id)


def _replacing(state: CartState, line: CartLineItem) -> tuple[CartLineItem, ...]:
    return tuple(line if i.product_id == line.product_id else i for i in state.items)


# ═══════════════════════════════════════════════════════════════════════════════
# Rules
# ═══════════════════════════════════════════════════════════════════════════════


def apply_add(
    state: CartState,
    product_id: str,
    quantity: int,
    price_hint: Decimal | int | float | str,
    *,
    now: datetime,
    display_name: str | None = None,
    image_ref: str | None = None,
) -> Result[CartState, CartError]:
    """
    Additive add.

    Existing line: quantities sum, price and labels are re-hinted from
    this add. A resulting quantity <= 0 removes the line.
    """
    if (err := _check_product(product_id) or _check_quantity(quantity)) is not None:
        return Error(err)

    match normalize_price(price_hint):
        case Error(err):
            return Error(err)
        case Ok(price):
            pass

    existing = state.get(product_id)

    if existing is None:
        if quantity <= 0:
            return Ok(state)
        line = CartLineItem(
            product_id=product_id,
            unit_price=price,
            quantity=quantity,
            display_name=display_name or "",
            image_ref=image_ref or "",
        )
        return Ok(_bump(state, (*state.items, line), now))

    new_quantity = existing.quantity + quantity
    if new_quantity <= 0:
        return Ok(_bump(state, _without(state, product_id), now))

    line = CartLineItem(
        product_id=product_id,
        unit_price=price,
        quantity=new_quantity,
        display_name=display_name if display_name is not None else existing.display_name,
        image_ref=image_ref if image_ref is not None else existing.image_ref,
    )
    return Ok(_bump(state, _replacing(state, line), now))


def apply_remove(
    state: CartState,
    product_id: str,
    *,
    now: datetime,
) -> Result[CartState, CartError]:
    """Remove a line. Removing an absent product changes nothing."""
    if (err := _check_product(product_id)) is not None:
        return Error(err)
    if state.get(product_id) is None:
        return Ok(state)
    return Ok(_bump(state, _without(state, product_id), now))


def apply_set_quantity(
    state: CartState,
    product_id: str,
    quantity: int,
    *,
    now: datetime,
) -> Result[CartState, CartError]:
    """
    Absolute quantity. quantity <= 0 is a remove.

    Last-write-wins: prefer apply_add deltas when several tabs edit
    one cart.
    """
    if (err := _check_product(product_id) or _check_quantity(quantity)) is not None:
        return Error(err)
    if quantity <= 0:
        return apply_remove(state, product_id, now=now)

    existing = state.get(product_id)
    if existing is None:
        return Error(CartError(CartErrorKind.NOT_FOUND, f"Product not in cart: {product_id}"))
    if existing.quantity == quantity:
        return Ok(state)
    return Ok(_bump(state, _replacing(state, replace(existing, quantity=quantity)), now))


def apply_clear(state: CartState, *, now: datetime) -> Result[CartState, CartError]:
    """Empty the cart and rotate its cart_id."""
    if state.is_empty:
        return Ok(state)
    return Ok(replace(_bump(state, (), now), cart_id=new_cart_id()))


def apply_absorb(
    state: CartState,
    lines: Iterable[CartLineItem],
    *,
    now: datetime,
) -> CartState:
    """
    Fold foreign lines in with add semantics.

    Overlapping products sum quantities; price and labels come from
    the incoming line.
    """
    items = list(state.items)
    index = {item.product_id: n for n, item in enumerate(items)}
    changed = False

    for line in lines:
        if line.quantity <= 0:
            continue
        changed = True
        n = index.get(line.product_id)
        if n is None:
            index[line.product_id] = len(items)
            items.append(line)
        else:
            items[n] = replace(line, quantity=items[n].quantity + line.quantity)

    if not changed:
        return state
    return _bump(state, tuple(items), now)


def unabsorbed(
    lines: Iterable[CartLineItem],
    recorded: Mapping[str, int],
) -> tuple[tuple[CartLineItem, ...], dict[str, int]]:
    """
    Split a merge into what is still owed and the new record.

    recorded maps product id to the quantity an earlier run of the same
    merge already folded in. Only growth beyond it is owed; a line that
    shrank since then owes nothing and the durable cart keeps what it
    already received.
    """
    owed: list[CartLineItem] = []
    record = dict(recorded)
    for line in lines:
        seen = record.get(line.product_id, 0)
        if line.quantity > seen:
            owed.append(replace(line, quantity=line.quantity - seen))
            record[line.product_id] = line.quantity
    return tuple(owed), record


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "normalize_price",
    "apply_add",
    "apply_remove",
    "apply_set_quantity",
    "apply_clear",
    "apply_absorb",
    "unabsorbed",
)
