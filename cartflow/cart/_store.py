"""
Cart store — one async interface, interchangeable backends.

A backend owns the storage; `backend.for_owner(key, mode)` binds it to
one cart. Every mutation goes through the pure rules in `_rules`, so
which backend sits behind a CartStore never changes the answers.

    backend = MemoryCartBackend()
    cart = backend.for_owner("device-7f3a", OwnerMode.ANONYMOUS)

    await cart.add("sku1", 2, "10.00")
    match await cart.total():
        case Ok(total):
            print(total)  # 20.00
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from decimal import Decimal
from typing import Protocol

import structlog
from kungfu import Result, Ok, Error

from cartflow._locks import OwnerLocks
from cartflow._types import Clock, utcnow
from cartflow.cart._observers import CartObservers
from cartflow.cart._rules import (
    apply_add,
    apply_remove,
    apply_set_quantity,
    apply_clear,
    apply_absorb,
    unabsorbed,
)
from cartflow.cart._types import (
    OwnerMode,
    CartLineItem,
    CartState,
    CartError,
    CartErrorKind,
)

logger = structlog.get_logger(__name__)

type Rule = Callable[[CartState], Result[CartState, CartError]]


# ═══════════════════════════════════════════════════════════════════════════════
# Protocols
# ═══════════════════════════════════════════════════════════════════════════════


class CartStore(Protocol):
    """
    Async cart interface, identical for ephemeral and durable carts.

    All methods return Result; a failed call leaves the prior state
    intact.
    """

    @property
    def owner_key(self) -> str: ...

    @property
    def owner_mode(self) -> OwnerMode: ...

    async def add(
        self,
        product_id: str,
        quantity: int,
        price_hint: Decimal | int | float | str,
        *,
        display_name: str | None = None,
        image_ref: str | None = None,
    ) -> Result[CartState, CartError]: ...

    async def remove(self, product_id: str) -> Result[CartState, CartError]: ...

    async def set_quantity(self, product_id: str, quantity: int) -> Result[CartState, CartError]: ...

    async def clear(self) -> Result[CartState, CartError]: ...

    async def load(self) -> Result[CartState, CartError]: ...

    async def total(self) -> Result[Decimal, CartError]: ...

    async def list(self) -> Result[tuple[CartLineItem, ...], CartError]: ...

    async def ping(self) -> bool: ...


class DurableCartStore(CartStore, Protocol):
    """Cart that can absorb foreign lines once per merge token."""

    async def absorb(
        self,
        lines: Iterable[CartLineItem],
        merge_token: str,
    ) -> Result[tuple[CartState, int], CartError]:
        """
        Fold lines in with add semantics, once per merge_token.

        The store records, per token, how much of each product it has
        folded in; a repeated call only folds the growth since then.
        Returns Ok((state, lines_folded)); 0 means nothing changed.
        """
        ...


class CartBackend(Protocol):
    """Storage shared by many carts."""

    observers: CartObservers

    def for_owner(self, owner_key: str, mode: OwnerMode) -> DurableCartStore: ...

    async def ping(self) -> bool: ...


# ═══════════════════════════════════════════════════════════════════════════════
# Bound Cart — shared operation surface
# ═══════════════════════════════════════════════════════════════════════════════


class BoundCart(ABC):
    """
    Operations every backend shares.

    Subclasses supply load(), absorb(), ping() and _mutate(); _mutate
    runs one rule atomically and publishes the new state when it
    changed.
    """

    def __init__(self, owner_key: str, mode: OwnerMode, clock: Clock) -> None:
        self._owner_key = owner_key
        self._mode = mode
        self._clock = clock

    @property
    def owner_key(self) -> str:
        return self._owner_key

    @property
    def owner_mode(self) -> OwnerMode:
        return self._mode

    async def add(
        self,
        product_id: str,
        quantity: int,
        price_hint: Decimal | int | float | str,
        *,
        display_name: str | None = None,
        image_ref: str | None = None,
    ) -> Result[CartState, CartError]:
        return await self._mutate(
            "add",
            lambda state: apply_add(
                state,
                product_id,
                quantity,
                price_hint,
                now=self._clock(),
                display_name=display_name,
                image_ref=image_ref,
            ),
        )

    async def remove(self, product_id: str) -> Result[CartState, CartError]:
        return await self._mutate(
            "remove",
            lambda state: apply_remove(state, product_id, now=self._clock()),
        )

    async def set_quantity(self, product_id: str, quantity: int) -> Result[CartState, CartError]:
        return await self._mutate(
            "set_quantity",
            lambda state: apply_set_quantity(state, product_id, quantity, now=self._clock()),
        )

    async def clear(self) -> Result[CartState, CartError]:
        return await self._mutate("clear", lambda state: apply_clear(state, now=self._clock()))

    async def total(self) -> Result[Decimal, CartError]:
        match await self.load():
            case Ok(state):
                return Ok(state.total)
            case Error(e):
                return Error(e)

    async def list(self) -> Result[tuple[CartLineItem, ...], CartError]:
        match await self.load():
            case Ok(state):
                return Ok(state.items)
            case Error(e):
                return Error(e)

    @abstractmethod
    async def load(self) -> Result[CartState, CartError]: ...

    @abstractmethod
    async def absorb(
        self,
        lines: Iterable[CartLineItem],
        merge_token: str,
    ) -> Result[tuple[CartState, int], CartError]: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def _mutate(self, op: str, rule: Rule) -> Result[CartState, CartError]: ...


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Backend
# ═══════════════════════════════════════════════════════════════════════════════


class MemoryCartBackend:
    """
    In-process cart storage.

    Serves as the ephemeral (device-scoped) store and as a durable
    stand-in for tests. Data lives as long as this object; close()
    drops it and makes ping() report unhealthy.
    """

    def __init__(
        self,
        *,
        observers: CartObservers | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.observers = observers if observers is not None else CartObservers()
        self._clock = clock
        self._carts: dict[str, CartState] = {}
        # owner -> merge token -> product id -> quantity folded in
        self._merges: dict[str, dict[str, dict[str, int]]] = {}
        self._locks = OwnerLocks()
        self._failures = 0
        self._healthy = True
        self._closed = False

    def for_owner(self, owner_key: str, mode: OwnerMode = OwnerMode.ANONYMOUS) -> MemoryCart:
        return MemoryCart(self, owner_key, mode)

    async def ping(self) -> bool:
        return self._healthy and not self._closed

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` cart operations fail with UNAVAILABLE."""
        self._failures += count

    def set_healthy(self, healthy: bool) -> None:
        self._healthy = healthy

    def close(self) -> None:
        self._carts.clear()
        self._merges.clear()
        self._closed = True

    def _check_available(self) -> CartError | None:
        if self._closed:
            return CartError(CartErrorKind.UNAVAILABLE, "Cart backend closed")
        if self._failures > 0:
            self._failures -= 1
            return CartError(CartErrorKind.UNAVAILABLE, "Cart backend unavailable (injected)")
        return None

    def _current(self, owner_key: str, mode: OwnerMode) -> CartState:
        state = self._carts.get(owner_key)
        if state is None:
            state = self._carts[owner_key] = CartState.empty(owner_key, mode)
        return state


class MemoryCart(BoundCart):
    """One owner's cart inside a MemoryCartBackend."""

    def __init__(self, backend: MemoryCartBackend, owner_key: str, mode: OwnerMode) -> None:
        super().__init__(owner_key, mode, backend._clock)
        self._backend = backend

    async def ping(self) -> bool:
        return await self._backend.ping()

    async def load(self) -> Result[CartState, CartError]:
        async with self._backend._locks.hold(self.owner_key):
            if (err := self._backend._check_available()) is not None:
                return Error(err)
            return Ok(self._backend._current(self.owner_key, self.owner_mode))

    async def absorb(
        self,
        lines: Iterable[CartLineItem],
        merge_token: str,
    ) -> Result[tuple[CartState, int], CartError]:
        lines = tuple(lines)
        async with self._backend._locks.hold(self.owner_key):
            if (err := self._backend._check_available()) is not None:
                return Error(err)

            current = self._backend._current(self.owner_key, self.owner_mode)
            merges = self._backend._merges.setdefault(self.owner_key, {})
            owed, record = unabsorbed(lines, merges.get(merge_token, {}))
            if not owed:
                return Ok((current, 0))

            state = apply_absorb(current, owed, now=self._clock())
            self._backend._carts[self.owner_key] = state
            merges[merge_token] = record

        await self._backend.observers.publish(state)
        return Ok((state, len(owed)))

    async def _mutate(self, op: str, rule: Rule) -> Result[CartState, CartError]:
        async with self._backend._locks.hold(self.owner_key):
            if (err := self._backend._check_available()) is not None:
                logger.warning("cart_mutation_failed", op=op, owner_key=self.owner_key, error=err.message)
                return Error(err)

            current = self._backend._current(self.owner_key, self.owner_mode)
            match rule(current):
                case Error(e):
                    return Error(e)
                case Ok(state) if state is current:
                    return Ok(state)
                case Ok(state):
                    self._backend._carts[self.owner_key] = state
                    logger.debug("cart_mutated", op=op, owner_key=self.owner_key, version=state.version)

        # Observers may read the cart again, so the lock is released first
        await self._backend.observers.publish(state)
        return Ok(state)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Rule",
    "CartStore",
    "DurableCartStore",
    "CartBackend",
    "BoundCart",
    "MemoryCartBackend",
    "MemoryCart",
)
