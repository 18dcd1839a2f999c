"""
Cart observers — change notification after successful mutations.

Delivery is at-least-once: a retried write may publish the same
(cart_id, version) twice, so observers must be idempotent.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable

import structlog

from cartflow.cart._types import CartState

logger = structlog.get_logger(__name__)

type Observer = Callable[[CartState], Awaitable[None] | None]
type Unsubscribe = Callable[[], None]


class CartObservers:
    """
    Subscriber registry shared by a backend and all its bound carts.

    Example:
        observers = CartObservers()
        unsubscribe = observers.subscribe(lambda state: badge.update(state.item_count))
        ...
        unsubscribe()
    """

    def __init__(self) -> None:
        self._observers: list[Observer] = []

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: Observer) -> Unsubscribe:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def publish(self, state: CartState) -> None:
        """Notify every observer. A failing observer never blocks the rest."""
        for observer in tuple(self._observers):
            try:
                outcome = observer(state)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "cart_observer_failed",
                    owner_key=state.owner_key,
                    cart_id=state.cart_id,
                    version=state.version,
                )


__all__ = ("Observer", "Unsubscribe", "CartObservers")
