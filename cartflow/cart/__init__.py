"""
Cart — one interface over ephemeral and durable cart storage.

    from cartflow import cart as C

    backend = C.MemoryCartBackend()
    device_cart = backend.for_owner("device-1", C.OwnerMode.ANONYMOUS)
    await device_cart.add("sku1", 2, "10.00")

    # At login
    result = await C.merge_carts(device_cart, account_cart)
"""

from cartflow.cart._types import (
    OwnerMode,
    CartLineItem,
    CartState,
    new_cart_id,
    CartErrorKind,
    CartError,
)
from cartflow.cart._rules import (
    normalize_price,
    apply_add,
    apply_remove,
    apply_set_quantity,
    apply_clear,
    apply_absorb,
    unabsorbed,
)
from cartflow.cart._observers import (
    Observer,
    Unsubscribe,
    CartObservers,
)
from cartflow.cart._store import (
    Rule,
    CartStore,
    DurableCartStore,
    CartBackend,
    BoundCart,
    MemoryCartBackend,
    MemoryCart,
)
from cartflow.cart._sqlalchemy import (
    CartTable,
    CartLineTable,
    CartMergeTable,
    SQLAlchemyCartBackend,
    SQLAlchemyCart,
)
from cartflow.cart._select import (
    CartSelection,
    select_cart_store,
)
from cartflow.cart._merge import (
    MergeResult,
    merge_token,
    merge_carts,
)

__all__ = (
    # Types
    "OwnerMode",
    "CartLineItem",
    "CartState",
    "new_cart_id",
    "CartErrorKind",
    "CartError",
    # Rules
    "normalize_price",
    "apply_add",
    "apply_remove",
    "apply_set_quantity",
    "apply_clear",
    "apply_absorb",
    "unabsorbed",
    # Observers
    "Observer",
    "Unsubscribe",
    "CartObservers",
    # Stores
    "Rule",
    "CartStore",
    "DurableCartStore",
    "CartBackend",
    "BoundCart",
    "MemoryCartBackend",
    "MemoryCart",
    # SQLAlchemy
    "CartTable",
    "CartLineTable",
    "CartMergeTable",
    "SQLAlchemyCartBackend",
    "SQLAlchemyCart",
    # Selection
    "CartSelection",
    "select_cart_store",
    # Merge
    "MergeResult",
    "merge_token",
    "merge_carts",
)
