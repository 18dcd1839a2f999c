"""
cartflow — dual-mode shopping cart and checkout orchestration.

    from cartflow import cart as C      # Ephemeral and durable carts, login merge
    from cartflow import checkout as CO # Snapshot, authorize, settle, order
"""

from cartflow import cart
from cartflow import checkout
from cartflow import config
from cartflow import lift
from cartflow._types import (
    Lazy,
    Thunk,
    Anonymous,
    Authenticated,
    Identity,
    to_money,
)
from cartflow.db import create_database
from cartflow.log import configure_logging

__version__ = "0.1.0"

__all__ = (
    "cart",
    "checkout",
    "config",
    "lift",
    "Lazy",
    "Thunk",
    "Anonymous",
    "Authenticated",
    "Identity",
    "to_money",
    "create_database",
    "configure_logging",
)
