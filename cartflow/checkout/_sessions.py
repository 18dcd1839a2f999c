"""
Session store — typed storage protocol for checkout sessions.

All methods return Result for explicit error handling. insert() and
save() are compare-and-set: Ok(False) means another writer got there
first and nothing was written.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

from kungfu import Result, Ok, Error

from cartflow.checkout._types import CheckoutSession


# ═══════════════════════════════════════════════════════════════════════════════
# Store Error
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class StoreError:
    """Storage operation error."""

    message: str
    cause: Exception | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Store Protocol
# ═══════════════════════════════════════════════════════════════════════════════


class SessionStore(Protocol):
    async def get(self, key: str) -> Result[CheckoutSession | None, StoreError]:
        """Get session. Returns Ok(None) if not found."""
        ...

    async def insert(self, session: CheckoutSession) -> Result[bool, StoreError]:
        """
        Insert if no session has this id.

        Returns Ok(True) if inserted, Ok(False) if it already exists.
        """
        ...

    async def save(self, session: CheckoutSession) -> Result[bool, StoreError]:
        """
        Persist the next revision.

        Written only if the stored revision is session.revision - 1;
        returns Ok(False) otherwise.
        """
        ...

    async def find_open(self, owner_key: str) -> Result[tuple[CheckoutSession, ...], StoreError]:
        """Non-terminal sessions of one owner, oldest first."""
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Store — For Testing
# ═══════════════════════════════════════════════════════════════════════════════


class MemorySessionStore:
    """
    In-memory session store.

    Note: single process only; sessions die with this object.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, CheckoutSession] = {}
        self._lock = asyncio.Lock()
        self._failures = 0

    def fail_next(self, count: int = 1) -> None:
        self._failures += count

    def _injected(self) -> StoreError | None:
        if self._failures > 0:
            self._failures -= 1
            return StoreError("session store unavailable (injected)")
        return None

    async def get(self, key: str) -> Result[CheckoutSession | None, StoreError]:
        async with self._lock:
            if (err := self._injected()) is not None:
                return Error(err)
            return Ok(self._sessions.get(key))

    async def insert(self, session: CheckoutSession) -> Result[bool, StoreError]:
        async with self._lock:
            if (err := self._injected()) is not None:
                return Error(err)
            if session.id in self._sessions:
                return Ok(False)
            self._sessions[session.id] = session
            return Ok(True)

    async def save(self, session: CheckoutSession) -> Result[bool, StoreError]:
        async with self._lock:
            if (err := self._injected()) is not None:
                return Error(err)
            stored = self._sessions.get(session.id)
            if stored is None or stored.revision != session.revision - 1:
                return Ok(False)
            self._sessions[session.id] = session
            return Ok(True)

    async def find_open(self, owner_key: str) -> Result[tuple[CheckoutSession, ...], StoreError]:
        async with self._lock:
            if (err := self._injected()) is not None:
                return Error(err)
            found = [
                s for s in self._sessions.values()
                if s.owner_key == owner_key and not s.is_terminal
            ]
            return Ok(tuple(sorted(found, key=lambda s: s.created_at)))


__all__ = (
    "StoreError",
    "SessionStore",
    "MemorySessionStore",
)
