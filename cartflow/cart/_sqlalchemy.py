"""
SQLAlchemy cart backend — durable carts keyed by account.

Tables:
    carts        one row per owner; `version` is the optimistic lock
    cart_lines   ordered lines of a cart
    cart_merges  per merge token, the quantity of each product folded in

Every mutation is one transaction: read, apply the pure rule, bump the
version with `UPDATE ... WHERE version = :seen`, rewrite the lines.
Losing that compare-and-set means another process wrote first; the
rule is re-applied on fresh state, so additive deltas from two devices
are never lost.

Usage:
    session_factory, engine = await create_database(url)
    backend = SQLAlchemyCartBackend(session_factory)
    cart = backend.for_owner("acct-42", OwnerMode.AUTHENTICATED)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, cast

import structlog
from kungfu import Result, Ok, Error
from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from cartflow._locks import OwnerLocks
from cartflow._types import Clock, utcnow
from cartflow.db import Base, to_cents, from_cents, as_utc
from cartflow.cart._observers import CartObservers
from cartflow.cart._rules import apply_absorb, unabsorbed
from cartflow.cart._store import BoundCart, Rule
from cartflow.cart._types import (
    OwnerMode,
    CartLineItem,
    CartState,
    CartError,
    CartErrorKind,
)

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Tables
# ═══════════════════════════════════════════════════════════════════════════════


class CartTable(Base):
    __tablename__ = "carts"

    owner_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    cart_id: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_mutated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CartLineTable(Base):
    __tablename__ = "cart_lines"

    owner_key: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("carts.owner_key", ondelete="CASCADE"),
        primary_key=True,
    )
    product_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    image_ref: Mapped[str] = mapped_column(String(1024), nullable=False, default="")


class CartMergeTable(Base):
    __tablename__ = "cart_merges"

    owner_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    merge_token: Mapped[str] = mapped_column(String(255), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    merged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# Backend
# ═══════════════════════════════════════════════════════════════════════════════


class SQLAlchemyCartBackend:
    """
    Durable cart storage over an async session factory.

    max_attempts bounds the re-apply loop after lost version races;
    past it the caller gets CartError(CONFLICT).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        observers: CartObservers | None = None,
        clock: Clock = utcnow,
        max_attempts: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self.observers = observers if observers is not None else CartObservers()
        self._clock = clock
        self._max_attempts = max_attempts
        self._locks = OwnerLocks()

    def for_owner(
        self,
        owner_key: str,
        mode: OwnerMode = OwnerMode.AUTHENTICATED,
    ) -> SQLAlchemyCart:
        return SQLAlchemyCart(self, owner_key, mode)

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(select(1))
            return True
        except Exception as e:
            logger.warning("cart_backend_unhealthy", error=str(e))
            return False


# ═══════════════════════════════════════════════════════════════════════════════
# Bound Cart
# ═══════════════════════════════════════════════════════════════════════════════


class _StaleVersion(Exception):
    """Another writer bumped the version first."""


@dataclass(frozen=True, slots=True)
class _Merge:
    token: str
    lines: tuple[CartLineItem, ...]


@dataclass(frozen=True, slots=True)
class _Written:
    state: CartState
    changed: bool
    folded: int = 0


class SQLAlchemyCart(BoundCart):
    """One owner's durable cart."""

    def __init__(self, backend: SQLAlchemyCartBackend, owner_key: str, mode: OwnerMode) -> None:
        super().__init__(owner_key, mode, backend._clock)
        self._backend = backend

    async def ping(self) -> bool:
        return await self._backend.ping()

    async def load(self) -> Result[CartState, CartError]:
        try:
            async with self._backend._session_factory() as session:
                state, _ = await self._read(session)
                return Ok(state)
        except Exception as e:
            logger.warning("cart_load_failed", owner_key=self.owner_key, error=str(e))
            return Error(CartError(CartErrorKind.UNAVAILABLE, f"Failed to load cart: {e}", e))

    async def absorb(
        self,
        lines: Iterable[CartLineItem],
        merge_token: str,
    ) -> Result[tuple[CartState, int], CartError]:
        merge = _Merge(merge_token, tuple(lines))
        match await self._run("absorb", lambda state: Ok(state), merge=merge):
            case Ok(written):
                return Ok((written.state, written.folded))
            case Error(e):
                return Error(e)

    async def _mutate(self, op: str, rule: Rule) -> Result[CartState, CartError]:
        match await self._run(op, rule):
            case Ok(written):
                return Ok(written.state)
            case Error(e):
                return Error(e)

    # ───────────────────────────────────────────────────────────────────────────
    # Transaction loop
    # ───────────────────────────────────────────────────────────────────────────

    async def _run(
        self,
        op: str,
        rule: Rule,
        *,
        merge: _Merge | None = None,
    ) -> Result[_Written, CartError]:
        outcome = await self._commit(op, rule, merge)
        match outcome:
            case Ok(written) if written.changed:
                logger.debug("cart_mutated", op=op, owner_key=self.owner_key, version=written.state.version)
                await self._backend.observers.publish(written.state)
        return outcome

    async def _commit(self, op: str, rule: Rule, merge: _Merge | None) -> Result[_Written, CartError]:
        async with self._backend._locks.hold(self.owner_key):
            for attempt in range(1, self._backend._max_attempts + 1):
                try:
                    return await self._attempt(rule, merge)
                except (_StaleVersion, IntegrityError):
                    logger.info("cart_version_conflict", op=op, owner_key=self.owner_key, attempt=attempt)
                    continue
                except Exception as e:
                    logger.warning("cart_mutation_failed", op=op, owner_key=self.owner_key, error=str(e))
                    return Error(CartError(CartErrorKind.UNAVAILABLE, f"Cart store unavailable: {e}", e))

        return Error(CartError(
            CartErrorKind.CONFLICT,
            f"Cart {self.owner_key} kept changing; gave up after {self._backend._max_attempts} attempts",
        ))

    async def _attempt(self, rule: Rule, merge: _Merge | None) -> Result[_Written, CartError]:
        async with self._backend._session_factory() as session, session.begin():
            current, row = await self._read(session)

            folded = 0
            if merge is not None:
                recorded = await self._merged(session, merge.token)
                owed, record = unabsorbed(merge.lines, recorded)
                if not owed:
                    return Ok(_Written(current, changed=False))
                folded = len(owed)
                rule = lambda state: Ok(apply_absorb(state, owed, now=self._clock()))
                await self._record_merge(session, merge.token, recorded, record)

            match rule(current):
                case Error(e):
                    return Error(e)
                case Ok(state):
                    pass

            if state is current:
                return Ok(_Written(current, changed=False))

            if row is None:
                session.add(CartTable(
                    owner_key=self.owner_key,
                    owner_mode=self.owner_mode.value,
                    cart_id=state.cart_id,
                    version=state.version,
                    last_mutated_at=state.last_mutated_at,
                ))
                await session.flush()
            else:
                cursor = cast(CursorResult[Any], await session.execute(
                    update(CartTable)
                    .where(CartTable.owner_key == self.owner_key)
                    .where(CartTable.version == current.version)
                    .values(
                        cart_id=state.cart_id,
                        version=state.version,
                        last_mutated_at=state.last_mutated_at,
                    )
                ))
                if cursor.rowcount == 0:
                    raise _StaleVersion(self.owner_key)

            await session.execute(
                delete(CartLineTable)
                .where(CartLineTable.owner_key == self.owner_key)
                .execution_options(synchronize_session=False)
            )
            if state.items:
                await session.execute(
                    insert(CartLineTable),
                    [
                        {
                            "owner_key": self.owner_key,
                            "product_id": item.product_id,
                            "position": n,
                            "unit_price_cents": to_cents(item.unit_price),
                            "quantity": item.quantity,
                            "display_name": item.display_name,
                            "image_ref": item.image_ref,
                        }
                        for n, item in enumerate(state.items)
                    ],
                )
            return Ok(_Written(state, changed=True, folded=folded))

    async def _merged(self, session: AsyncSession, token: str) -> dict[str, int]:
        rows = (
            await session.execute(
                select(CartMergeTable.product_id, CartMergeTable.quantity)
                .where(CartMergeTable.owner_key == self.owner_key)
                .where(CartMergeTable.merge_token == token)
            )
        ).all()
        return {product_id: quantity for product_id, quantity in rows}

    async def _record_merge(
        self,
        session: AsyncSession,
        token: str,
        recorded: dict[str, int],
        record: dict[str, int],
    ) -> None:
        now = self._clock()
        for product_id, quantity in record.items():
            if product_id not in recorded:
                # A concurrent absorb of the same token fails here with IntegrityError and retries
                session.add(CartMergeTable(
                    owner_key=self.owner_key,
                    merge_token=token,
                    product_id=product_id,
                    quantity=quantity,
                    merged_at=now,
                ))
            elif quantity != recorded[product_id]:
                await session.execute(
                    update(CartMergeTable)
                    .where(CartMergeTable.owner_key == self.owner_key)
                    .where(CartMergeTable.merge_token == token)
                    .where(CartMergeTable.product_id == product_id)
                    .values(quantity=quantity, merged_at=now)
                    .execution_options(synchronize_session=False)
                )
        await session.flush()

    async def _read(self, session: AsyncSession) -> tuple[CartState, CartTable | None]:
        row = (
            await session.execute(
                select(CartTable)
                .where(CartTable.owner_key == self.owner_key)
            )
        ).scalar_one_or_none()
        if row is None:
            return CartState.empty(self.owner_key, self.owner_mode), None

        lines = (
            await session.execute(
                select(CartLineTable)
                .where(CartLineTable.owner_key == self.owner_key)
                .order_by(CartLineTable.position)
            )
        ).scalars().all()

        state = CartState(
            owner_key=row.owner_key,
            owner_mode=OwnerMode(row.owner_mode),
            cart_id=row.cart_id,
            items=tuple(
                CartLineItem(
                    product_id=line.product_id,
                    unit_price=from_cents(line.unit_price_cents),
                    quantity=line.quantity,
                    display_name=line.display_name,
                    image_ref=line.image_ref,
                )
                for line in lines
            ),
            version=row.version,
            last_mutated_at=as_utc(row.last_mutated_at),
        )
        return state, row


__all__ = (
    "CartTable",
    "CartLineTable",
    "CartMergeTable",
    "SQLAlchemyCartBackend",
    "SQLAlchemyCart",
)
