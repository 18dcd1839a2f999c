"""Tests for the SQLAlchemy durable cart backend (SQLite file database)."""

import asyncio
from decimal import Decimal

import pytest
from _support import FakeClock, err, ok, run

from cartflow.cart import (
    CartErrorKind,
    CartLineItem,
    CartState,
    MemoryCartBackend,
    OwnerMode,
    SQLAlchemyCartBackend,
    merge_carts,
)
from cartflow.db import Base, create_database


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'carts.db'}"


class TestPersistence:
    def test_state_survives_a_new_backend(self, db_url):
        clock = FakeClock()

        async def main():
            factory, engine = await create_database(db_url)
            try:
                cart = SQLAlchemyCartBackend(factory, clock=clock).for_owner("acct-1")
                ok(await cart.add("sku1", 2, "10.00", display_name="Mug", image_ref="img/mug.png"))
                ok(await cart.add("sku2", 1, "5.00"))
            finally:
                await engine.dispose()

            factory, engine = await create_database(db_url)
            try:
                return ok(await SQLAlchemyCartBackend(factory).for_owner("acct-1").load())
            finally:
                await engine.dispose()

        state = run(main())
        assert state.owner_mode is OwnerMode.AUTHENTICATED
        assert [i.product_id for i in state.items] == ["sku1", "sku2"]
        assert state.get("sku1") == CartLineItem("sku1", Decimal("10.00"), 2, "Mug", "img/mug.png")
        assert state.total == Decimal("25.00")
        assert state.version == 2
        assert state.last_mutated_at == clock.now

    def test_untouched_cart_loads_empty(self, db_url):
        async def main():
            factory, engine = await create_database(db_url)
            try:
                cart = SQLAlchemyCartBackend(factory).for_owner("acct-new")
                return ok(await cart.load()), ok(await cart.total())
            finally:
                await engine.dispose()

        state, total = run(main())
        assert state.is_empty
        assert state.version == 0
        assert total == Decimal("0.00")

    def test_set_quantity_remove_clear(self, db_url):
        async def main():
            factory, engine = await create_database(db_url)
            try:
                cart = SQLAlchemyCartBackend(factory).for_owner("acct-1")
                ok(await cart.add("sku1", 2, "10.00"))
                ok(await cart.add("sku2", 1, "5.00"))
                ok(await cart.set_quantity("sku1", 4))
                ok(await cart.remove("sku2"))
                before = ok(await cart.load())
                missing = err(await cart.set_quantity("sku9", 1))
                cleared = ok(await cart.clear())
                return before, missing, cleared, ok(await cart.load())
            finally:
                await engine.dispose()

        before, missing, cleared, after = run(main())
        assert before.quantities() == {"sku1": 4}
        assert before.total == Decimal("40.00")
        assert missing.kind is CartErrorKind.NOT_FOUND
        assert cleared.is_empty
        assert cleared.cart_id != before.cart_id
        assert after.cart_id == cleared.cart_id
        assert after.is_empty

    def test_behaves_like_memory_backend(self, db_url):
        from cartflow.cart import MemoryCartBackend

        async def drive(cart) -> CartState:
            ok(await cart.add("b", 1, "1.10"))
            ok(await cart.add("a", 3, "2.00"))
            ok(await cart.add("b", 2, "1.20"))
            ok(await cart.set_quantity("a", 1))
            ok(await cart.add("c", 1, "0.99"))
            ok(await cart.add("c", -1, "0.99"))
            return ok(await cart.load())

        async def main():
            factory, engine = await create_database(db_url)
            try:
                durable = await drive(SQLAlchemyCartBackend(factory).for_owner("acct-1"))
            finally:
                await engine.dispose()
            ephemeral = await drive(MemoryCartBackend().for_owner("acct-1", OwnerMode.AUTHENTICATED))
            return durable, ephemeral

        durable, ephemeral = run(main())
        assert durable.items == ephemeral.items
        assert durable.total == ephemeral.total == Decimal("5.60")
        assert durable.version == ephemeral.version


class TestConcurrency:
    def test_concurrent_adds_from_two_processes_are_not_lost(self, db_url):
        async def main():
            factory, engine = await create_database(db_url)
            try:
                # Two backends stand in for two server processes
                first = SQLAlchemyCartBackend(factory, max_attempts=50).for_owner("acct-1")
                second = SQLAlchemyCartBackend(factory, max_attempts=50).for_owner("acct-1")
                await asyncio.gather(
                    *(first.add("sku1", 1, "1.00") for _ in range(5)),
                    *(second.add("sku1", 2, "1.00") for _ in range(5)),
                )
                return ok(await first.load())
            finally:
                await engine.dispose()

        state = run(main())
        assert state.quantities() == {"sku1": 15}
        assert state.version == 10


class TestAbsorb:
    def test_token_folds_each_quantity_once(self, db_url):
        lines = [CartLineItem("sku1", Decimal("10.00"), 2)]
        grown = [CartLineItem("sku1", Decimal("10.00"), 3), CartLineItem("sku2", Decimal("5.00"), 1)]

        async def main():
            factory, engine = await create_database(db_url)
            try:
                cart = SQLAlchemyCartBackend(factory).for_owner("acct-1")
                ok(await cart.add("sku1", 3, "10.00"))
                first = ok(await cart.absorb(lines, "device-cart"))
                again = ok(await cart.absorb(lines, "device-cart"))
                growth = ok(await cart.absorb(grown, "device-cart"))
                other = ok(await cart.absorb(lines, "other-device-cart"))
                return first, again, growth, other
            finally:
                await engine.dispose()

        (first, folded), (again, refolded), (growth, grown_folded), (other, other_folded) = run(main())
        assert folded == 1 and first.quantities() == {"sku1": 5}
        assert refolded == 0 and again.quantities() == {"sku1": 5}
        assert again.version == first.version
        assert grown_folded == 2 and growth.quantities() == {"sku1": 6, "sku2": 1}
        assert other_folded == 1 and other.quantities() == {"sku1": 8, "sku2": 1}

    def test_guest_keeps_shopping_between_failed_clear_and_rerun(self, db_url):
        async def main():
            factory, engine = await create_database(db_url)
            try:
                local = MemoryCartBackend()
                device = local.for_owner("device-1")
                account = SQLAlchemyCartBackend(factory).for_owner("acct-1")
                ok(await device.add("A", 2, "3.00"))
                ok(await account.add("A", 3, "3.00"))

                original_clear = device.clear

                async def failing_clear():
                    local.fail_next()
                    return await original_clear()

                device.clear = failing_clear
                err(await merge_carts(device, account))
                del device.clear

                ok(await device.add("B", 1, "4.00"))
                retried = ok(await merge_carts(device, account))
                return retried, ok(await account.load())
            finally:
                await engine.dispose()

        retried, account_state = run(main())
        assert retried.merged == 1
        assert account_state.quantities() == {"A": 5, "B": 1}


class TestAvailability:
    def test_broken_storage_reports_unavailable(self, db_url):
        async def main():
            factory, engine = await create_database(db_url)
            try:
                cart = SQLAlchemyCartBackend(factory).for_owner("acct-1")
                ok(await cart.add("sku1", 1, "10.00"))
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.drop_all)
                return err(await cart.add("sku1", 1, "10.00")), err(await cart.load())
            finally:
                await engine.dispose()

        write_error, read_error = run(main())
        assert write_error.kind is CartErrorKind.UNAVAILABLE
        assert write_error.retryable
        assert read_error.kind is CartErrorKind.UNAVAILABLE

    def test_ping(self, db_url):
        async def main():
            factory, engine = await create_database(db_url)
            try:
                return await SQLAlchemyCartBackend(factory).ping()
            finally:
                await engine.dispose()

        assert run(main()) is True

    def test_observers_fire_on_commit_only(self, db_url):
        seen: list[int] = []

        async def main():
            factory, engine = await create_database(db_url)
            try:
                backend = SQLAlchemyCartBackend(factory)
                backend.observers.subscribe(lambda s: seen.append(s.version))
                cart = backend.for_owner("acct-1")
                ok(await cart.add("sku1", 1, "1.00"))
                ok(await cart.remove("sku9"))
                err(await cart.add("sku1", 1, "oops"))
                ok(await cart.add("sku1", 1, "1.00"))
            finally:
                await engine.dispose()

        run(main())
        assert seen == [1, 2]

    def test_observer_can_write_back_to_the_cart(self, db_url):
        async def main():
            factory, engine = await create_database(db_url)
            try:
                backend = SQLAlchemyCartBackend(factory)
                cart = backend.for_owner("acct-1")

                async def add_gift(state: CartState) -> None:
                    if state.get("gift") is None:
                        ok(await cart.add("gift", 1, "0.00"))

                backend.observers.subscribe(add_gift)
                async with asyncio.timeout(5):
                    ok(await cart.add("sku1", 1, "1.00"))
                return ok(await cart.load())
            finally:
                await engine.dispose()

        assert run(main()).quantities() == {"sku1": 1, "gift": 1}
