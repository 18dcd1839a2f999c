"""Tests for backend selection and the login-time cart merge."""

from decimal import Decimal

from _support import err, ok, run

from cartflow._types import Anonymous, Authenticated
from cartflow.cart import (
    CartErrorKind,
    MemoryCartBackend,
    OwnerMode,
    merge_carts,
    merge_token,
    select_cart_store,
)


def _backends() -> tuple[MemoryCartBackend, MemoryCartBackend]:
    return MemoryCartBackend(), MemoryCartBackend()


class TestSelection:
    def test_anonymous_gets_device_cart(self):
        async def main():
            local, remote = _backends()
            selection = ok(await select_cart_store(Anonymous("device-1"), ephemeral=local, durable=remote))
            ok(await selection.store.add("sku1", 1, "10.00"))
            return selection, ok(await local.for_owner("device-1").load())

        selection, local_state = run(main())
        assert selection.mode is OwnerMode.ANONYMOUS
        assert selection.store.owner_key == "device-1"
        assert not selection.degraded
        assert local_state.quantities() == {"sku1": 1}

    def test_authenticated_gets_account_cart(self):
        async def main():
            local, remote = _backends()
            identity = Authenticated("acct-1", "tok", "device-1")
            selection = ok(await select_cart_store(identity, ephemeral=local, durable=remote))
            ok(await selection.store.add("sku1", 1, "10.00"))
            return selection, ok(await remote.for_owner("acct-1", OwnerMode.AUTHENTICATED).load())

        selection, remote_state = run(main())
        assert selection.mode is OwnerMode.AUTHENTICATED
        assert selection.store.owner_key == "acct-1"
        assert remote_state.quantities() == {"sku1": 1}

    def test_unhealthy_durable_store_is_an_error(self):
        async def main():
            local, remote = _backends()
            remote.set_healthy(False)
            return err(await select_cart_store(Authenticated("acct-1"), ephemeral=local, durable=remote))

        error = run(main())
        assert error.kind is CartErrorKind.UNAVAILABLE
        assert error.retryable

    def test_fallback_is_flagged_degraded(self):
        async def main():
            local, remote = _backends()
            remote.set_healthy(False)
            identity = Authenticated("acct-1", device_id="device-1")
            return ok(await select_cart_store(identity, ephemeral=local, durable=remote, allow_fallback=True))

        selection = run(main())
        assert selection.degraded
        assert selection.mode is OwnerMode.AUTHENTICATED
        assert selection.store.owner_key == "device-1"

    def test_fallback_without_device_scopes_by_account(self):
        async def main():
            local, remote = _backends()
            remote.close()
            return ok(await select_cart_store(
                Authenticated("acct-1"), ephemeral=local, durable=remote, allow_fallback=True,
            ))

        assert run(main()).store.owner_key == "acct-1"


class TestMerge:
    def test_overlapping_products_sum(self):
        async def main():
            local, remote = _backends()
            device = local.for_owner("device-1")
            account = remote.for_owner("acct-1", OwnerMode.AUTHENTICATED)
            ok(await device.add("A", 2, "3.00"))
            ok(await account.add("A", 3, "3.00"))
            ok(await account.add("B", 1, "4.00"))
            result = ok(await merge_carts(device, account))
            return result, ok(await device.load()), ok(await account.load())

        result, device_state, account_state = run(main())
        assert result.state.quantities() == {"A": 5, "B": 1}
        assert result.merged == 1
        assert not result.skipped
        assert account_state.quantities() == {"A": 5, "B": 1}
        assert device_state.is_empty

    def test_guest_items_land_in_empty_account(self):
        async def main():
            local, remote = _backends()
            device = local.for_owner("device-1")
            account = remote.for_owner("acct-1", OwnerMode.AUTHENTICATED)
            ok(await device.add("sku1", 2, "10.00", display_name="Mug"))
            ok(await device.add("sku2", 1, "5.00"))
            result = ok(await merge_carts(device, account))
            return result, ok(await account.total())

        result, total = run(main())
        assert result.merged == 2
        assert result.state.get("sku1").display_name == "Mug"
        assert total == Decimal("25.00")

    def test_second_run_changes_nothing(self):
        async def main():
            local, remote = _backends()
            device = local.for_owner("device-1")
            account = remote.for_owner("acct-1", OwnerMode.AUTHENTICATED)
            ok(await device.add("A", 2, "3.00"))
            ok(await merge_carts(device, account))
            again = ok(await merge_carts(device, account))
            return again, ok(await account.load())

        again, account_state = run(main())
        assert again.merged == 0
        assert account_state.quantities() == {"A": 2}

    def test_empty_guest_cart_leaves_account_untouched(self):
        async def main():
            local, remote = _backends()
            account = remote.for_owner("acct-1", OwnerMode.AUTHENTICATED)
            ok(await account.add("B", 1, "4.00"))
            before = ok(await account.load())
            result = ok(await merge_carts(local.for_owner("device-1"), account))
            return before, result

        before, result = run(main())
        assert result.state == before
        assert result.merged == 0

    def test_rerun_after_failed_clear_does_not_double_count(self):
        async def main():
            local, remote = _backends()
            device = local.for_owner("device-1")
            account = remote.for_owner("acct-1", OwnerMode.AUTHENTICATED)
            ok(await device.add("A", 2, "3.00"))
            ok(await account.add("A", 3, "3.00"))
            snapshot = ok(await device.load())

            original_clear = device.clear

            async def failing_clear():
                local.fail_next()
                return await original_clear()

            device.clear = failing_clear
            first = err(await merge_carts(device, account))
            del device.clear

            retried = ok(await merge_carts(device, account))
            return snapshot, first, retried, ok(await device.load()), ok(await account.load())

        snapshot, first, retried, device_state, account_state = run(main())
        assert first.kind is CartErrorKind.UNAVAILABLE
        assert retried.skipped
        assert account_state.quantities() == {"A": 5}
        assert device_state.is_empty
        assert device_state.cart_id != snapshot.cart_id

    def test_failed_absorb_leaves_both_carts(self):
        async def main():
            local, remote = _backends()
            device = local.for_owner("device-1")
            account = remote.for_owner("acct-1", OwnerMode.AUTHENTICATED)
            ok(await device.add("A", 2, "3.00"))
            ok(await account.add("B", 1, "4.00"))
            remote.fail_next()
            error = err(await merge_carts(device, account))
            return error, ok(await device.load()), ok(await account.load())

        error, device_state, account_state = run(main())
        assert error.kind is CartErrorKind.UNAVAILABLE
        assert device_state.quantities() == {"A": 2}
        assert account_state.quantities() == {"B": 1}

    def test_guest_keeps_shopping_between_failed_clear_and_rerun(self):
        async def main():
            local, remote = _backends()
            device = local.for_owner("device-1")
            account = remote.for_owner("acct-1", OwnerMode.AUTHENTICATED)
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
            ok(await device.add("A", 1, "3.00"))
            retried = ok(await merge_carts(device, account))
            return retried, ok(await device.load()), ok(await account.load())

        retried, device_state, account_state = run(main())
        assert retried.merged == 2
        assert account_state.quantities() == {"A": 6, "B": 1}
        assert device_state.is_empty

    def test_merge_token_is_stable_until_clear(self):
        async def main():
            cart = MemoryCartBackend().for_owner("device-1")
            first = ok(await cart.add("A", 1, "1.00"))
            second = ok(await cart.add("A", 1, "1.00"))
            cleared = ok(await cart.clear())
            return first, second, cleared

        first, second, cleared = run(main())
        assert merge_token(first) == first.cart_id
        assert merge_token(first) == merge_token(second)
        assert merge_token(cleared) != merge_token(first)
