"""
Order Sync Loop Tests
=====================
Scoped fetches, wholesale view replacement, and teardown discard.
"""

import asyncio

import pytest

from order import Order
from order_state import OrderStatus
from order_sync import OrderSyncLoop, SyncScope


def make_loop(backend, config, actor_id="student-1", scope=SyncScope.REQUESTER):
    return OrderSyncLoop(backend, actor_id, scope, sync_config=config.sync)


class TestScopes:

    @pytest.mark.asyncio
    async def test_requester_scope(self, backend, config):
        backend.add_order_row(id="order-1", student_id="student-1")
        backend.add_order_row(id="order-2", student_id="student-2")
        loop = make_loop(backend, config)

        assert await loop.refresh()

        assert [order.id for order in loop.orders] == ["order-1"]

    @pytest.mark.asyncio
    async def test_fulfiller_active_scope(self, backend, config):
        backend.add_order_row(id="order-1", status="shopping", runner_id="runner-1")
        backend.add_order_row(id="order-2", status="completed", runner_id="runner-1")
        backend.add_order_row(id="order-3", status="accepted", runner_id="runner-2")
        loop = make_loop(backend, config, "runner-1", SyncScope.FULFILLER_ACTIVE)

        await loop.refresh()

        assert [order.id for order in loop.orders] == ["order-1"]

    @pytest.mark.asyncio
    async def test_available_scope(self, backend, config):
        backend.add_order_row(id="order-1")
        backend.add_order_row(id="order-2", status="accepted", runner_id="runner-1")
        loop = make_loop(backend, config, "runner-9", SyncScope.AVAILABLE)

        await loop.refresh()

        assert [order.id for order in loop.orders] == ["order-1"]

    @pytest.mark.asyncio
    async def test_single_order_scope(self, backend, config):
        backend.add_order_row(id="order-1")
        backend.add_order_row(id="order-2")
        loop = make_loop(backend, config, "order-2", SyncScope.ORDER)

        await loop.refresh()
        assert [order.id for order in loop.orders] == ["order-2"]
        assert backend.count("get_order_by_id") == 1

        del backend.orders["order-2"]
        await loop.refresh()
        assert loop.orders == []


class TestRefresh:

    @pytest.mark.asyncio
    async def test_view_replaced_wholesale(self, backend, config):
        backend.add_order_row(id="order-1")
        loop = make_loop(backend, config)
        await loop.refresh()

        backend.orders["order-1"]["status"] = "accepted"
        backend.add_order_row(id="order-2")
        await loop.refresh()

        assert loop.get_order("order-1").status == OrderStatus.ACCEPTED
        assert loop.get_order("order-2") is not None
        assert loop.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_previous_view(self, backend, config):
        backend.add_order_row(id="order-1")
        loop = make_loop(backend, config)
        await loop.refresh()

        backend.fail_next("get_orders_for_actor")
        assert not await loop.refresh()

        assert loop.get_order("order-1") is not None
        assert "injected failure" in loop.last_error

        assert await loop.refresh()
        assert loop.last_error is None

    @pytest.mark.asyncio
    async def test_bad_rows_skipped(self, backend, config):
        backend.add_order_row(id="order-1")
        backend.add_order_row(id="order-2", status="teleported")
        loop = make_loop(backend, config)

        await loop.refresh()

        assert [order.id for order in loop.orders] == ["order-1"]

    @pytest.mark.asyncio
    async def test_server_state_overrides_local(self, backend, config):
        backend.add_order_row(id="order-1", status="accepted", runner_id="runner-1")
        loop = make_loop(backend, config)
        await loop.refresh()

        optimistic = Order.from_row({**backend.orders["order-1"], "status": "shopping"})
        loop.apply_local(optimistic)
        assert loop.get_order("order-1").status == OrderStatus.SHOPPING

        await loop.refresh()
        assert loop.get_order("order-1").status == OrderStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_apply_local_drops_out_of_scope(self, backend, config):
        backend.add_order_row(id="order-1")
        loop = make_loop(backend, config, "runner-1", SyncScope.AVAILABLE)
        await loop.refresh()

        claimed = Order.from_row({**backend.orders["order-1"], "status": "accepted", "runner_id": "runner-1"})
        loop.apply_local(claimed)

        assert loop.get_order("order-1") is None

    @pytest.mark.asyncio
    async def test_subscribers_notified(self, backend, config):
        backend.add_order_row(id="order-1")
        loop = make_loop(backend, config)
        seen = []
        unsubscribe = loop.subscribe(lambda orders: seen.append(len(orders)))

        await loop.refresh()
        unsubscribe()
        await loop.refresh()

        assert seen == [1]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_fetches_immediately_and_stop(self, backend, config):
        backend.add_order_row(id="order-1")
        loop = OrderSyncLoop(backend, "student-1", interval=0.01)

        await loop.start()
        await asyncio.sleep(0.05)
        await loop.stop()

        assert loop.tick_count >= 1
        assert loop.get_order("order-1") is not None
        assert not loop.is_running

    @pytest.mark.asyncio
    async def test_cannot_restart_after_stop(self, backend, config):
        loop = make_loop(backend, config)
        await loop.stop()

        with pytest.raises(RuntimeError):
            await loop.start()

    @pytest.mark.asyncio
    async def test_fetch_landing_after_stop_discarded(self, config):
        release = asyncio.Event()

        class SlowBackend:
            async def get_orders_for_actor(self, actor_id, role, statuses=None):
                await release.wait()
                return [{"id": "order-1", "student_id": actor_id, "status": "pending"}]

        loop = make_loop(SlowBackend(), config)
        refresh = asyncio.create_task(loop.refresh())
        await asyncio.sleep(0)

        await loop.stop()
        release.set()

        assert await refresh is False
        assert loop.orders == []

    @pytest.mark.asyncio
    async def test_apply_local_ignored_after_stop(self, backend, config):
        loop = make_loop(backend, config)
        await loop.stop()

        loop.apply_local(Order.from_row(backend.add_order_row(id="order-1")))

        assert loop.orders == []

    def test_interval_must_be_positive(self, backend):
        with pytest.raises(ValueError):
            OrderSyncLoop(backend, "student-1", interval=0)
