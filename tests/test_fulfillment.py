"""
Fulfillment Driver Tests
========================
Exclusive acceptance, validated status requests, and price entry.
"""

from datetime import date
from decimal import Decimal

import pytest

from errors import LineItemNotFoundError, StateTransitionError, ValidationError
from fulfillment import FulfillmentDriver, compute_fulfiller_stats
from order import Order
from order_state import OrderStatus


@pytest.fixture
def driver(backend):
    return FulfillmentDriver(backend)


def order_from(backend, **fields):
    return Order.from_row(backend.add_order_row(**fields))


class TestAcceptOrder:

    @pytest.mark.asyncio
    async def test_accept_binds_fulfiller(self, backend, driver):
        order = order_from(backend)

        result = await driver.accept_order(order, "runner-1")

        assert result.success
        assert result.order.status == OrderStatus.ACCEPTED
        assert result.order.fulfiller_id == "runner-1"
        assert backend.orders[order.id]["runner_id"] == "runner-1"

    @pytest.mark.asyncio
    async def test_second_fulfiller_loses_race(self, backend, driver):
        order = order_from(backend)

        first = await driver.accept_order(order, "runner-1")
        second = await driver.accept_order(order, "runner-2")

        assert first.success
        assert not second.success
        assert second.message == "Order is no longer available"
        assert backend.orders[order.id]["runner_id"] == "runner-1"

    @pytest.mark.asyncio
    async def test_non_pending_never_reaches_backend(self, backend, driver):
        order = order_from(backend, status="shopping", runner_id="runner-1")

        with pytest.raises(StateTransitionError):
            await driver.accept_order(order, "runner-2")

        assert backend.count("accept_order") == 0

    @pytest.mark.asyncio
    async def test_listeners_notified_on_success(self, backend):
        seen = []
        driver = FulfillmentDriver(backend, listeners=[seen.append])

        await driver.accept_order(order_from(backend), "runner-1")

        assert [order.status for order in seen] == [OrderStatus.ACCEPTED]


class TestUpdateStatus:

    @pytest.mark.asyncio
    async def test_legal_transition_persisted(self, backend, driver):
        order = order_from(backend, status="accepted", runner_id="runner-1")

        result = await driver.update_status(order, "shopping")

        assert result.success
        assert result.order.status == OrderStatus.SHOPPING
        assert backend.orders[order.id]["status"] == "shopping"

    @pytest.mark.asyncio
    async def test_illegal_transition_never_reaches_backend(self, backend, driver):
        order = order_from(backend, status="pending")

        with pytest.raises(StateTransitionError):
            await driver.update_status(order, OrderStatus.DELIVERING)

        assert backend.count("update_order_status") == 0

    @pytest.mark.asyncio
    async def test_accept_must_use_accept_order(self, backend, driver):
        with pytest.raises(ValueError):
            await driver.update_status(order_from(backend), "accepted")

    @pytest.mark.asyncio
    async def test_cancel_sends_reason(self, backend, driver):
        order = order_from(backend, status="accepted", runner_id="runner-1")

        result = await driver.update_status(order, "cancelled", reason="shop closed")

        assert result.order.cancellation_reason == "shop closed"
        assert backend.orders[order.id]["cancellation_reason"] == "shop closed"

    @pytest.mark.asyncio
    async def test_unconfirmed_update_leaves_order(self, backend, driver):
        order = order_from(backend, status="accepted", runner_id="runner-1")
        del backend.orders[order.id]

        result = await driver.update_status(order, "shopping")

        assert not result.success
        assert result.order.status == OrderStatus.ACCEPTED


class TestStartDelivery:

    @pytest.mark.asyncio
    async def test_soft_gate_requires_confirmation(self, backend, driver):
        order = order_from(backend, status="shopping", runner_id="runner-1")

        result = await driver.start_delivery(order)

        assert not result.success
        assert result.needs_confirmation
        assert len(result.incomplete_items) == 1
        assert backend.orders[order.id]["status"] == "shopping"

    @pytest.mark.asyncio
    async def test_confirmed_incomplete_delivery(self, backend, driver):
        order = order_from(backend, status="shopping", runner_id="runner-1")

        result = await driver.start_delivery(order, confirm_incomplete=True)

        assert result.success
        assert result.order.status == OrderStatus.DELIVERING

    @pytest.mark.asyncio
    async def test_all_priced_goes_straight_through(self, backend, driver):
        order = order_from(backend, status="shopping", runner_id="runner-1")
        priced = await driver.record_actual_price(order, order.line_items[0].id, "9.80")

        result = await driver.start_delivery(priced.order)

        assert result.success
        assert not result.needs_confirmation

    @pytest.mark.asyncio
    async def test_illegal_state_raises_before_gate(self, backend, driver):
        order = order_from(backend, status="accepted", runner_id="runner-1")

        with pytest.raises(StateTransitionError):
            await driver.start_delivery(order)


class TestRecordActualPrice:

    @pytest.mark.asyncio
    async def test_records_price(self, backend, driver):
        order = order_from(backend, status="shopping", runner_id="runner-1")
        line_id = order.line_items[0].id

        result = await driver.record_actual_price(order, line_id, "9.8")

        assert result.success
        assert result.order.get_line_item(line_id).actual_price == Decimal("9.80")
        assert backend.orders[order.id]["order_items"][0]["actual_price"] == "9.80"

    @pytest.mark.asyncio
    async def test_only_while_shopping(self, backend, driver):
        order = order_from(backend, status="accepted", runner_id="runner-1")

        with pytest.raises(ValidationError):
            await driver.record_actual_price(order, order.line_items[0].id, "9.8")

    @pytest.mark.asyncio
    async def test_unknown_line(self, backend, driver):
        order = order_from(backend, status="shopping", runner_id="runner-1")

        with pytest.raises(LineItemNotFoundError):
            await driver.record_actual_price(order, "oi-missing", "9.8")

    @pytest.mark.asyncio
    async def test_invalid_price(self, backend, driver):
        order = order_from(backend, status="shopping", runner_id="runner-1")

        with pytest.raises(ValidationError) as exc_info:
            await driver.record_actual_price(order, order.line_items[0].id, "free")

        assert "actual_price" in exc_info.value.field_errors


class TestFulfillerStats:

    def test_counts_and_earnings(self, backend):
        orders = [
            order_from(backend, status="completed", runner_id="runner-1"),
            order_from(backend, status="completed", runner_id="runner-1",
                       created_at="2026-10-10T09:00:00"),
            order_from(backend, status="shopping", runner_id="runner-1"),
            order_from(backend, status="cancelled", runner_id="runner-1"),
            order_from(backend, status="completed", runner_id="runner-2"),
        ]

        stats = compute_fulfiller_stats(orders, "runner-1", today=date(2026, 10, 18))

        assert stats.total_orders == 4
        assert stats.completed_orders == 2
        assert stats.active_orders == 1
        assert stats.today_orders == 3
        assert stats.total_earnings == Decimal("5.00")
        assert stats.completion_rate == 50.0
        assert stats.to_dict()["total_earnings"] == "5.00"

    def test_no_orders(self):
        stats = compute_fulfiller_stats([], "runner-1")

        assert stats.total_orders == 0
        assert stats.completion_rate == 0.0
