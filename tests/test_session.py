"""Client session wiring tests."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

import db as db_module
from db import DatabaseClient

from checkout import DeliveryInfo, NextStep
from checkout_cache import CheckoutFormCache
from order_state import OrderStatus
from session import ClientSession, CurrentUser, UserRole


@pytest.fixture
def requester():
    return CurrentUser(
        id="student-1",
        role=UserRole.REQUESTER,
        full_name="Ama Mensah",
        phone="0241234567",
        hall_hostel="Volta Hall",
        room_number="12",
    )


@pytest.fixture
def fulfiller():
    return CurrentUser(id="runner-1", role=UserRole.FULFILLER, full_name="Kojo")


@pytest.fixture
def form_cache(tmp_path):
    return CheckoutFormCache(str(tmp_path / "form.json"))


class TestCurrentUser:

    @pytest.mark.parametrize("user_type, role", [
        ("student", UserRole.REQUESTER),
        ("runner", UserRole.FULFILLER),
        ("admin", UserRole.ADMINISTRATOR),
        ("fulfiller", UserRole.FULFILLER),
    ])
    def test_from_profile(self, user_type, role):
        user = CurrentUser.from_profile({"id": "u-1", "user_type": user_type, "phone": None})

        assert user.role == role
        assert user.phone == ""

    def test_unknown_user_type(self):
        with pytest.raises(ValueError):
            CurrentUser.from_profile({"id": "u-1", "user_type": "visitor"})


class TestRequesterSession:

    def test_components(self, requester, backend, config, form_cache):
        session = ClientSession(requester, backend, form_cache=form_cache, config=config)

        assert session.cart is not None
        assert session.checkout is not None
        assert session.order_sync is not None
        assert session.fulfillment is None

    def test_form_prefilled_from_profile(self, requester, backend, config, form_cache):
        ClientSession(requester, backend, form_cache=form_cache, config=config)

        assert form_cache.load() == {
            "hall_hostel": "Volta Hall",
            "room_number": "12",
            "phone": "0241234567",
        }

    def test_existing_form_not_overwritten(self, requester, backend, config, form_cache):
        form_cache.save({"phone": "0201111111", "payment_method": "momo"})

        session = ClientSession(requester, backend, form_cache=form_cache, config=config)

        assert form_cache.load()["phone"] == "0201111111"
        assert session.cart.policy.name == "momo"

    def test_payment_method_reprices_cart(self, requester, backend, config, form_cache, rice):
        session = ClientSession(requester, backend, form_cache=form_cache, config=config)
        session.cart.add_item(rice, 2)

        session.select_payment_method("card")

        assert str(session.cart.service_fee) == "1.50"
        assert form_cache.load()["payment_method"] == "card"

    @pytest.mark.asyncio
    async def test_cart_mutations_queue_saves(self, requester, backend, config, form_cache, rice):
        session = ClientSession(requester, backend, form_cache=form_cache, config=config)

        session.cart.add_item(rice)
        await session.cart.wait_for_persistence()

        assert backend.saved_carts[0][0] == "student-1"

    @pytest.mark.asyncio
    async def test_full_cart_queue_surfaces_error(self, requester, backend, config, form_cache, rice):
        backend.queue_full = True
        session = ClientSession(requester, backend, form_cache=form_cache, config=config)

        session.cart.add_item(rice)
        await session.cart.wait_for_persistence()

        assert "cart queue full" in session.cart.error
        assert session.cart.get_quantity("item-rice") == 1

    @pytest.mark.asyncio
    async def test_failed_cart_flush_surfaces_error(self, requester, config, form_cache, rice, monkeypatch):
        monkeypatch.setattr(db_module, "RETRY_DELAY", 0)
        query = MagicMock()
        query.upsert.return_value = query
        query.execute.side_effect = RuntimeError("network down")
        client = MagicMock()
        client.table.return_value = query
        database = DatabaseClient(client=client, timeout=5)
        session = ClientSession(requester, database, form_cache=form_cache, config=config)

        session.cart.add_item(rice)
        await session.cart.wait_for_persistence()
        await database.flush_carts()

        assert "network down" in session.cart.persist_error
        assert session.cart.error is not None
        assert session.cart.get_quantity("item-rice") == 1

        query.execute.side_effect = None
        query.execute.return_value = SimpleNamespace(data=[])
        session.cart.add_item(rice)
        await session.cart.wait_for_persistence()
        await database.flush_carts()

        assert session.cart.persist_error is None

    @pytest.mark.asyncio
    async def test_submit_checkout(self, requester, backend, config, form_cache, rice):
        session = ClientSession(requester, backend, form_cache=form_cache, config=config)
        session.cart.add_item(rice, 2)
        session.cart.update_delivery_address("Main Gate")
        info = DeliveryInfo("Main Gate", "Volta Hall", "12", "0241234567")

        result = await session.submit_checkout(info, "cash")

        assert result.next_step == NextStep.CONFIRMATION
        assert session.order_sync.get_order(result.order.id) is not None
        assert session.cart.is_empty
        assert form_cache.load() is None

    @pytest.mark.asyncio
    async def test_start_and_close(self, requester, backend, config, form_cache):
        backend.add_order_row(id="order-1", student_id="student-1")
        session = ClientSession(requester, backend, form_cache=form_cache, config=config)

        await session.start()
        await session.order_sync.refresh()
        assert backend.running

        await session.close()
        await session.close()

        assert not backend.running

        assert session.order_sync.get_order("order-1") is not None
        assert session.cart.is_closed
        assert not session.order_sync.is_running
        assert session.get_status()["closed"] is True

    @pytest.mark.asyncio
    async def test_track_order(self, requester, backend, config, form_cache):
        backend.add_order_row(id="order-1", student_id="student-1", status="accepted", runner_id="runner-1")
        session = ClientSession(requester, backend, form_cache=form_cache, config=config)
        await session.start()

        tracker = await session.track_order("order-1")
        await tracker.refresh()

        assert await session.track_order("order-1") is tracker
        assert tracker.is_running
        assert tracker.get_order("order-1").status == OrderStatus.ACCEPTED

        await session.close()
        assert not tracker.is_running

        with pytest.raises(RuntimeError):
            await session.track_order("order-2")


class TestFulfillerSession:

    def test_components(self, fulfiller, backend, config):
        session = ClientSession(fulfiller, backend, config=config)

        assert session.cart is None
        assert session.active_sync is not None
        assert session.available_sync is not None
        assert session.fulfillment is not None

    def test_requester_actions_refused(self, fulfiller, backend, config):
        session = ClientSession(fulfiller, backend, config=config)

        with pytest.raises(PermissionError):
            session.select_payment_method("cash")

    @pytest.mark.asyncio
    async def test_accept_moves_order_between_views(self, fulfiller, backend, config):
        backend.add_order_row(id="order-1")
        session = ClientSession(fulfiller, backend, config=config)
        await session.available_sync.refresh()
        await session.active_sync.refresh()

        order = session.available_sync.get_order("order-1")
        result = await session.fulfillment.accept_order(order, fulfiller.id)

        assert result.success
        assert session.available_sync.get_order("order-1") is None
        assert session.active_sync.get_order("order-1").status == OrderStatus.ACCEPTED


class TestAdministratorSession:

    def test_catalog_only(self, backend, config):
        session = ClientSession(CurrentUser(id="admin-1", role=UserRole.ADMINISTRATOR), backend, config=config)

        assert session.catalog is not None
        assert session.cart is None
        assert session._sync_loops() == []
