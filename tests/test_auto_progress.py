from datetime import timedelta

from conftest import T0

from foodie.orders.service import update_status
from foodie.scheduler.auto_progress import AutoProgressScheduler


def _scheduler(store, notifier, clock):
    return AutoProgressScheduler(store, notifier, clock=clock)


async def test_order_progresses_and_is_delivered_once(store, notifier, clock, make_order):
    order = await make_order()
    scheduler = _scheduler(store, notifier, clock)

    clock.at(31)
    report = await scheduler.run_once()
    assert report.transitioned == 1
    assert (await store.get_order(order.id)).status == "confirmed"
    assert notifier.events() == [
        {
            "topics": [f"order:{order.id}", "user:u1"],
            "event": "order:updated",
            "data": {"orderId": str(order.id), "status": "confirmed", "userId": "u1", "restaurantId": "r1"},
        }
    ]

    clock.at(181)
    await scheduler.run_once()
    delivered = await store.get_order(order.id)
    assert delivered.status == "delivered"
    assert delivered.delivered_at == T0 + timedelta(seconds=181)

    clock.at(5000)
    report = await scheduler.run_once()
    assert report.examined == 0
    assert len(notifier.events()) == 2
    assert (await store.get_order(order.id)).delivered_at == T0 + timedelta(seconds=181)


async def test_unchanged_status_is_not_rewritten_or_republished(store, notifier, clock, make_order):
    await make_order()
    scheduler = _scheduler(store, notifier, clock)

    clock.at(31)
    await scheduler.run_once()
    clock.at(35)
    report = await scheduler.run_once()

    assert report.transitioned == 0
    assert len(notifier.events()) == 1


async def test_skips_ahead_with_a_single_event(store, notifier, clock, make_order):
    order = await make_order()
    scheduler = _scheduler(store, notifier, clock)

    clock.at(10)
    await scheduler.run_once()
    assert notifier.events() == []

    clock.at(200)
    await scheduler.run_once()
    assert [e["data"]["status"] for e in notifier.events()] == ["delivered"]
    assert (await store.get_order(order.id)).status == "delivered"


async def test_dormant_order_stays_pending(store, notifier, clock, make_order):
    order = await make_order(scheduled_at=T0 + timedelta(minutes=10))
    scheduler = _scheduler(store, notifier, clock)

    for seconds in (30, 300, 599, 700):
        clock.at(seconds)
        await scheduler.run_once()

    # Past scheduled_at too: waits for the activator
    assert (await store.get_order(order.id)).status == "pending"
    assert notifier.events() == []


async def test_cancelled_order_is_never_touched(store, notifier, clock, make_order):
    order = await make_order()
    await store.update_by_id(order.id, {"status": "cancelled"})
    scheduler = _scheduler(store, notifier, clock)

    clock.at(1000)
    report = await scheduler.run_once()

    assert report.examined == 0
    assert (await store.get_order(order.id)).status == "cancelled"
    assert notifier.events() == []


async def test_never_moves_backward(store, notifier, clock, make_order):
    order = await make_order(status="ready")
    scheduler = _scheduler(store, notifier, clock)

    clock.at(40)
    await scheduler.run_once()

    assert (await store.get_order(order.id)).status == "ready"
    assert notifier.events() == []


async def test_failure_on_one_order_does_not_abort_batch(store, notifier, clock, make_order):
    broken = await make_order(user_id="u1")
    healthy = await make_order(user_id="u2")

    class FlakyStore:
        def __init__(self, inner):
            self.inner = inner

        async def find_active_orders(self):
            return await self.inner.find_active_orders()

        async def update_by_id(self, order_id, fields, expected_status=None):
            if order_id == broken.id:
                raise ConnectionError("write timed out")
            return await self.inner.update_by_id(order_id, fields, expected_status)

    clock.at(65)
    report = await _scheduler(FlakyStore(store), notifier, clock).run_once()

    assert report.failed == 1
    assert report.transitioned == 1
    assert (await store.get_order(broken.id)).status == "pending"
    assert (await store.get_order(healthy.id)).status == "preparing"

    # Recovered store: next cycle catches up
    await _scheduler(store, notifier, clock).run_once()
    assert (await store.get_order(broken.id)).status == "preparing"


async def test_publish_failure_keeps_the_write(store, clock, make_order):
    order = await make_order()

    class BrokenNotifier:
        async def publish(self, topics, event, payload):
            raise ConnectionError("redis down")

    clock.at(95)
    report = await _scheduler(store, BrokenNotifier(), clock).run_once()

    assert report.transitioned == 1
    assert report.failed == 0
    assert (await store.get_order(order.id)).status == "ready"


async def test_malformed_order_is_skipped(store, notifier, clock, make_order):
    bad = await make_order(status="lost")
    good = await make_order()

    clock.at(31)
    report = await _scheduler(store, notifier, clock).run_once()

    assert report.transitioned == 1
    assert (await store.get_order(bad.id)).status == "lost"
    assert (await store.get_order(good.id)).status == "confirmed"


async def test_concurrent_cancel_wins(store, notifier, clock, make_order):
    order = await make_order()

    class RacingStore:
        def __init__(self, inner):
            self.inner = inner

        async def find_active_orders(self):
            orders = await self.inner.find_active_orders()
            # customer cancels between our read and our write
            await self.inner.update_by_id(order.id, {"status": "cancelled"})
            return orders

        async def update_by_id(self, order_id, fields, expected_status=None):
            return await self.inner.update_by_id(order_id, fields, expected_status)

    clock.at(100)
    report = await _scheduler(RacingStore(store), notifier, clock).run_once()

    assert report.transitioned == 0
    assert (await store.get_order(order.id)).status == "cancelled"
    assert notifier.events() == []


async def test_staff_override_is_not_undone(store, notifier, clock, make_order):
    order = await make_order()
    scheduler = _scheduler(store, notifier, clock)

    clock.at(40)
    await scheduler.run_once()
    assert (await update_status(store, notifier, order.id, "ready"))["ok"] is True

    clock.at(45)
    await scheduler.run_once()
    assert (await store.get_order(order.id)).status == "ready"

    clock.at(125)
    await scheduler.run_once()
    assert (await store.get_order(order.id)).status == "out_for_delivery"
    assert [e["data"]["status"] for e in notifier.events("order:updated")] == [
        "confirmed",
        "ready",
        "out_for_delivery",
    ]
