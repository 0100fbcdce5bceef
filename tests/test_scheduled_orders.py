from datetime import timedelta

from conftest import T0

from foodie.scheduler.auto_progress import AutoProgressScheduler
from foodie.scheduler.scheduled_orders import ScheduledOrderActivator


async def test_due_order_is_activated_once(store, notifier, clock, make_order):
    order = await make_order(scheduled_at=T0 + timedelta(seconds=600))
    activator = ScheduledOrderActivator(store, notifier, clock=clock)

    clock.at(601)
    first = await activator.run_once()
    second = await activator.run_once()

    assert first.transitioned == 1
    assert second.examined == 0
    assert (await store.get_order(order.id)).status == "confirmed"
    assert notifier.events("order:created") == [
        {
            "topics": [f"order:{order.id}", "user:u1"],
            "event": "order:created",
            "data": {"orderId": str(order.id), "restaurant": "r1", "status": "confirmed"},
        }
    ]


async def test_not_yet_due_order_is_left_alone(store, notifier, clock, make_order):
    order = await make_order(scheduled_at=T0 + timedelta(seconds=600))

    clock.at(599)
    await ScheduledOrderActivator(store, notifier, clock=clock).run_once()

    assert (await store.get_order(order.id)).status == "pending"
    assert notifier.events() == []


async def test_ignores_unscheduled_and_cancelled_orders(store, notifier, clock, make_order):
    immediate = await make_order()
    cancelled = await make_order(scheduled_at=T0 + timedelta(seconds=60), status="cancelled")

    clock.at(3600)
    report = await ScheduledOrderActivator(store, notifier, clock=clock).run_once()

    assert report.examined == 0
    assert (await store.get_order(immediate.id)).status == "pending"
    assert (await store.get_order(cancelled.id)).status == "cancelled"


async def test_activation_write_failure_is_retried_next_cycle(store, notifier, clock, make_order):
    order = await make_order(scheduled_at=T0 + timedelta(seconds=60))

    class FailingOnce:
        def __init__(self, inner):
            self.inner = inner
            self.failed = False

        async def find_due_scheduled_orders(self, now):
            return await self.inner.find_due_scheduled_orders(now)

        async def update_by_id(self, order_id, fields, expected_status=None):
            if not self.failed:
                self.failed = True
                raise TimeoutError("store timeout")
            return await self.inner.update_by_id(order_id, fields, expected_status)

    activator = ScheduledOrderActivator(FailingOnce(store), notifier, clock=clock)
    clock.at(61)
    assert (await activator.run_once()).failed == 1
    assert (await activator.run_once()).transitioned == 1
    assert (await store.get_order(order.id)).status == "confirmed"
    assert len(notifier.events("order:created")) == 1


async def test_activated_order_ages_from_creation(store, notifier, clock, make_order):
    order = await make_order(scheduled_at=T0 + timedelta(seconds=600))
    progress = AutoProgressScheduler(store, notifier, clock=clock)
    activator = ScheduledOrderActivator(store, notifier, clock=clock)

    for seconds in (30, 300):
        clock.at(seconds)
        await progress.run_once()
        assert (await store.get_order(order.id)).status == "pending"

    clock.at(601)
    await activator.run_once()
    assert (await store.get_order(order.id)).status == "confirmed"

    await progress.run_once()
    assert (await store.get_order(order.id)).status == "delivered"
    assert [e["data"]["status"] for e in notifier.events("order:updated")] == ["delivered"]


async def test_order_cancelled_before_activation_is_not_confirmed(store, notifier, clock, make_order):
    order = await make_order(scheduled_at=T0 + timedelta(seconds=600))

    class RacingStore:
        def __init__(self, inner):
            self.inner = inner

        async def find_due_scheduled_orders(self, now):
            due = await self.inner.find_due_scheduled_orders(now)
            # customer cancels between our read and our write
            await self.inner.update_by_id(order.id, {"status": "cancelled"})
            return due

        async def update_by_id(self, order_id, fields, expected_status=None):
            return await self.inner.update_by_id(order_id, fields, expected_status)

    clock.at(601)
    report = await ScheduledOrderActivator(RacingStore(store), notifier, clock=clock).run_once()

    assert report.examined == 1
    assert report.skipped == 1
    assert report.transitioned == 0
    assert (await store.get_order(order.id)).status == "cancelled"
    assert notifier.events("order:created") == []
