"""Promote orders scheduled for later once their time has come.

A dormant order stays ``pending`` with a future ``scheduled_at``. When that
time passes it is confirmed here, exactly once, and from then on the
auto-progress scheduler treats it like any other order. Its age keeps being
measured from ``created_at``, so an order that waited a long time can jump
several statuses on the next auto-progress cycle.
"""
import logging
from typing import Callable

from ..common.database import OrderStore
from ..orders.model import utcnow
from ..orders.status import OrderStatus
from ..realtime.notifier import ORDER_CREATED, order_created_payload, order_topics
from .auto_progress import ORDER_TRANSITIONS, CycleReport
from .loop import SCHEDULER_ERRORS

_logger = logging.getLogger(__name__)

SCHEDULER_NAME = "scheduled-orders"


class ScheduledOrderActivator:
    def __init__(self, store: OrderStore, notifier, clock: Callable = utcnow) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock

    async def run_once(self) -> CycleReport:
        report = CycleReport()
        now = self.clock()
        due = await self.store.find_due_scheduled_orders(now)
        for order in due:
            report.examined += 1
            try:
                activated = await self.store.update_by_id(
                    order.id,
                    {"status": OrderStatus.CONFIRMED.value},
                    expected_status=OrderStatus.PENDING.value,
                )
            except Exception as e:
                report.failed += 1
                SCHEDULER_ERRORS.labels(scheduler=SCHEDULER_NAME, kind="order").inc()
                _logger.warning("Failed to activate scheduled order, retry next cycle | order_id=%s err=%s", order.id, e)
                continue
            if activated is None:
                # Cancelled or activated elsewhere since the fetch
                report.skipped += 1
                continue

            report.transitioned += 1
            ORDER_TRANSITIONS.labels(status=OrderStatus.CONFIRMED.value).inc()
            _logger.info(
                "Processed scheduled order | order_id=%s order_number=%s scheduled_at=%s",
                activated.id,
                activated.order_number,
                activated.scheduled_at,
            )
            try:
                await self.notifier.publish(order_topics(activated), ORDER_CREATED, order_created_payload(activated))
            except Exception as e:
                SCHEDULER_ERRORS.labels(scheduler=SCHEDULER_NAME, kind="publish").inc()
                _logger.warning("Failed to notify scheduled order | order_id=%s err=%s", activated.id, e)
        return report
