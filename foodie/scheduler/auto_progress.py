"""Advance active orders through their lifecycle by age.

Each cycle recomputes every active order's expected status from the time
elapsed since its creation and writes it back if the order is behind.
Nothing here depends on the previous cycle, so a missed or failed cycle
is corrected by the next one.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from prometheus_client import Counter

from ..common.database import OrderStore
from ..orders.model import Order, utcnow
from ..orders.status import (
    DEFAULT_TIMELINE,
    TERMINAL_STATUSES,
    VALID_STATUSES,
    OrderStatus,
    StatusTimeline,
    is_forward,
    status_for_age,
)
from ..realtime.notifier import ORDER_UPDATED, order_topics, order_updated_payload
from .loop import SCHEDULER_ERRORS

_logger = logging.getLogger(__name__)

SCHEDULER_NAME = "auto-progress"

ORDER_TRANSITIONS = Counter(
    "order_status_transitions_total",
    "Order status transitions applied by the order schedulers",
    ["status"],
)


class MalformedOrderError(ValueError):
    pass


@dataclass
class CycleReport:
    examined: int = 0
    transitioned: int = 0
    skipped: int = 0
    failed: int = 0


def is_dormant(order: Order) -> bool:
    """Scheduled for later and not yet activated."""
    return order.scheduled_at is not None and order.status == OrderStatus.PENDING.value


def check_order(order: Order) -> None:
    if order.status not in VALID_STATUSES:
        raise MalformedOrderError(f"unknown status {order.status!r}")
    if order.created_at is None:
        raise MalformedOrderError("missing created_at")
    if (order.delivered_at is not None) != (order.status == OrderStatus.DELIVERED.value):
        raise MalformedOrderError("delivered_at inconsistent with status")


class AutoProgressScheduler:
    def __init__(
        self,
        store: OrderStore,
        notifier,
        timeline: StatusTimeline = DEFAULT_TIMELINE,
        clock: Callable = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.timeline = timeline
        self.clock = clock

    async def run_once(self) -> CycleReport:
        report = CycleReport()
        # A fetch failure propagates and aborts only this cycle
        orders = await self.store.find_active_orders()
        now = self.clock()
        for order in orders:
            report.examined += 1
            try:
                changed = await self._progress(order, now)
            except MalformedOrderError as e:
                report.skipped += 1
                SCHEDULER_ERRORS.labels(scheduler=SCHEDULER_NAME, kind="malformed").inc()
                _logger.warning("Skipping malformed order | order_id=%s err=%s", order.id, e)
                continue
            except Exception as e:
                report.failed += 1
                SCHEDULER_ERRORS.labels(scheduler=SCHEDULER_NAME, kind="order").inc()
                _logger.warning("Failed to progress order, retry next cycle | order_id=%s err=%s", order.id, e)
                continue
            if changed:
                report.transitioned += 1
            else:
                report.skipped += 1
        if report.transitioned or report.failed:
            _logger.info(
                "Auto-progress cycle | examined=%s transitioned=%s failed=%s",
                report.examined,
                report.transitioned,
                report.failed,
            )
        return report

    def target_status(self, order: Order, now) -> Optional[OrderStatus]:
        """Status the order should move to now, or None to leave it alone."""
        check_order(order)
        if OrderStatus(order.status) in TERMINAL_STATUSES or is_dormant(order):
            return None
        age = (now - order.created_at).total_seconds()
        target = status_for_age(age, self.timeline)
        if not is_forward(order.status, target):
            return None
        return target

    async def _progress(self, order: Order, now) -> bool:
        target = self.target_status(order, now)
        if target is None:
            return False

        fields = {"status": target.value}
        if target == OrderStatus.DELIVERED:
            fields["delivered_at"] = now
        # Conditional on the status read above: loses cleanly to a concurrent
        # cancellation or activation instead of overwriting it
        updated = await self.store.update_by_id(order.id, fields, expected_status=order.status)
        if updated is None:
            _logger.info("Order changed concurrently, skipped | order_id=%s from=%s", order.id, order.status)
            return False

        ORDER_TRANSITIONS.labels(status=target.value).inc()
        _logger.info("Order progressed | order_id=%s from=%s to=%s", order.id, order.status, target.value)
        try:
            await self.notifier.publish(order_topics(updated), ORDER_UPDATED, order_updated_payload(updated))
        except Exception as e:
            # Already committed; not retried
            SCHEDULER_ERRORS.labels(scheduler=SCHEDULER_NAME, kind="publish").inc()
            _logger.warning("Failed to notify order update | order_id=%s err=%s", order.id, e)
        return True
