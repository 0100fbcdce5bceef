import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from ..common.config import settings
from ..common.database import OrderStore
from ..realtime.notifier import (
    ORDER_CREATED,
    ORDER_UPDATED,
    order_created_payload,
    order_topics,
    order_updated_payload,
)
from .model import utcnow
from .status import DEFAULT_TIMELINE, TERMINAL_STATUSES, VALID_STATUSES, OrderStatus, StatusTimeline

_logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 500


def parse_scheduled_at(raw) -> Optional[datetime]:
    """ISO 8601 string (or datetime) to naive UTC; raises ValueError."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def estimate_delivery(created_at: datetime, scheduled_at: Optional[datetime], timeline: StatusTimeline) -> datetime:
    """When the schedulers will mark the order delivered.

    Age always counts from creation, so a scheduled order is due at
    created_at + t_delivered, or at activation if that comes later.
    """
    due = created_at + timedelta(seconds=timeline.delivered)
    if scheduled_at is not None and scheduled_at > due:
        return scheduled_at
    return due


async def place_order(
    store: OrderStore,
    notifier,
    user_id: str,
    restaurant_id: str,
    scheduled_at=None,
    notes: Optional[str] = None,
    timeline: StatusTimeline = DEFAULT_TIMELINE,
    now: Optional[datetime] = None,
) -> Dict:
    if not user_id:
        return {"ok": False, "error": "invalid_user"}
    if not restaurant_id:
        return {"ok": False, "error": "invalid_restaurant"}
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        return {"ok": False, "error": "notes_too_long"}

    now = now or utcnow()
    try:
        when = parse_scheduled_at(scheduled_at)
    except (TypeError, ValueError):
        return {"ok": False, "error": "invalid_scheduled_at"}
    if when is not None:
        if when <= now:
            return {"ok": False, "error": "scheduled_in_past"}
        if when > now + timedelta(days=settings.SCHEDULE_MAX_DAYS_AHEAD):
            return {"ok": False, "error": "scheduled_too_far", "max_days": settings.SCHEDULE_MAX_DAYS_AHEAD}

    order = await store.create_order(
        user_id=str(user_id),
        restaurant_id=str(restaurant_id),
        status=OrderStatus.PENDING.value,
        notes=notes,
        created_at=now,
        scheduled_at=when,
        estimated_delivery_at=estimate_delivery(now, when, timeline),
    )
    _logger.info("Order placed | order_id=%s user_id=%s scheduled_at=%s", order.id, order.user_id, when)

    await notifier.publish(order_topics(order), ORDER_CREATED, order_created_payload(order))
    return {"ok": True, "order": order.to_dict()}


async def get_order(store: OrderStore, order_id: int, user_id: str) -> Dict:
    order = await store.get_order(order_id)
    if order is None:
        return {"ok": False, "error": "order_not_found"}
    if order.user_id != str(user_id):
        return {"ok": False, "error": "access_denied"}
    return {"ok": True, "order": order.to_dict()}


async def list_orders(
    store: OrderStore,
    user_id: str,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict:
    if status and status not in VALID_STATUSES:
        return {"ok": False, "error": "invalid_status"}
    page = max(1, page)
    limit = min(max(1, limit), 100)
    orders = await store.find_user_orders(str(user_id), status=status, limit=limit, offset=(page - 1) * limit)
    return {"ok": True, "orders": [o.to_dict() for o in orders], "page": page, "limit": limit}


async def cancel_order(store: OrderStore, notifier, order_id: int, user_id: str, attempts: int = 3) -> Dict:
    terminal = {s.value for s in TERMINAL_STATUSES}
    for _ in range(attempts):
        order = await store.get_order(order_id)
        if order is None:
            return {"ok": False, "error": "order_not_found"}
        if order.user_id != str(user_id):
            return {"ok": False, "error": "access_denied"}
        if order.status in terminal:
            return {"ok": False, "error": "not_cancellable", "status": order.status}

        cancelled = await store.update_by_id(
            order.id,
            {"status": OrderStatus.CANCELLED.value},
            expected_status=order.status,
        )
        if cancelled is not None:
            break
        # A scheduler moved it on since the read; look again
        _logger.info("Order changed during cancel, retrying | order_id=%s from=%s", order.id, order.status)
    else:
        return {"ok": False, "error": "conflict"}

    _logger.info("Order cancelled | order_id=%s from=%s", order.id, order.status)
    await notifier.publish(order_topics(cancelled), ORDER_UPDATED, order_updated_payload(cancelled))
    return {"ok": True, "order": cancelled.to_dict()}


async def update_status(store: OrderStore, notifier, order_id: int, status: str, attempts: int = 3) -> Dict:
    """Staff override: set any status, forward or back.

    The auto-progress scheduler only ever moves an order forward from here.
    """
    if status not in VALID_STATUSES:
        return {"ok": False, "error": "invalid_status"}
    fields = {
        "status": status,
        "delivered_at": utcnow() if status == OrderStatus.DELIVERED.value else None,
    }
    for _ in range(attempts):
        order = await store.get_order(order_id)
        if order is None:
            return {"ok": False, "error": "order_not_found"}
        if order.status == status:
            return {"ok": True, "order": order.to_dict()}
        updated = await store.update_by_id(order.id, fields, expected_status=order.status)
        if updated is not None:
            break
        _logger.info("Order changed during status update, retrying | order_id=%s from=%s", order.id, order.status)
    else:
        return {"ok": False, "error": "conflict"}

    _logger.info("Order status set by staff | order_id=%s from=%s to=%s", order.id, order.status, status)
    await notifier.publish(order_topics(updated), ORDER_UPDATED, order_updated_payload(updated))
    return {"ok": True, "order": updated.to_dict()}
