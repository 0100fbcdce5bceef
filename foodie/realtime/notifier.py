"""Order notification fan-out over Redis pub/sub.

Every topic is a Redis channel. Clients watching one order listen on
``order:<id>``; a customer's open sessions listen on ``user:<user_id>``.
Messages are JSON ``{"event": ..., "data": ...}``.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from prometheus_client import Counter
from redis.asyncio import Redis

from ..common.redis_client import get_redis

_logger = logging.getLogger(__name__)

ORDER_UPDATED = "order:updated"
ORDER_CREATED = "order:created"

NOTIFICATIONS_FAILED = Counter(
    "order_notifications_failed_total",
    "Order notifications that could not be published",
    ["event"],
)


def order_topic(order_id) -> str:
    return f"order:{order_id}"


def user_topic(user_id) -> str:
    return f"user:{user_id}"


def order_topics(order) -> list:
    topics = [order_topic(order.id)]
    if order.user_id:
        topics.append(user_topic(order.user_id))
    return topics


def encode_message(event: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": payload})


class RedisNotifier:
    """Best-effort publisher: a failed publish is logged and reported, never raised.

    The status write that triggered the event has already committed, and a
    client that misses the event still sees the right state on refetch.
    """

    def __init__(self, connect: Callable[[], Awaitable[Redis]] = get_redis) -> None:
        self._connect = connect

    async def publish(self, topics: Iterable[str], event: str, payload: Dict[str, Any]) -> bool:
        message = encode_message(event, payload)
        delivered = True
        for topic in topics:
            try:
                r = await self._connect()
                receivers = await r.publish(topic, message)
                _logger.debug("Published %s | topic=%s receivers=%s", event, topic, receivers)
            except Exception as e:
                delivered = False
                NOTIFICATIONS_FAILED.labels(event=event).inc()
                _logger.warning("Failed to publish %s | topic=%s err=%s", event, topic, e)
        return delivered


def order_updated_payload(order, status: Optional[str] = None) -> Dict[str, Any]:
    return {
        "orderId": str(order.id),
        "status": status or order.status,
        "userId": str(order.user_id) if order.user_id else None,
        "restaurantId": str(order.restaurant_id) if order.restaurant_id else None,
    }


def order_created_payload(order) -> Dict[str, Any]:
    return {
        "orderId": str(order.id),
        "restaurant": str(order.restaurant_id) if order.restaurant_id else None,
        "status": order.status,
    }
