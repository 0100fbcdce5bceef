import asyncio
import json
import logging

from quart import Blueprint, Response, current_app, request

from ..common.redis_client import get_redis
from .notifier import order_topic, user_topic

_logger = logging.getLogger(__name__)

bp = Blueprint("realtime", __name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


async def _close_pubsub(pubsub, channel: str) -> None:
    if pubsub is None:
        return
    try:
        await pubsub.unsubscribe(channel)
    except Exception:
        pass
    try:
        await pubsub.close()
    except Exception as e:
        _logger.debug("Error closing pubsub | channel=%s err=%s", channel, e)


def sse_format(message) -> str:
    """Turn a published ``{"event", "data"}`` message into an SSE frame."""
    data = message.get("data")
    try:
        envelope = json.loads(data) if isinstance(data, str) else data
        event = envelope["event"]
        payload = envelope["data"]
    except (TypeError, ValueError, KeyError):
        event, payload = "message", data
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


async def stream_channel(channel: str):
    pubsub = None
    r = None
    backoff = 1.0
    # Advise client on retry
    yield "retry: 3000\n\n"
    try:
        while True:
            try:
                if r is None:
                    r = await get_redis()
                if pubsub is None:
                    pubsub = r.pubsub(ignore_subscribe_messages=True)
                    await pubsub.subscribe(channel)
                message = await pubsub.get_message(timeout=5.0)
                if message:
                    yield sse_format(message)
                else:
                    # Keep-alive to prevent closes by proxies
                    yield ": keep-alive\n\n"
                backoff = 1.0
            except asyncio.CancelledError:
                break
            except Exception as e:
                _logger.warning("Realtime stream error, retrying | channel=%s err=%s", channel, e)
                yield f": redis-error, retrying in {int(backoff)}s\n\n"
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 15.0)
                await _close_pubsub(pubsub, channel)
                pubsub = None
                r = None
    finally:
        await _close_pubsub(pubsub, channel)


def _error(error: str, status: int) -> Response:
    return Response(json.dumps({"ok": False, "error": error}), status=status, mimetype="application/json")


@bp.get("/orders/<int:order_id>/events")
async def order_events(order_id: int):
    """Live status of one order, for the tracking page."""
    caller = request.headers.get("X-User-ID", "").strip()
    if not caller:
        return _error("unauthorized", 401)
    order = await current_app.extensions["order_store"].get_order(order_id)
    if order is None:
        return _error("order_not_found", 404)
    if order.user_id != caller:
        return _error("access_denied", 403)
    return Response(stream_channel(order_topic(order_id)), mimetype="text/event-stream", headers=_SSE_HEADERS)


@bp.get("/users/<user_id>/events")
async def user_events(user_id: str):
    caller = request.headers.get("X-User-ID", "").strip()
    if not caller:
        return _error("unauthorized", 401)
    if caller != user_id:
        return _error("access_denied", 403)
    return Response(stream_channel(user_topic(user_id)), mimetype="text/event-stream", headers=_SSE_HEADERS)
