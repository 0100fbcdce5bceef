from quart import Blueprint, current_app, jsonify, request

from .service import cancel_order, get_order, list_orders, place_order, update_status

bp = Blueprint("orders", __name__)

STAFF_ROLES = {"admin", "restaurant_manager"}

_STATUS_CODES = {
    "unauthorized": 401,
    "access_denied": 403,
    "order_not_found": 404,
    "conflict": 409,
}


def _deps():
    ext = current_app.extensions
    return ext["order_store"], ext["order_notifier"]


def _caller():
    # Identity is established upstream; we only read it
    return request.headers.get("X-User-ID", "").strip()


def _respond(result, ok_status: int = 200):
    if result.get("ok"):
        return jsonify(result), ok_status
    return jsonify(result), _STATUS_CODES.get(result.get("error"), 400)


@bp.post("/orders")
async def orders_create():
    user_id = _caller()
    if not user_id:
        return _respond({"ok": False, "error": "unauthorized"})
    data = await request.get_json(force=True, silent=True) or {}
    store, notifier = _deps()
    result = await place_order(
        store,
        notifier,
        user_id=user_id,
        restaurant_id=str(data.get("restaurant_id") or ""),
        scheduled_at=data.get("scheduled_at"),
        notes=data.get("notes"),
        timeline=current_app.extensions["order_timeline"],
    )
    return _respond(result, ok_status=201)


@bp.get("/orders")
async def orders_list():
    user_id = _caller()
    if not user_id:
        return _respond({"ok": False, "error": "unauthorized"})
    try:
        page = int(request.args.get("page", 1))
        limit = int(request.args.get("limit", 10))
    except ValueError:
        return _respond({"ok": False, "error": "invalid_pagination"})
    store, _ = _deps()
    result = await list_orders(store, user_id, status=request.args.get("status"), page=page, limit=limit)
    return _respond(result)


@bp.get("/orders/<int:order_id>")
async def orders_detail(order_id: int):
    user_id = _caller()
    if not user_id:
        return _respond({"ok": False, "error": "unauthorized"})
    store, _ = _deps()
    return _respond(await get_order(store, order_id, user_id))


@bp.put("/orders/<int:order_id>/cancel")
async def orders_cancel(order_id: int):
    user_id = _caller()
    if not user_id:
        return _respond({"ok": False, "error": "unauthorized"})
    store, notifier = _deps()
    return _respond(await cancel_order(store, notifier, order_id, user_id))


@bp.put("/orders/<int:order_id>/status")
async def orders_set_status(order_id: int):
    if not _caller():
        return _respond({"ok": False, "error": "unauthorized"})
    if request.headers.get("X-User-Role", "").strip() not in STAFF_ROLES:
        return _respond({"ok": False, "error": "access_denied"})
    data = await request.get_json(force=True, silent=True) or {}
    store, notifier = _deps()
    return _respond(await update_status(store, notifier, order_id, str(data.get("status") or "")))
