import asyncio
import logging
import time
from typing import Optional

from quart import Quart, jsonify, request

# Prometheus metrics
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from .common.config import settings
from .common.database import OrderStore
from .common.redis_client import close_redis
from .orders.controller import bp as orders_bp
from .orders.status import StatusTimeline
from .realtime.controller import bp as realtime_bp
from .realtime.notifier import RedisNotifier
from .scheduler.auto_progress import SCHEDULER_NAME as AUTO_PROGRESS, AutoProgressScheduler
from .scheduler.loop import run_periodically
from .scheduler.scheduled_orders import SCHEDULER_NAME as SCHEDULED_ORDERS, ScheduledOrderActivator

log = logging.getLogger(__name__)

REQUEST_COUNT = Counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, float("inf"))
)


def _metrics_endpoint(path: str) -> str:
    # Group dynamic routes to avoid too many unique labels
    parts = path.strip("/").split("/")
    if parts[0] == "orders" and len(parts) > 1:
        return "/orders/<id>" + ("/" + "/".join(parts[2:]) if len(parts) > 2 else "")
    if parts[0] == "users" and len(parts) > 1:
        return "/users/<id>/events"
    return path


def create_app(
    store: Optional[OrderStore] = None,
    notifier=None,
    timeline: Optional[StatusTimeline] = None,
    start_schedulers: Optional[bool] = None,
) -> Quart:
    app = Quart(__name__)

    store = store or OrderStore()
    notifier = notifier or RedisNotifier()
    timeline = timeline or StatusTimeline.from_string(settings.ORDER_STATUS_TIMELINE)
    if start_schedulers is None:
        start_schedulers = settings.SCHEDULERS_ENABLED

    # Handed to blueprints and the pollers explicitly, no module-level handles
    app.extensions["order_store"] = store
    app.extensions["order_notifier"] = notifier
    app.extensions["order_timeline"] = timeline

    # Blueprints
    app.register_blueprint(orders_bp)
    app.register_blueprint(realtime_bp)

    @app.before_request
    async def before_request():
        request._start_time = time.time()
        log.debug(f"[Instance {settings.INSTANCE_ID}] {request.method} {request.path}")

    @app.after_request
    async def after_request(response):
        try:
            if hasattr(request, "_start_time"):
                duration = time.time() - request._start_time
                endpoint = _metrics_endpoint(request.path)
                REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)
                REQUEST_COUNT.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=str(response.status_code)
                ).inc()
                response.headers["X-Instance-ID"] = settings.INSTANCE_ID
        except Exception as e:
            log.error(f"Error recording metrics: {e}")
        return response

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health():
        return jsonify({"status": "ok"})

    @app.before_serving
    async def startup():
        logging.basicConfig(level=settings.LOG_LEVEL)
        log.info("Initializing database...")
        await store.init()
        log.info("Database ready.")
        app.background_tasks = getattr(app, "background_tasks", set())
        stop_event = asyncio.Event()
        app._schedulers_stop = stop_event
        if not start_schedulers:
            log.info("Order schedulers disabled.")
            return
        progress = AutoProgressScheduler(store, notifier, timeline=timeline)
        activator = ScheduledOrderActivator(store, notifier)
        app.background_tasks.add(asyncio.create_task(
            run_periodically(AUTO_PROGRESS, progress.run_once, settings.AUTO_PROGRESS_INTERVAL, stop_event)
        ))
        app.background_tasks.add(asyncio.create_task(
            run_periodically(
                SCHEDULED_ORDERS,
                activator.run_once,
                settings.SCHEDULED_ORDERS_INTERVAL,
                stop_event,
                run_immediately=False,
            )
        ))
        log.info("Order schedulers started.")

    @app.after_serving
    async def shutdown():
        stop_event = getattr(app, "_schedulers_stop", None)
        if stop_event:
            stop_event.set()
        for t in getattr(app, "background_tasks", set()):
            try:
                await asyncio.wait_for(t, timeout=2.0)
            except Exception:
                t.cancel()
        await close_redis()
        log.info("Shutdown complete.")

    return app
