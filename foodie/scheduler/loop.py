import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from prometheus_client import Counter, Histogram

_logger = logging.getLogger(__name__)

SCHEDULER_ERRORS = Counter(
    "order_scheduler_errors_total",
    "Order scheduler failures (whole cycles and single orders)",
    ["scheduler", "kind"],
)
CYCLE_DURATION = Histogram(
    "order_scheduler_cycle_seconds",
    "Duration of one order scheduler poll cycle",
    ["scheduler"],
)


async def run_periodically(
    name: str,
    cycle: Callable[[], Awaitable[object]],
    interval: float,
    stop_event: Optional[asyncio.Event] = None,
    run_immediately: bool = True,
) -> None:
    """
    Run cycle every interval seconds until stop_event is set.
    - A failing cycle (store unreachable) is logged; the next tick fires regardless
    - Ticks are measured from cycle start, a slow cycle shortens the following wait
    """
    stop_event = stop_event or asyncio.Event()
    _logger.info("%s started | interval=%ss", name, interval)
    if not run_immediately and await _wait(stop_event, interval):
        return
    while not stop_event.is_set():
        started = time.monotonic()
        try:
            with CYCLE_DURATION.labels(scheduler=name).time():
                await cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            SCHEDULER_ERRORS.labels(scheduler=name, kind="cycle").inc()
            _logger.warning("%s cycle failed, will retry | err=%s", name, e)
        remaining = max(0.0, interval - (time.monotonic() - started))
        if await _wait(stop_event, remaining):
            break
    _logger.info("%s stopped", name)


async def _wait(stop_event: asyncio.Event, timeout: float) -> bool:
    # True if stop was requested during the wait
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False
