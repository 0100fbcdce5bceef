"""Order status state machine.

An order's status is a pure function of its age: each status has a threshold
in seconds since creation and an order sits in the last status whose
threshold it has reached. ``cancelled`` is terminal and never produced here;
it only comes from the cancellation path.
"""
from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Tuple


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Forward order of the time-driven lifecycle
STATUS_ORDER: Tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

VALID_STATUSES = frozenset(s.value for s in OrderStatus)


@dataclass(frozen=True)
class StatusTimeline:
    """Seconds since creation at which each lifecycle status is reached."""

    pending: float = 0
    confirmed: float = 30
    preparing: float = 60
    ready: float = 90
    out_for_delivery: float = 120
    delivered: float = 180

    def __post_init__(self) -> None:
        thresholds = self.thresholds()
        if thresholds[0] != 0:
            raise ValueError("pending threshold must be 0")
        for prev, cur in zip(thresholds, thresholds[1:]):
            if cur < prev:
                raise ValueError(f"thresholds must be non-decreasing: {list(thresholds)}")

    def thresholds(self) -> Tuple[float, ...]:
        return (
            self.pending,
            self.confirmed,
            self.preparing,
            self.ready,
            self.out_for_delivery,
            self.delivered,
        )

    @classmethod
    def from_values(cls, values: Iterable[float]) -> "StatusTimeline":
        values = [float(v) for v in values]
        if len(values) != len(STATUS_ORDER):
            raise ValueError(f"expected {len(STATUS_ORDER)} thresholds, got {len(values)}")
        return cls(*values)

    @classmethod
    def from_string(cls, raw: str) -> "StatusTimeline":
        """Parse ``"0,30,60,90,120,180"`` as used by ORDER_STATUS_TIMELINE."""
        try:
            values = [float(part) for part in raw.split(",") if part.strip()]
        except ValueError as e:
            raise ValueError(f"invalid status timeline {raw!r}: {e}") from e
        return cls.from_values(values)


DEFAULT_TIMELINE = StatusTimeline()


def status_for_age(age_seconds: float, timeline: StatusTimeline = DEFAULT_TIMELINE) -> OrderStatus:
    """Return the last lifecycle status whose threshold is <= age_seconds."""
    idx = bisect_right(timeline.thresholds(), age_seconds) - 1
    if idx < 0:
        return OrderStatus.PENDING
    return STATUS_ORDER[idx]


def status_rank(status) -> int:
    """Position of a lifecycle status in STATUS_ORDER.

    Raises ValueError for ``cancelled`` and unknown values.
    """
    return STATUS_ORDER.index(OrderStatus(status))


def is_forward(current, target) -> bool:
    """True if moving from current to target advances the lifecycle."""
    if OrderStatus(current) in TERMINAL_STATUSES:
        return False
    return status_rank(target) > status_rank(current)
