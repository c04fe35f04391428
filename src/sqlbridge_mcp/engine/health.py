"""Pool health snapshot for the pool_stats operation."""

from __future__ import annotations

from enum import Enum
from typing import Any

from .sql.backend import PoolHandle, PoolStats


class PoolHealth(str, Enum):
    HEALTHY = "HEALTHY"
    BUSY = "BUSY"
    EXHAUSTED = "EXHAUSTED"


def classify_health(stats: PoolStats) -> PoolHealth:
    """EXHAUSTED when every allowed connection is leased, BUSY when none is idle."""
    if stats.active >= stats.max:
        return PoolHealth.EXHAUSTED
    if stats.idle == 0:
        return PoolHealth.BUSY
    return PoolHealth.HEALTHY


def utilization_percent(stats: PoolStats) -> float:
    if stats.max <= 0:
        return 0.0
    return round(stats.active / stats.max * 100, 1)


def pool_health(stats: PoolStats) -> dict[str, Any]:
    """Render a stats snapshot with derived health fields."""
    return {
        "connections": stats.size,
        "active_connections": stats.active,
        "idle_connections": stats.idle,
        "max_connections": stats.max,
        "min_connections": stats.min,
        "wait_queue_size": stats.waiting,
        "utilization_percent": utilization_percent(stats),
        "health": classify_health(stats).value,
    }


def pool_report(handle: PoolHandle) -> dict[str, Any]:
    """Snapshot of a live pool; reads counters only and never acquires."""
    report = pool_health(handle.stats())
    report["engine"] = handle.engine.value
    report["dsn"] = handle.descriptor.safe_dsn
    return report
