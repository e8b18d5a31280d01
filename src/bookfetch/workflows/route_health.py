"""Per-route health statistics and adaptive timeouts for forwarding routes."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

_UNTESTED_RELIABILITY = 0.5

RouteT = TypeVar("RouteT")


@dataclass
class RouteStat:
    route_id: str
    success_count: int = 0
    failure_count: int = 0
    average_latency_ms: float = 0.0
    consecutive_failures: int = 0

    @property
    def attempts(self) -> int:
        return self.success_count + self.failure_count

    @property
    def reliability(self) -> float:
        if not self.attempts:
            return _UNTESTED_RELIABILITY
        return self.success_count / self.attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route_id": self.route_id,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "average_latency_ms": round(self.average_latency_ms, 2),
            "consecutive_failures": self.consecutive_failures,
            "reliability": round(self.reliability, 4),
        }


def _route_key(route: object) -> str:
    return str(getattr(route, "route_id", route))


class RouteHealthTracker:
    """Thread-safe record of route outcomes.

    The average latency is the arithmetic mean over successful attempts only.
    Failures move the failure counters and never the average. Stats live for
    the lifetime of the tracker and are cleared only through ``reset``.
    """

    def __init__(self, base_timeout: float, *, min_timeout: float = 0.0) -> None:
        if base_timeout <= 0:
            raise ValueError("base_timeout must be positive")
        self.base_timeout = float(base_timeout)
        self.min_timeout = max(0.0, float(min_timeout))
        self._stats: Dict[str, RouteStat] = {}
        self._lock = threading.Lock()

    def _stat(self, route_id: str) -> RouteStat:
        stat = self._stats.get(route_id)
        if stat is None:
            stat = RouteStat(route_id=route_id)
            self._stats[route_id] = stat
        return stat

    def record_attempt(self, route: object, success: bool, latency_ms: float) -> RouteStat:
        route_id = _route_key(route)
        latency = max(0.0, float(latency_ms))
        with self._lock:
            stat = self._stat(route_id)
            if success:
                total = stat.average_latency_ms * stat.success_count + latency
                stat.success_count += 1
                stat.average_latency_ms = total / stat.success_count
                stat.consecutive_failures = 0
            else:
                stat.failure_count += 1
                stat.consecutive_failures += 1
            snapshot = replace(stat)
        logger.debug(
            "route %s %s in %.0fms (ok=%d fail=%d avg=%.0fms)",
            route_id,
            "succeeded" if success else "failed",
            latency,
            snapshot.success_count,
            snapshot.failure_count,
            snapshot.average_latency_ms,
        )
        return snapshot

    def recommended_timeout(self, route: object) -> float:
        """Return ``min(2 * average latency, base timeout)`` in seconds.

        Routes without a successful attempt get the base timeout.
        """

        with self._lock:
            stat = self._stats.get(_route_key(route))
            if stat is None or stat.success_count == 0:
                return self.base_timeout
            adaptive = 2.0 * stat.average_latency_ms / 1000.0
        return max(self.min_timeout, min(adaptive, self.base_timeout))

    def ordered_routes(self, routes: Sequence[RouteT]) -> List[RouteT]:
        """Order routes by reliability (desc), then average latency (asc)."""

        with self._lock:
            keyed = []
            for index, route in enumerate(routes):
                stat = self._stats.get(_route_key(route))
                reliability = stat.reliability if stat else _UNTESTED_RELIABILITY
                latency = stat.average_latency_ms if stat and stat.success_count else math.inf
                keyed.append((-reliability, latency, index, route))
        keyed.sort(key=lambda item: item[:3])
        return [item[3] for item in keyed]

    def get(self, route: object) -> Optional[RouteStat]:
        with self._lock:
            stat = self._stats.get(_route_key(route))
            return replace(stat) if stat else None

    def snapshot(self) -> List[RouteStat]:
        with self._lock:
            return [replace(stat) for stat in self._stats.values()]

    def reset(self, routes: Optional[Iterable[object]] = None) -> None:
        """Operator action: drop history for the given routes (all when None)."""

        with self._lock:
            if routes is None:
                self._stats.clear()
            else:
                for route in routes:
                    self._stats.pop(_route_key(route), None)
        logger.info("route health reset (%s)", "all" if routes is None else "partial")


__all__ = ["RouteStat", "RouteHealthTracker"]
