"""
In-process counters for the registry controller.

Nothing here is exported anywhere; the counters exist so transient
resolution gaps are observable without being treated as failures.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from threading import RLock


@dataclass(frozen=True, slots=True)
class RegistryMetricsSnapshot:
    events: dict[tuple[str, str], int]
    endpoints_with_no_pods: int
    endpoints_pending_pod: int
    workload_port_misses: int

    def event_count(self, kind: str, event: str) -> int:
        return self.events.get((kind, event), 0)


@dataclass(slots=True)
class RegistryMetrics:
    _events: Counter[tuple[str, str]] = field(default_factory=Counter)
    _endpoints_with_no_pods: int = 0
    _endpoints_pending_pod: int = 0
    _workload_port_misses: int = 0
    _lock: RLock = field(default_factory=RLock)

    def increment_event(self, kind: str, event: str) -> None:
        with self._lock:
            self._events[(kind, event)] += 1

    def endpoint_without_pod(self) -> None:
        with self._lock:
            self._endpoints_with_no_pods += 1

    def set_pending_pods(self, count: int) -> None:
        with self._lock:
            self._endpoints_pending_pod = count

    def workload_port_miss(self) -> None:
        with self._lock:
            self._workload_port_misses += 1

    def snapshot(self) -> RegistryMetricsSnapshot:
        with self._lock:
            return RegistryMetricsSnapshot(
                events=dict(self._events),
                endpoints_with_no_pods=self._endpoints_with_no_pods,
                endpoints_pending_pod=self._endpoints_pending_pod,
                workload_port_misses=self._workload_port_misses,
            )
