"""
Event registration and handler fan-out.

Watch callbacks never mutate state directly: each one is turned into a
queued task. Before the initial sync begins callbacks only count events.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from threading import RLock
from typing import Generic, TypeAlias, TypeVar

from loguru import logger

from meshreg.controller.queue import EventQueue
from meshreg.controller.sync_state import SyncState
from meshreg.core.model import Event, Service, WorkloadInstance
from meshreg.core.statistics import RegistryMetrics
from meshreg.kube.client import EventHandler, ObjectCache
from meshreg.kube.resources import KubeObject

T = TypeVar("T", bound=KubeObject)

ServiceHandler: TypeAlias = Callable[[Service | None, Service, Event], None]
WorkloadHandler: TypeAlias = Callable[[WorkloadInstance, Event], None]


@dataclass(frozen=True, slots=True)
class ResourceHandler(Generic[T]):
    """How one resource kind is processed on the queue.

    ``handle(old, cur, event)`` runs on the consumer. ``skip_update(old, cur)``
    returning True suppresses an update before it is queued.
    """

    kind: str
    handle: Callable[[T | None, T, Event], None]
    skip_update: Callable[[T, T], bool] | None = None


class EventRegistrar:
    """Turns watch callbacks into queued work, honouring the sync phase."""

    def __init__(
        self,
        queue: EventQueue,
        sync_state: SyncState | None,
        metrics: RegistryMetrics,
    ) -> None:
        self._queue = queue
        self._sync_state = sync_state
        self._metrics = metrics

    def should_enqueue(self, kind: str) -> bool:
        if self._sync_state is None:
            return True
        if not self._sync_state.should_enqueue():
            logger.trace(f"{kind} event dropped before initial sync")
            return False
        return True

    def register(self, cache: ObjectCache[T], handler: ResourceHandler[T]) -> None:
        kind = handler.kind

        def latest(cur: T) -> T | None:
            # an immediate delete after update can leave nothing to process;
            # the delete is handled on its own
            return cache.get(cur.name, cur.namespace)

        def process(old: T | None, cur: T, event: Event) -> None:
            if event is not Event.DELETE:
                fresh = latest(cur)
                if fresh is None:
                    return
                cur = fresh
            handler.handle(old, cur, event)

        def on_add(obj: T) -> None:
            self._metrics.increment_event(kind, "add")
            if self.should_enqueue(kind):
                self._queue.push(lambda: process(None, obj, Event.ADD))

        def on_update(old: T, cur: T) -> None:
            if handler.skip_update is not None and handler.skip_update(old, cur):
                self._metrics.increment_event(kind, "updatesame")
                return
            self._metrics.increment_event(kind, "update")
            if self.should_enqueue(kind):
                self._queue.push(lambda: process(old, cur, Event.UPDATE))

        def on_delete(obj: T) -> None:
            self._metrics.increment_event(kind, "delete")
            if self.should_enqueue(kind):
                self._queue.push(lambda: process(None, obj, Event.DELETE))

        cache.add_event_handler(
            EventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )


@dataclass(slots=True)
class ControllerHandlers:
    """Service and workload subscribers notified after each committed change."""

    service_handlers: list[ServiceHandler] = field(default_factory=list)
    workload_handlers: list[WorkloadHandler] = field(default_factory=list)
    _lock: RLock = field(default_factory=RLock)

    def append_service_handler(self, handler: ServiceHandler) -> None:
        with self._lock:
            self.service_handlers.append(handler)

    def append_workload_handler(self, handler: WorkloadHandler) -> None:
        with self._lock:
            self.workload_handlers.append(handler)

    def notify_service_handlers(
        self, prev: Service | None, curr: Service, event: Event
    ) -> None:
        with self._lock:
            handlers = tuple(self.service_handlers)
        for handler in handlers:
            handler(prev, curr, event)

    def notify_workload_handlers(self, instance: WorkloadInstance, event: Event) -> None:
        with self._lock:
            handlers = tuple(self.workload_handlers)
        for handler in handlers:
            handler(instance, event)
