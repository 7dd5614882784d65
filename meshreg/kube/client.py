"""
Watch-cache interface consumed by the controller.

The controller never talks to an API server. It reads from per-kind caches
that a watch transport keeps up to date, and registers callbacks that the
transport invokes on add, update and delete. ``InMemoryObjectCache`` is the
in-process transport used by tests, the snapshot loader and embedders.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from threading import RLock
from typing import Generic, Protocol, TypeVar

from meshreg.datastructures.labels import subset_of
from meshreg.datastructures.type_aliases import LabelMap, NamespaceName, ResourceName
from meshreg.kube.resources import KubeObject

T = TypeVar("T", bound=KubeObject)


@dataclass(frozen=True, slots=True)
class EventHandler(Generic[T]):
    on_add: Callable[[T], None] | None = None
    on_update: Callable[[T, T], None] | None = None
    on_delete: Callable[[T], None] | None = None


class ObjectCache(Protocol[T]):
    def get(self, name: ResourceName, namespace: NamespaceName = "") -> T | None: ...

    def add_event_handler(self, handler: EventHandler[T]) -> None: ...

    def has_synced(self) -> bool: ...

    def list(
        self, namespace: NamespaceName = "", selector: LabelMap | None = None
    ) -> list[T]: ...


def _object_key(name: ResourceName, namespace: NamespaceName) -> str:
    return f"{namespace}/{name}" if namespace else name


class InMemoryObjectCache(Generic[T]):
    """Thread-safe in-memory watch cache with synchronous event delivery.

    Handlers run on the thread that mutated the cache, after the cache lock
    is released, so a handler may read the cache it was called from.
    """

    def __init__(self, kind: str, *, synced: bool = True) -> None:
        self.kind = kind
        self._objects: dict[str, T] = {}
        self._handlers: list[EventHandler[T]] = []
        self._synced = synced
        self._lock = RLock()

    def get(self, name: ResourceName, namespace: NamespaceName = "") -> T | None:
        with self._lock:
            return self._objects.get(_object_key(name, namespace))

    def add_event_handler(self, handler: EventHandler[T]) -> None:
        with self._lock:
            self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced

    def mark_synced(self) -> None:
        self._synced = True

    def upsert(self, obj: T) -> None:
        """Store ``obj``, firing add or update depending on prior presence."""
        with self._lock:
            old = self._objects.get(obj.key)
            self._objects[obj.key] = obj
            handlers = tuple(self._handlers)
        for handler in handlers:
            if old is None:
                if handler.on_add is not None:
                    handler.on_add(obj)
            elif handler.on_update is not None:
                handler.on_update(old, obj)

    def delete(self, name: ResourceName, namespace: NamespaceName = "") -> T | None:
        with self._lock:
            old = self._objects.pop(_object_key(name, namespace), None)
            handlers = tuple(self._handlers)
        if old is None:
            return None
        for handler in handlers:
            if handler.on_delete is not None:
                handler.on_delete(old)
        return old

    def resync(self) -> None:
        """Replay every stored object as an update, like a periodic re-list."""
        with self._lock:
            objects = tuple(self._objects.values())
            handlers = tuple(self._handlers)
        for obj in objects:
            for handler in handlers:
                if handler.on_update is not None:
                    handler.on_update(obj, obj)

    def load(self, objects: Iterable[T]) -> None:
        """Seed the cache without firing events."""
        with self._lock:
            for obj in objects:
                self._objects[obj.key] = obj

    def list(
        self, namespace: NamespaceName = "", selector: LabelMap | None = None
    ) -> list[T]:
        with self._lock:
            objects = tuple(self._objects.values())
        return [
            obj
            for obj in objects
            if (not namespace or obj.namespace == namespace)
            and subset_of(selector, obj.labels)
        ]


class FilteredObjectCache(Generic[T]):
    """A view over another cache that hides objects failing ``predicate``.

    Event delivery follows the view: an update that moves an object into the
    view is delivered as an add, out of the view as a delete.
    """

    def __init__(self, inner: ObjectCache[T], predicate: Callable[[T], bool]) -> None:
        self._inner = inner
        self._predicate = predicate

    def get(self, name: ResourceName, namespace: NamespaceName = "") -> T | None:
        obj = self._inner.get(name, namespace)
        if obj is None or not self._predicate(obj):
            return None
        return obj

    def has_synced(self) -> bool:
        return self._inner.has_synced()

    def add_event_handler(self, handler: EventHandler[T]) -> None:
        predicate = self._predicate

        def on_add(obj: T) -> None:
            if predicate(obj) and handler.on_add is not None:
                handler.on_add(obj)

        def on_update(old: T, cur: T) -> None:
            was_visible = predicate(old)
            is_visible = predicate(cur)
            if was_visible and is_visible:
                if handler.on_update is not None:
                    handler.on_update(old, cur)
            elif is_visible:
                if handler.on_add is not None:
                    handler.on_add(cur)
            elif was_visible:
                if handler.on_delete is not None:
                    handler.on_delete(old)

        def on_delete(obj: T) -> None:
            if predicate(obj) and handler.on_delete is not None:
                handler.on_delete(obj)

        self._inner.add_event_handler(
            EventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )

    def list(
        self, namespace: NamespaceName = "", selector: LabelMap | None = None
    ) -> list[T]:
        return [
            obj for obj in self._inner.list(namespace, selector) if self._predicate(obj)
        ]
