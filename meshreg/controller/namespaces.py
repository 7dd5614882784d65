"""Namespace discovery filtering by label selectors."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from threading import RLock
from typing import TypeAlias

from loguru import logger

from meshreg.core.model import Event
from meshreg.datastructures.labels import subset_of
from meshreg.datastructures.type_aliases import LabelMap, NamespaceName
from meshreg.kube.client import ObjectCache
from meshreg.kube.resources import KubeObject, Namespace

NamespaceDiscoveryHandler: TypeAlias = Callable[[NamespaceName, Event], None]


class DiscoveryNamespacesFilter:
    """Tracks which namespaces are visible to discovery.

    With no selectors every namespace is visible. Otherwise a namespace is
    visible when any selector's labels are a subset of its labels.
    """

    def __init__(
        self,
        namespaces: ObjectCache[Namespace],
        selectors: Iterable[LabelMap] = (),
    ) -> None:
        self._namespaces = namespaces
        self._selectors: list[dict[str, str]] = [dict(s) for s in selectors]
        self._lock = RLock()
        self._selected: set[NamespaceName] = set()

    def _matches(self, labels: LabelMap) -> bool:
        return any(subset_of(selector, labels) for selector in self._selectors)

    def filter(self, obj: KubeObject) -> bool:
        with self._lock:
            if not self._selectors:
                return True
            namespace = obj.name if isinstance(obj, Namespace) else obj.namespace
            return namespace in self._selected

    def sync_namespaces(self) -> None:
        """Rebuild the selected set from the namespace cache."""
        selected = {
            ns.name for ns in self._namespaces.list() if self._matches(ns.labels)
        }
        with self._lock:
            self._selected = selected
        logger.debug(f"discovery selects {len(selected)} namespace(s)")

    def namespace_created(self, ns: Namespace) -> bool:
        """Record a new namespace; True when it is selected."""
        with self._lock:
            if not self._selectors:
                return False
            if self._matches(ns.labels):
                self._selected.add(ns.name)
                return True
            return False

    def namespace_updated(self, old: Namespace, new: Namespace) -> tuple[bool, bool]:
        """Returns ``(membership_changed, selected)`` for a relabel."""
        with self._lock:
            if not self._selectors:
                return False, False
            was = self._matches(old.labels)
            now = self._matches(new.labels)
            if now:
                self._selected.add(new.name)
            else:
                self._selected.discard(new.name)
            return was != now, now

    def namespace_deleted(self, ns: Namespace) -> None:
        with self._lock:
            self._selected.discard(ns.name)

    def update_selectors(
        self, selectors: Iterable[LabelMap]
    ) -> tuple[set[NamespaceName], set[NamespaceName]]:
        """Swap selectors; returns the newly selected and deselected namespaces."""
        namespaces = self._namespaces.list()
        with self._lock:
            previous = (
                {ns.name for ns in namespaces}
                if not self._selectors
                else set(self._selected)
            )
            self._selectors = [dict(s) for s in selectors]
            if self._selectors:
                current = {ns.name for ns in namespaces if self._matches(ns.labels)}
            else:
                current = {ns.name for ns in namespaces}
            self._selected = current if self._selectors else set()
        return current - previous, previous - current

    def selected_namespaces(self) -> set[NamespaceName]:
        with self._lock:
            if not self._selectors:
                return {ns.name for ns in self._namespaces.list()}
            return set(self._selected)
