"""Label-set helpers shared by selectors, nodes and workload matching."""

from __future__ import annotations

from meshreg.datastructures.type_aliases import LabelMap


def subset_of(selector: LabelMap | None, labels: LabelMap | None) -> bool:
    """Return True when every key/value in ``selector`` appears in ``labels``.

    An empty selector is a subset of anything, mirroring label-selector
    semantics for node selectors.
    """
    if not selector:
        return True
    if not labels:
        return False
    for key, value in selector.items():
        if labels.get(key) != value:
            return False
    return True


def selects(selector: LabelMap | None, labels: LabelMap | None) -> bool:
    """Service-selector matching: an empty selector selects nothing."""
    if not selector:
        return False
    return subset_of(selector, labels)


def labels_equal(left: LabelMap | None, right: LabelMap | None) -> bool:
    return dict(left or {}) == dict(right or {})
