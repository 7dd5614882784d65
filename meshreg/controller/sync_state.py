"""Explicit state machine for the controller's initial synchronization."""

from __future__ import annotations

from enum import Enum
from threading import Lock

from loguru import logger


class SyncPhase(Enum):
    NOT_STARTED = 0
    FULL_LISTING = 1
    STEADY_STATE = 2


class SyncState:
    """One-way NOT_STARTED -> FULL_LISTING -> STEADY_STATE progression.

    Event registration reads ``should_enqueue`` to decide between dropping
    and queueing; the public ``has_synced`` reads ``synced``.
    """

    def __init__(self) -> None:
        self._phase = SyncPhase.NOT_STARTED
        self._lock = Lock()

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    def advance(self, target: SyncPhase) -> bool:
        """Move forward to ``target``; backward or repeated moves are ignored."""
        with self._lock:
            if target.value <= self._phase.value:
                return False
            logger.debug(f"sync phase {self._phase.name} -> {target.name}")
            self._phase = target
            return True

    def should_enqueue(self) -> bool:
        return self._phase is not SyncPhase.NOT_STARTED

    def synced(self) -> bool:
        return self._phase is SyncPhase.STEADY_STATE
