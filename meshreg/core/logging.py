"""
Logging setup for meshreg processes.

All modules log through loguru; controller messages carry their cluster id
as a ``[cluster]`` prefix. This module only decides where records go and at
which level, including DEBUG output limited to selected modules.
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from meshreg.config import ControllerSettings

PACKAGE = "meshreg"

DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)


def normalize_scopes(scopes: Iterable[str]) -> tuple[str, ...]:
    """Qualify scopes with the package name: ``controller.pods`` -> ``meshreg.controller.pods``."""
    normalized: list[str] = []
    for raw in scopes:
        scope = raw.strip()
        if not scope:
            continue
        if scope != PACKAGE and not scope.startswith(f"{PACKAGE}."):
            scope = f"{PACKAGE}.{scope}"
        if scope not in normalized:
            normalized.append(scope)
    return tuple(normalized)


def debug_scope_filter(scopes: tuple[str, ...]) -> Callable[[object], bool]:
    def _filter(record: object) -> bool:
        if not isinstance(record, Mapping):
            return False
        if getattr(record.get("level"), "name", None) != "DEBUG":
            return False
        name = record.get("name") or ""
        return any(name == scope or name.startswith(f"{scope}.") for scope in scopes)

    return _filter


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
) -> tuple[int, ...]:
    """Replace loguru's sinks with one stderr sink at ``level``.

    When ``debug_scopes`` is non-empty and ``level`` is above DEBUG, a second
    sink passes DEBUG records from those modules only.
    """
    logger.remove()
    handler_ids = [
        logger.add(sys.stderr, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize)
    ]

    scopes = normalize_scopes(debug_scopes)
    if scopes and level.upper() != "DEBUG":
        handler_ids.append(
            logger.add(
                sys.stderr,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=debug_scope_filter(scopes),
            )
        )
    return tuple(handler_ids)


def configure_from_settings(
    settings: ControllerSettings,
    *,
    verbose: bool = False,
    extra_scopes: Iterable[str] = (),
    colorize: bool = False,
) -> tuple[int, ...]:
    return configure_logging(
        "DEBUG" if verbose else settings.log_level,
        debug_scopes=(*settings.log_debug_scopes, *extra_scopes),
        colorize=colorize,
    )
