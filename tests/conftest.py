"""Pytest configuration and fixtures for meshreg testing."""

from collections.abc import Iterator

import pytest
from loguru import logger

from meshreg.controller import ClusterCaches, Controller

from tests.helpers import RecordingXDSUpdater, new_controller


@pytest.fixture(autouse=True)
def quiet_logging() -> Iterator[None]:
    """Keep loguru at WARNING during tests."""
    logger.remove()
    logger.add(lambda message: None, level="WARNING")
    yield
    logger.remove()


@pytest.fixture
def controller_env() -> tuple[Controller, ClusterCaches, RecordingXDSUpdater]:
    return new_controller()


@pytest.fixture
def controller(controller_env) -> Controller:
    return controller_env[0]


@pytest.fixture
def caches(controller_env) -> ClusterCaches:
    return controller_env[1]


@pytest.fixture
def updater(controller_env) -> RecordingXDSUpdater:
    return controller_env[2]
