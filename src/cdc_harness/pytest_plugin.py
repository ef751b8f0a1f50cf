"""
pytest plugin exposing the process-wide integration cluster.

Registered through the ``pytest11`` entry point. Tests that need the cluster
take the ``integration_cluster`` fixture, configure it, start it, and leave
stopping to the fixture. Whatever is still running when the session ends is
stopped as well.

Log output goes to stdout, so pytest shows the harness logs of failed tests
only.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from cdc_harness.cluster import IntegrationCluster
from cdc_harness.config import HarnessSettings
from cdc_harness.enums import ClusterState
from cdc_harness.logging_utils import configure_harness_logging, create_harness_logger

logger = create_harness_logger("pytest")

_cluster: IntegrationCluster | None = None


def get_cluster(settings: HarnessSettings | None = None) -> IntegrationCluster:
    """Return the cluster shared by the whole test process."""
    global _cluster

    if _cluster is None:
        _cluster = IntegrationCluster(settings or HarnessSettings())

    return _cluster


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers", "functional: test drives the docker compose integration cluster"
    )
    configure_harness_logging(HarnessSettings().LOG_LEVEL)


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    if _cluster is None or _cluster.state in (ClusterState.UNINITIALIZED, ClusterState.STOPPED):
        return
    try:
        asyncio.run(_cluster.stop())
    except Exception as e:
        logger.warning(f"Failed to stop integration cluster at session end: {e}")


@pytest.fixture
def harness_settings() -> HarnessSettings:
    return get_cluster().settings


@pytest_asyncio.fixture
async def integration_cluster() -> AsyncIterator[IntegrationCluster]:
    """The shared cluster, stopped (and reset) after the test if the test started it."""
    cluster = get_cluster()
    yield cluster
    if cluster.state in (ClusterState.STARTING, ClusterState.STARTED):
        await cluster.stop()
