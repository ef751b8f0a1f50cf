"""
Pytest configuration for the harness unit tests.

No test here talks to Docker: the cluster is wired to in-memory fakes, polls
without waiting, and settles instantly.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from cdc_harness.cluster import IntegrationCluster
from cdc_harness.config import HarnessSettings
from tests.fakes import FakeDocker, FakeServiceClients


@pytest.fixture
def harness_test_settings() -> HarnessSettings:
    """Settings with zero wait and the default retry and attempt budgets."""
    return HarnessSettings(POLL_INTERVAL_SECONDS=0, COMPOSE_PROJECT_NAME="harness_test")


@pytest.fixture
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def fake_clients() -> FakeServiceClients:
    return FakeServiceClients()


@pytest.fixture
def fake_sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def tcp_ports_open(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, int]]:
    """Make every TCP readiness probe succeed and record what was probed."""
    probed: list[tuple[str, int]] = []

    async def accept(host: str, port: int, timeout: float = 1.0) -> int:
        probed.append((host, port))
        return port

    monkeypatch.setattr("cdc_harness.cluster.tcp_port_probe", accept)
    return probed


@pytest.fixture
def cluster(
    harness_test_settings: HarnessSettings,
    fake_docker: FakeDocker,
    fake_clients: FakeServiceClients,
    fake_sleep: AsyncMock,
    tcp_ports_open: list[tuple[str, int]],
) -> IntegrationCluster:
    return IntegrationCluster(
        harness_test_settings,
        supervisor=fake_docker,
        inspector=fake_docker,
        clients=fake_clients,
        sleep=fake_sleep,
    )
