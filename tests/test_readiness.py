"""Tests for ReadinessPoller and the TCP port probe."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from cdc_harness.errors import (
    DeliberateExclusionConflict,
    FatalProbeError,
    NotReadyError,
)
from cdc_harness.readiness import ReadinessPoller, tcp_port_probe


class CountingProbe:
    """Returns the scripted outcomes in order; exceptions are raised."""

    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> object:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def poller(sleep: AsyncMock) -> ReadinessPoller:
    return ReadinessPoller(interval=0.5, logger=Mock(), sleep=sleep)


class TestWaitFor:
    @pytest.mark.asyncio
    async def test_returns_first_truthy_result_and_stops_polling(
        self, poller: ReadinessPoller, sleep: AsyncMock
    ) -> None:
        probe = CountingProbe(None, False, 5432, 9999)

        result = await poller.wait_for("postgres", probe, max_tries=10)

        assert result == 5432
        assert probe.calls == 3
        assert sleep.await_count == 3
        sleep.assert_awaited_with(0.5)

    @pytest.mark.asyncio
    async def test_transient_errors_count_as_not_ready(self, poller: ReadinessPoller) -> None:
        probe = CountingProbe(ConnectionRefusedError(), TimeoutError(), "ok")

        assert await poller.wait_for("kafka", probe, max_tries=5) == "ok"
        assert probe.calls == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_tries", [1, 5, 10])
    async def test_always_failing_probe_gives_not_ready_after_exactly_max_tries(
        self, poller: ReadinessPoller, max_tries: int
    ) -> None:
        probe = CountingProbe(ConnectionRefusedError("refused"))

        with pytest.raises(NotReadyError) as exc_info:
            await poller.wait_for("zookeeper", probe, max_tries=max_tries)

        assert probe.calls == max_tries
        assert exc_info.value.service == "zookeeper"
        assert exc_info.value.attempts == max_tries
        assert str(exc_info.value) == f"zookeeper not ready after {max_tries} attempts"

    @pytest.mark.asyncio
    async def test_falsy_results_exhaust_the_budget(self, poller: ReadinessPoller) -> None:
        probe = CountingProbe(None)

        with pytest.raises(NotReadyError):
            await poller.wait_for("bottledwater-json", probe, max_tries=3)

        assert probe.calls == 3

    @pytest.mark.asyncio
    async def test_programming_errors_propagate_immediately(
        self, poller: ReadinessPoller
    ) -> None:
        probe = CountingProbe(AttributeError("'NoneType' object has no attribute 'subjects'"))

        with pytest.raises(AttributeError):
            await poller.wait_for("schema-registry", probe, max_tries=10)

        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_fatal_probe_error_aborts(self, poller: ReadinessPoller) -> None:
        probe = CountingProbe(None, FatalProbeError("container exited"))

        with pytest.raises(FatalProbeError):
            await poller.wait_for("bottledwater-json", probe, max_tries=10)

        assert probe.calls == 2

    @pytest.mark.asyncio
    async def test_excluded_service_fails_without_probing(
        self, poller: ReadinessPoller, sleep: AsyncMock
    ) -> None:
        probe = CountingProbe(9092)

        with pytest.raises(DeliberateExclusionConflict) as exc_info:
            await poller.wait_for("kafka", probe, max_tries=5, excluded={"kafka"})

        assert exc_info.value.service == "kafka"
        assert probe.calls == 0
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exclusion_conflict_is_not_a_timeout(self, poller: ReadinessPoller) -> None:
        with pytest.raises(DeliberateExclusionConflict) as exc_info:
            await poller.wait_for("kafka", CountingProbe(None), max_tries=1, excluded={"kafka"})

        assert not isinstance(exc_info.value, NotReadyError)

    @pytest.mark.asyncio
    async def test_zero_tries_is_rejected(self, poller: ReadinessPoller) -> None:
        with pytest.raises(ValueError):
            await poller.wait_for("kafka", CountingProbe(1), max_tries=0)

    @pytest.mark.asyncio
    async def test_enclosing_timeout_cancels_the_wait(self) -> None:
        poller = ReadinessPoller(interval=0.05, logger=Mock())
        probe = CountingProbe(None)

        with pytest.raises(TimeoutError):
            async with asyncio.timeout(0.2):
                await poller.wait_for("postgres", probe, max_tries=1000)

        assert probe.calls < 1000


class TestTcpPortProbe:
    @pytest.mark.asyncio
    async def test_returns_port_when_listening(self) -> None:
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            assert await tcp_port_probe("127.0.0.1", port) == port
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_closed_port_raises_os_error(self) -> None:
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        with pytest.raises(OSError):
            await tcp_port_probe("127.0.0.1", port)
