"""
Unit tests for the RetryPolicy call wrapper.

Covers the attempt budget, per-call counter reset, logging of each retry and
of the terminal failure, and that the delegate's own error is what surfaces.
"""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from cdc_harness.errors import ComposeCommandError
from cdc_harness.retry import RetryPolicy, call_with_retry


class FlakyDelegate:
    """Fails a fixed number of times, then returns a value."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or ComposeCommandError(["docker", "inspect"], 1, "partial JSON")
        self.calls = 0

    async def inspect(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "container-info"


@pytest.fixture
def logger() -> Mock:
    return Mock()


class TestRetryBudget:
    """The wrapper repeats failing calls up to max_retries times."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [0, 1, 4])
    async def test_succeeds_after_exactly_max_retries_failures(
        self, max_retries: int, logger: Mock
    ) -> None:
        delegate = FlakyDelegate(failures=max_retries)
        policy = RetryPolicy(max_retries, delegate="Docker", logger=logger)

        result = await policy.call(delegate.inspect, operation_name="inspect")

        assert result == "container-info"
        assert delegate.calls == max_retries + 1
        assert logger.warning.call_count == max_retries
        logger.error.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [0, 2, 4])
    async def test_reraises_original_error_when_budget_exhausted(
        self, max_retries: int, logger: Mock
    ) -> None:
        delegate = FlakyDelegate(failures=max_retries + 1)
        policy = RetryPolicy(max_retries, delegate="Docker", logger=logger)

        with pytest.raises(ComposeCommandError) as exc_info:
            await policy.call(delegate.inspect, operation_name="inspect")

        assert exc_info.value is delegate.error
        assert delegate.calls == max_retries + 1
        assert logger.warning.call_count == max_retries
        logger.error.assert_called_once()
        assert f"failed after {max_retries} retries" in logger.error.call_args.args[0]

    @pytest.mark.asyncio
    async def test_counter_resets_for_each_call(self, logger: Mock) -> None:
        policy = RetryPolicy(2, delegate="Docker", logger=logger)

        first = FlakyDelegate(failures=2)
        second = FlakyDelegate(failures=2)

        assert await policy.call(first.inspect, operation_name="inspect") == "container-info"
        assert await policy.call(second.inspect, operation_name="inspect") == "container-info"
        assert logger.warning.call_count == 4

    def test_negative_budget_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(-1, delegate="Docker")


class TestRetryFiltering:
    """Only the configured error types are retried."""

    @pytest.mark.asyncio
    async def test_errors_outside_retry_on_propagate_immediately(self, logger: Mock) -> None:
        delegate = FlakyDelegate(failures=1, error=KeyError("State"))
        policy = RetryPolicy(
            3, delegate="Docker", retry_on=(ComposeCommandError,), logger=logger
        )

        with pytest.raises(KeyError):
            await policy.call(delegate.inspect, operation_name="inspect")

        assert delegate.calls == 1
        logger.warning.assert_not_called()
        logger.error.assert_not_called()


class TestRetryLogging:
    """Each retry is logged with delegate, operation, attempt and error."""

    @pytest.mark.asyncio
    async def test_retry_log_fields(self, logger: Mock) -> None:
        delegate = FlakyDelegate(failures=1)
        policy = RetryPolicy(1, delegate="ComposeSupervisor", logger=logger)

        await policy.call(delegate.inspect, operation_name="ps")

        message = logger.warning.call_args.args[0]
        fields = logger.warning.call_args.kwargs
        assert message.startswith("ComposeSupervisor#ps retry #1 after error:")
        assert fields["delegate"] == "ComposeSupervisor"
        assert fields["operation"] == "ps"
        assert fields["attempt"] == 1
        assert "partial JSON" in fields["error"]


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_one_off_wrapper(self, logger: Mock) -> None:
        delegate = FlakyDelegate(failures=2)

        result = await call_with_retry(
            delegate.inspect,
            max_retries=2,
            delegate="Docker",
            operation_name="inspect",
            logger=logger,
        )

        assert result == "container-info"
        assert logger.warning.call_count == 2
