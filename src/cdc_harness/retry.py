"""
Explicit retry wrapper for flaky remote calls.

Calls into Docker are known to fail intermittently (for example a partial
JSON response from the daemon that fails to parse). Call sites wrap exactly
the operation they want repeated:

    await policy.call(lambda: supervisor.ps(service), operation_name="ps")

Retrying re-runs the whole operation including its side effects, so only
wrap calls that are safe to repeat. When retries run out the original error
is re-raised unchanged.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from cdc_harness.logging_utils import create_harness_logger

T = TypeVar("T")

_default_logger = create_harness_logger("retry")


class RetryPolicy:
    """Retry budget for calls made to one delegate."""

    def __init__(
        self,
        max_retries: int,
        *,
        delegate: str,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        wait_seconds: float = 0.0,
        logger: Any | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.max_retries = max_retries
        self.delegate = delegate
        self.retry_on = retry_on
        self.wait_seconds = wait_seconds
        self.logger = logger if logger is not None else _default_logger

    def __repr__(self) -> str:
        return f"RetryPolicy({self.delegate}, max_retries={self.max_retries})"

    async def call(self, operation: Callable[[], Awaitable[T]], *, operation_name: str) -> T:
        """Run ``operation``, repeating it on failure until the budget is spent.

        The attempt counter starts from zero on every call.
        """
        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_fixed(self.wait_seconds),
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
            before_sleep=lambda state: self._log_retry(operation_name, state),
        )

        retries = 0
        try:
            async for attempt in retryer:
                retries = attempt.retry_state.attempt_number - 1
                with attempt:
                    return await operation()
        except self.retry_on:
            self.logger.error(
                f"{self.delegate}#{operation_name} failed after {retries} retries",
                delegate=self.delegate,
                operation=operation_name,
                retries=retries,
            )
            raise

        raise RuntimeError("retry loop exited without a result")  # pragma: no cover

    def _log_retry(self, operation_name: str, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        self.logger.warning(
            f"{self.delegate}#{operation_name} retry #{state.attempt_number} after error: {error}",
            delegate=self.delegate,
            operation=operation_name,
            attempt=state.attempt_number,
            error=str(error),
        )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    delegate: str,
    operation_name: str,
    logger: Any | None = None,
) -> T:
    """One-off form of RetryPolicy.call for call sites without a shared policy."""
    policy = RetryPolicy(max_retries, delegate=delegate, logger=logger)
    return await policy.call(operation, operation_name=operation_name)
