"""
Bounded readiness polling.

A probe is a coroutine function that returns a truthy value once the service
is usable and a falsy value (or raises one of the poller's transient error
types) while it is still starting. Probes must be side-effect free or
idempotent because they run once per interval.

Only the configured transient error types count as "not ready yet". Anything
else (a TypeError from a typo'd call, FatalProbeError) propagates at once
instead of being reported as a timeout.

Waiting is a plain sequence of awaits, so an enclosing ``asyncio.timeout()``
or task cancellation aborts it between attempts.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Collection
from typing import Any, TypeVar

from cdc_harness.errors import (
    DeliberateExclusionConflict,
    FatalProbeError,
    NotReadyError,
    TransientCallFailure,
)
from cdc_harness.logging_utils import create_harness_logger

T = TypeVar("T")

Probe = Callable[[], Awaitable[T | None]]

# TimeoutError and ConnectionError are both OSError subclasses
DEFAULT_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OSError, TransientCallFailure)

_default_logger = create_harness_logger("readiness")


class ReadinessPoller:
    """Invoke a probe once per interval until it succeeds or the budget runs out."""

    def __init__(
        self,
        *,
        interval: float = 1.0,
        transient_errors: tuple[type[BaseException], ...] = DEFAULT_TRANSIENT_ERRORS,
        logger: Any | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.interval = interval
        self.transient_errors = transient_errors
        self.logger = logger if logger is not None else _default_logger
        self._sleep = sleep

    async def wait_for(
        self,
        service: str,
        probe: Probe[T],
        *,
        max_tries: int,
        excluded: Collection[str] = (),
        message: str | None = None,
    ) -> T:
        """Return the first truthy probe result.

        Raises:
            DeliberateExclusionConflict: ``service`` is in ``excluded``; no
                probing happens.
            NotReadyError: ``max_tries`` attempts all came back not ready.
            FatalProbeError: the probe gave up on its own.
        """
        if service in excluded:
            raise DeliberateExclusionConflict(service)
        if max_tries < 1:
            raise ValueError(f"max_tries must be >= 1, got {max_tries}")

        description = message or service
        self.logger.info(f"Waiting for {description}...", service=service, max_tries=max_tries)

        for attempt in range(1, max_tries + 1):
            await self._sleep(self.interval)

            try:
                result = await probe()
            except FatalProbeError:
                raise
            except self.transient_errors as e:
                self.logger.info(
                    f"{description} not ready: {e}",
                    service=service,
                    attempt=attempt,
                )
                continue

            if result:
                self.logger.info(f"{description} OK", service=service, attempts=attempt)
                return result

            self.logger.debug(f"{description} not ready yet", service=service, attempt=attempt)

        raise NotReadyError(service, max_tries)


async def tcp_port_probe(host: str, port: int, timeout: float = 1.0) -> int:
    """Return ``port`` once something accepts TCP connections on it."""
    _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    writer.close()
    await writer.wait_closed()
    return port
