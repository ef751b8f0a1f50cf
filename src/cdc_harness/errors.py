"""
Exception taxonomy for the integration harness.

Setup and readiness failures propagate to the caller unchanged. Teardown
failures are logged by the orchestrator and never raised from these types.
"""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for all harness errors."""


class InvalidStateTransition(HarnessError):
    """An operation was attempted in a cluster state that does not allow it."""

    def __init__(self, operation: str, state: str, message: str | None = None) -> None:
        self.operation = operation
        self.state = state
        super().__init__(message or f"cannot {operation}: cluster {state}")


class ClusterNotStartedError(InvalidStateTransition):
    """A service handle was requested while the cluster is not started."""

    def __init__(self, operation: str, state: str) -> None:
        if state == "uninitialized":
            message = f"cannot {operation}: cluster not started"
        else:
            message = f"cannot {operation}: cluster {state}"
        super().__init__(operation, state, message)


class NotReadyError(HarnessError):
    """A readiness probe never succeeded within its attempt budget."""

    def __init__(self, service: str, attempts: int) -> None:
        self.service = service
        self.attempts = attempts
        super().__init__(f"{service} not ready after {attempts} attempts")


class DeliberateExclusionConflict(HarnessError):
    """Code waited for a service that the current start cycle excluded."""

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"Waiting for {service} when we deliberately started without it!")


class TransientCallFailure(HarnessError):
    """A single remote call failed in a way that is worth repeating."""


class ComposeCommandError(TransientCallFailure):
    """A docker or docker compose command exited non-zero."""

    def __init__(self, command: list[str], returncode: int, stderr: str) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"{' '.join(command)} exited with status {returncode}: {stderr.strip()}"
        )


class FatalProbeError(HarnessError):
    """Raised by a readiness probe to abort polling immediately."""


class CollectionTimeout(HarnessError):
    """Fewer messages than expected arrived before the collection deadline."""

    def __init__(self, topic: str, expected: int, actually_seen: int, wait: float) -> None:
        self.topic = topic
        self.expected = expected
        self.actually_seen = actually_seen
        self.wait = wait
        problem = "didn't see any" if actually_seen == 0 else f"only saw {actually_seen}"
        super().__init__(
            f"expected {expected} messages on {topic}, but {problem} after {wait:g} seconds"
        )


class DuplicateHookError(HarnessError):
    """A second before_service block was registered for the same service."""

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"a before_service block is already pending for {service}")
