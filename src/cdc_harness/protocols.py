"""
Protocol interfaces for the collaborators the cluster orchestrates.

The orchestrator depends only on these contracts. Default implementations
live in cdc_harness.supervisor and cdc_harness.clients; unit tests substitute
in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

__all__ = [
    "ContainerInfo",
    "ServiceSupervisor",
    "ContainerInspector",
    "PostgresHandleProtocol",
    "KafkaAdminProtocol",
    "SchemaRegistryProtocol",
    "ServiceClientFactory",
]


@dataclass(frozen=True)
class ContainerInfo:
    """The parts of a container inspection the harness looks at."""

    id: str
    name: str
    running: bool
    exit_code: int


class ServiceSupervisor(Protocol):
    """Starts, stops and locates compose services."""

    async def up(
        self,
        services: Sequence[str],
        *,
        detached: bool = True,
        no_deps: bool = True,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        """Create and start ``services``."""
        ...

    async def stop(self) -> None:
        """Stop every service of the project."""
        ...

    async def remove(self, *, force: bool = True, volumes: bool = True) -> None:
        """Remove stopped containers and, with ``volumes``, their anonymous volumes."""
        ...

    async def ps(self, service: str) -> str | None:
        """Return the container id for ``service``, or None if it has none."""
        ...

    async def ps_all(self) -> list[str]:
        """Return the ids of every container of the project, running or not."""
        ...

    async def port(self, service: str, internal_port: int) -> str:
        """Return the published ``host:port`` for a container port."""
        ...

    async def run_image(self, image: str, *args: str) -> str:
        """Run a throwaway container and return its stdout."""
        ...


class ContainerInspector(Protocol):
    """Reads container state and output."""

    async def inspect(self, container_id: str) -> ContainerInfo:
        ...

    async def logs(self, container_id: str) -> tuple[str, str]:
        """Return ``(stdout, stderr)`` of a container."""
        ...


class PostgresHandleProtocol(Protocol):
    async def execute(self, sql: str, parameters: Mapping[str, Any] | None = None) -> None:
        ...

    async def fetch_all(
        self, sql: str, parameters: Mapping[str, Any] | None = None
    ) -> list[Mapping[str, Any]]:
        ...

    async def close(self) -> None:
        ...


class KafkaAdminProtocol(Protocol):
    async def create_topic(
        self,
        name: str,
        *,
        partitions: int = 1,
        replication_factor: int = 1,
        config: Mapping[str, str] | None = None,
    ) -> None:
        ...

    async def topics(self) -> dict[str, Any]:
        """Return topic name -> metadata."""
        ...

    async def close(self) -> None:
        ...


class SchemaRegistryProtocol(Protocol):
    url: str

    async def subjects(self) -> list[str]:
        ...

    async def close(self) -> None:
        ...


class ServiceClientFactory(Protocol):
    """Opens clients to the started services."""

    async def ping_postgres(self, host: str, port: int, user: str) -> bool:
        ...

    async def connect_postgres(self, host: str, port: int, user: str) -> PostgresHandleProtocol:
        ...

    async def connect_kafka_admin(self, bootstrap_servers: str) -> KafkaAdminProtocol:
        ...

    def schema_registry(self, url: str) -> SchemaRegistryProtocol:
        """Build a registry client; it connects lazily on first request."""
        ...

    def transient_errors(self) -> tuple[type[BaseException], ...]:
        """Errors these clients raise while their service is still starting."""
        ...
