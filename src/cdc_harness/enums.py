"""
cdc_harness.enums - Enums for cluster lifecycle and per-cycle configuration.
"""

from __future__ import annotations

from enum import Enum


class ClusterState(str, Enum):
    """Lifecycle states of the integration cluster.

    UNINITIALIZED -> STARTING -> STARTED -> STOPPED -> STARTING -> ...

    A failed start stays in STARTING so the caller can still stop the cluster
    and collect diagnostics.
    """

    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    STARTED = "started"
    STOPPED = "stopped"

    @classmethod
    def running(cls) -> set[ClusterState]:
        """Return states in which another start is refused."""
        return {cls.STARTING, cls.STARTED}


class ServiceName(str, Enum):
    """Compose service names for the fixed part of the environment.

    The application-under-test is not listed here: its service name depends
    on the selected message format (see IntegrationCluster.application_service).
    """

    ZOOKEEPER = "zookeeper"
    KAFKA = "kafka"
    POSTGRES = "postgres"
    SCHEMA_REGISTRY = "schema-registry"


class MessageFormat(str, Enum):
    """Serialization format the application-under-test publishes with."""

    JSON = "json"
    AVRO = "avro"

    @property
    def requires_schema_registry(self) -> bool:
        return self is MessageFormat.AVRO


class OnErrorPolicy(str, Enum):
    """What the application-under-test does when publishing fails."""

    EXIT = "exit"
    LOG = "log"


class TopicCleanupPolicy(str, Enum):
    """Broker log cleanup policy applied to auto-created topics."""

    COMPACT = "compact"
    DELETE = "delete"
