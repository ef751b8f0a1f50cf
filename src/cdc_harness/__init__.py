"""
Integration-test harness for change-data-capture pipelines.

Stands up a coordination service, broker, database, optional schema registry
and the application-under-test with docker compose, and lets tests assert on
the messages that database writes produce.
"""

from .cluster import IntegrationCluster
from .collector import CollectedMessage, MessageCollector
from .config import ClusterConfiguration, HarnessSettings
from .enums import ClusterState, MessageFormat, OnErrorPolicy, ServiceName, TopicCleanupPolicy
from .errors import (
    ClusterNotStartedError,
    CollectionTimeout,
    ComposeCommandError,
    DeliberateExclusionConflict,
    DuplicateHookError,
    FatalProbeError,
    HarnessError,
    InvalidStateTransition,
    NotReadyError,
    TransientCallFailure,
)
from .readiness import ReadinessPoller
from .retry import RetryPolicy, call_with_retry

__all__ = [
    "IntegrationCluster",
    "ClusterConfiguration",
    "HarnessSettings",
    "ClusterState",
    "MessageFormat",
    "OnErrorPolicy",
    "ServiceName",
    "TopicCleanupPolicy",
    "CollectedMessage",
    "MessageCollector",
    "ReadinessPoller",
    "RetryPolicy",
    "call_with_retry",
    "HarnessError",
    "InvalidStateTransition",
    "ClusterNotStartedError",
    "NotReadyError",
    "DeliberateExclusionConflict",
    "TransientCallFailure",
    "ComposeCommandError",
    "FatalProbeError",
    "CollectionTimeout",
    "DuplicateHookError",
]
