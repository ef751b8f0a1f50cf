"""
Configuration for the integration harness.

Two layers:
- HarnessSettings: how the harness talks to Docker and how patient it is.
  Loaded once from environment variables (prefix CDC_HARNESS_) and .env.
- ClusterConfiguration: per-cycle settings that decide which services start
  and with what environment. Mutable between cycles, reset to defaults by
  IntegrationCluster.reset().
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cdc_harness.enums import MessageFormat, OnErrorPolicy, TopicCleanupPolicy


class HarnessSettings(BaseSettings):
    """
    Settings for the harness itself.

    Settings are loaded from .env files and environment variables.
    """

    LOG_LEVEL: str = "INFO"
    COMPOSE_FILE: str | None = Field(
        default=None,
        description="Compose file to drive; docker compose's own lookup is used when unset",
    )
    COMPOSE_PROJECT_NAME: str | None = None
    HOST: str = Field(
        default="localhost",
        description="Host on which compose publishes container ports",
    )

    # Retry and polling budgets
    DOCKER_RETRIES: int = Field(default=4, ge=0)
    POSTGRES_MAX_TRIES: int = Field(default=10, ge=1)
    SCHEMA_REGISTRY_MAX_TRIES: int = Field(default=10, ge=1)
    PORT_MAX_TRIES: int = Field(default=5, ge=1)
    CONTAINER_MAX_TRIES: int = Field(default=5, ge=1)
    POLL_INTERVAL_SECONDS: float = Field(default=1.0, ge=0)
    SETTLE_SECONDS: int = Field(
        default=5,
        ge=0,
        description="Grace period after the application container reports running",
    )

    # Internal ports as declared in the compose file
    ZOOKEEPER_PORT: int = 2181
    KAFKA_PORT: int = 9092
    POSTGRES_PORT: int = 5432
    SCHEMA_REGISTRY_PORT: int = 8081

    HOST_PROBE_IMAGE: str = "debian:latest"
    APPLICATION_SERVICE_PREFIX: str = "bottledwater"
    POSTGRES_USER: str = "postgres"
    POSTGRES_EXTENSIONS: list[str] = Field(default_factory=lambda: ["bottledwater", "hstore"])

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_prefix="CDC_HARNESS_",
    )


class ClusterConfiguration(BaseModel):
    """Per-cycle settings that shape the environment of the next start."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    format: MessageFormat = MessageFormat.JSON
    postgres_version: str = "9.5"
    on_error: OnErrorPolicy = OnErrorPolicy.EXIT
    topic_prefix: str | None = None
    skip_snapshot: bool = False
    topic_cleanup_policy: TopicCleanupPolicy = TopicCleanupPolicy.COMPACT
    auto_create_topics: bool = True
    valgrind: bool = False

    def to_environment(self, advertised_host: str | None = None) -> dict[str, str]:
        """Render the variables the compose file interpolates."""
        environment = {
            "KAFKA_LOG_CLEANUP_POLICY": self.topic_cleanup_policy.value,
            "KAFKA_AUTO_CREATE_TOPICS_ENABLE": _flag(self.auto_create_topics),
            "POSTGRES_VERSION": self.postgres_version,
            "BOTTLEDWATER_ON_ERROR": self.on_error.value,
            "BOTTLEDWATER_TOPIC_PREFIX": self.topic_prefix or "",
            "BOTTLEDWATER_SKIP_SNAPSHOT": _flag(self.skip_snapshot),
            "BOTTLEDWATER_VALGRIND": _flag(self.valgrind),
        }
        if advertised_host is not None:
            environment["KAFKA_ADVERTISED_HOST_NAME"] = advertised_host
        return environment


def _flag(value: bool) -> str:
    return "true" if value else "false"


def default_configuration() -> ClusterConfiguration:
    return ClusterConfiguration()
