"""
Default clients for the services the cluster starts.

- PostgresHandle: SQLAlchemy async engine over asyncpg, autocommit per statement
- KafkaAdminHandle: aiokafka admin client for topic management
- SchemaRegistryClient: httpx client, used as a readiness probe and by tests
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from cdc_harness.errors import TransientCallFailure
from cdc_harness.logging_utils import create_harness_logger

logger = create_harness_logger("clients")


def build_postgres_url(host: str, port: int, user: str, database: str = "postgres") -> str:
    return f"postgresql+asyncpg://{user}@{host}:{port}/{database}"


class PostgresHandle:
    """Database handle; every statement runs in its own implicit transaction."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    def __repr__(self) -> str:
        return f"PostgresHandle({self.engine.url.render_as_string(hide_password=True)})"

    async def execute(self, sql: str, parameters: Mapping[str, Any] | None = None) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text(sql), dict(parameters or {}))

    async def fetch_all(
        self, sql: str, parameters: Mapping[str, Any] | None = None
    ) -> list[Mapping[str, Any]]:
        async with self.engine.connect() as conn:
            result = await conn.execute(text(sql), dict(parameters or {}))
            return [dict(row) for row in result.mappings()]

    async def close(self) -> None:
        await self.engine.dispose()


class KafkaAdminHandle:
    """Topic administration against the started broker."""

    def __init__(self, admin_client: AIOKafkaAdminClient) -> None:
        self._admin = admin_client

    async def create_topic(
        self,
        name: str,
        *,
        partitions: int = 1,
        replication_factor: int = 1,
        config: Mapping[str, str] | None = None,
    ) -> None:
        new_topic = NewTopic(
            name=name,
            num_partitions=partitions,
            replication_factor=replication_factor,
            topic_configs=dict(config or {}),
        )
        await self._admin.create_topics([new_topic])
        logger.info(f"Created topic {name}", partitions=partitions)

    async def topics(self) -> dict[str, Any]:
        names = list(await self._admin.list_topics())
        if not names:
            return {}
        described = await self._admin.describe_topics(names)
        return {entry["topic"]: entry for entry in described}

    async def close(self) -> None:
        await self._admin.close()


class SchemaRegistryClient:
    """Minimal schema registry client."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.AsyncClient(base_url=url, timeout=timeout, transport=transport)

    async def subjects(self) -> list[str]:
        response = await self._client.get("/subjects")
        response.raise_for_status()
        return list(response.json())

    async def close(self) -> None:
        await self._client.aclose()


class DefaultServiceClients:
    """ServiceClientFactory backed by SQLAlchemy, aiokafka and httpx."""

    def _engine(self, host: str, port: int, user: str) -> AsyncEngine:
        return create_async_engine(
            build_postgres_url(host, port, user),
            isolation_level="AUTOCOMMIT",
        )

    async def ping_postgres(self, host: str, port: int, user: str) -> bool:
        engine = self._engine(host, port, user)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        finally:
            await engine.dispose()

    async def connect_postgres(self, host: str, port: int, user: str) -> PostgresHandle:
        return PostgresHandle(self._engine(host, port, user))

    async def connect_kafka_admin(self, bootstrap_servers: str) -> KafkaAdminHandle:
        admin_client = AIOKafkaAdminClient(
            bootstrap_servers=bootstrap_servers, client_id="cdc-harness-admin"
        )
        await admin_client.start()
        return KafkaAdminHandle(admin_client)

    def schema_registry(self, url: str) -> SchemaRegistryClient:
        return SchemaRegistryClient(url)

    def transient_errors(self) -> tuple[type[BaseException], ...]:
        return (OSError, TransientCallFailure, DBAPIError, KafkaError, httpx.HTTPError)
