"""
Lifecycle orchestration for the integration cluster.

IntegrationCluster brings up the coordination service, broker, database,
optional schema registry and the application-under-test through a compose
supervisor, waits for each to become usable, hands out client handles while
started, and tears everything down on stop.

State machine (ClusterState):

    UNINITIALIZED --start--> STARTING --(all ready)--> STARTED
    STARTED/STARTING --stop--> STOPPED --start--> STARTING ...

A failure during start leaves the cluster in STARTING; stop() is still legal
and is how the caller recovers. start/stop/restart are driven from a single
task; the state field is the only guard against re-entry.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from cdc_harness.clients import DefaultServiceClients
from cdc_harness.collector import CollectedMessage, MessageCollector
from cdc_harness.config import ClusterConfiguration, HarnessSettings, default_configuration
from cdc_harness.enums import ClusterState, ServiceName
from cdc_harness.errors import (
    ClusterNotStartedError,
    DeliberateExclusionConflict,
    DuplicateHookError,
    HarnessError,
    InvalidStateTransition,
)
from cdc_harness.logging_utils import bind_cycle_context, create_harness_logger
from cdc_harness.protocols import (
    ContainerInfo,
    ContainerInspector,
    KafkaAdminProtocol,
    PostgresHandleProtocol,
    SchemaRegistryProtocol,
    ServiceClientFactory,
    ServiceSupervisor,
)
from cdc_harness.readiness import ReadinessPoller, tcp_port_probe
from cdc_harness.retry import RetryPolicy
from cdc_harness.supervisor import ComposeSupervisor, DockerInspector

logger = create_harness_logger("cluster")

T = TypeVar("T")

ServiceKey = str | ServiceName
HookBlock = Callable[[PostgresHandleProtocol], Awaitable[None]]

CORE_SERVICES = (ServiceName.ZOOKEEPER.value, ServiceName.KAFKA.value, ServiceName.POSTGRES.value)

_DEFAULT_ROUTE = re.compile(r"^default via (\S+) dev ")
_RULER = "-" * 80


def _service_key(service: ServiceKey) -> str:
    return service.value if isinstance(service, ServiceName) else service


@dataclass
class _ServiceHook:
    description: str
    block: HookBlock


@dataclass
class _ServiceHandles:
    """Handles and published ports for one start cycle."""

    postgres: PostgresHandleProtocol | None = None
    kafka_admin: KafkaAdminProtocol | None = None
    schema_registry: SchemaRegistryProtocol | None = None
    postgres_port: int | None = None
    zookeeper_port: int | None = None
    kafka_port: int | None = None
    schema_registry_port: int | None = None


class IntegrationCluster:
    """Start, expose and stop the services an integration test runs against."""

    def __init__(
        self,
        settings: HarnessSettings | None = None,
        *,
        supervisor: ServiceSupervisor | None = None,
        inspector: ContainerInspector | None = None,
        clients: ServiceClientFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or HarnessSettings()
        self._supervisor = supervisor or ComposeSupervisor(self.settings)
        self._inspector = inspector or DockerInspector()
        self._clients = clients or DefaultServiceClients()
        self._sleep = sleep

        self._supervisor_retry = RetryPolicy(
            self.settings.DOCKER_RETRIES, delegate=type(self._supervisor).__name__
        )
        self._inspector_retry = RetryPolicy(
            self.settings.DOCKER_RETRIES, delegate=type(self._inspector).__name__
        )
        self._poller = ReadinessPoller(
            interval=self.settings.POLL_INTERVAL_SECONDS,
            transient_errors=self._clients.transient_errors(),
            sleep=sleep,
        )

        self._host = self.settings.HOST
        self._state = ClusterState.UNINITIALIZED
        self._cycle = 0
        self._started_without: frozenset[str] = frozenset()
        self._configuration = default_configuration()
        self._environment: dict[str, str] = {}
        self._hooks: dict[str, _ServiceHook] = {}
        self._handles = _ServiceHandles()

    def __repr__(self) -> str:
        return f"IntegrationCluster(state={self._state.value}, cycle={self._cycle})"

    # --- State and configuration ---

    @property
    def state(self) -> ClusterState:
        return self._state

    @property
    def started(self) -> bool:
        return self._state is ClusterState.STARTED

    @property
    def stopped(self) -> bool:
        return self._state is ClusterState.STOPPED

    @property
    def started_without(self) -> frozenset[str]:
        return self._started_without

    @property
    def configuration(self) -> ClusterConfiguration:
        """A copy of the configuration the next start will use."""
        return self._configuration.model_copy()

    def configure(self, **changes: Any) -> ClusterConfiguration:
        """Change configuration for the next start cycle.

        Raises:
            InvalidStateTransition: The cluster is starting or started.
            pydantic.ValidationError: Unknown setting or invalid value.
        """
        if self._state in ClusterState.running():
            raise InvalidStateTransition("configure", self._state.value)
        merged = {**self._configuration.model_dump(), **changes}
        self._configuration = ClusterConfiguration.model_validate(merged)
        logger.debug("Configuration updated", changes=changes)
        return self.configuration

    def reset(self) -> None:
        """Restore default configuration and forget excluded services."""
        if self._state is ClusterState.STARTING:
            raise InvalidStateTransition("reset", self._state.value)
        self._configuration = default_configuration()
        self._started_without = frozenset()

    @property
    def application_service(self) -> str:
        """Compose service of the application-under-test for the current format."""
        return f"{self.settings.APPLICATION_SERVICE_PREFIX}-{self._configuration.format.value}"

    @property
    def schema_registry_needed(self) -> bool:
        return (
            self._configuration.format.requires_schema_registry
            and ServiceName.SCHEMA_REGISTRY.value not in self._started_without
        )

    def before_service(
        self, service: ServiceKey, description: str, block: HookBlock | None = None
    ) -> Any:
        """Run ``block`` once, just before ``service`` is brought up in the next start.

        The block receives the database handle and runs after the database is
        ready with its extensions installed. For the services started together
        with the database (coordination service, broker, database) it runs
        right after that point. Usable directly or as a decorator.

        Raises:
            DuplicateHookError: A block is already pending for ``service``.
        """
        key = _service_key(service)

        def register(hook_block: HookBlock) -> HookBlock:
            if key in self._hooks:
                raise DuplicateHookError(key)
            self._hooks[key] = _ServiceHook(description, hook_block)
            return hook_block

        if block is None:
            return register
        return register(block)

    # --- Lifecycle ---

    async def start(self, without: Iterable[ServiceKey] = ()) -> None:
        """Bring the cluster up, skipping the services in ``without``.

        Raises:
            InvalidStateTransition: Already starting or started.
            DeliberateExclusionConflict: A required wait targets an excluded service.
            NotReadyError: A service never became ready.
        """
        if self._state in ClusterState.running():
            raise InvalidStateTransition(
                "start", self._state.value, f"cluster already {self._state.value}!"
            )

        self._state = ClusterState.STARTING
        self._cycle += 1
        self._started_without = frozenset(_service_key(service) for service in without)
        self._handles = _ServiceHandles()
        bind_cycle_context(self._cycle, set(self._started_without))
        logger.info("Starting cluster", format=self._configuration.format.value)

        advertised_host = await self._detect_docker_host_ip()
        self._environment = self._configuration.to_environment(advertised_host)

        await self._start_services(*CORE_SERVICES, run_hooks=False)

        await self._start_postgres_client()
        for service in CORE_SERVICES:
            await self._run_hook(service)

        if ServiceName.KAFKA.value not in self._started_without:
            await self._start_kafka_clients()

        if self.schema_registry_needed:
            await self._start_services(ServiceName.SCHEMA_REGISTRY.value)
            await self._start_schema_registry_client()

        application = self.application_service
        await self._start_services(application)
        await self._wait_for_container(application)

        await self._settle()

        self._state = ClusterState.STARTED
        logger.info("Cluster started")

    async def stop(self, should_reset: bool = True, dump_logs: bool = True) -> None:
        """Tear the cluster down. Handle, diagnostics and compose failures only warn."""
        if self._state is ClusterState.STOPPED:
            return

        logger.info("Stopping cluster")
        await self._close_handles()

        if dump_logs:
            await self._dump_failed_service_logs()

        try:
            await self._supervisor_retry.call(self._supervisor.stop, operation_name="stop")
        except Exception as e:
            logger.warning(f"Error stopping services: {e}")

        try:
            await self._supervisor_retry.call(
                lambda: self._supervisor.remove(force=True, volumes=True), operation_name="rm"
            )
        except Exception as e:
            logger.warning(f"Error removing services and volumes: {e}")

        self._state = ClusterState.STOPPED
        self._hooks.clear()
        self._handles = _ServiceHandles()
        self._started_without = frozenset()
        if should_reset:
            self.reset()
        logger.info("Cluster stopped")

    async def restart(
        self,
        *,
        should_reset: bool = False,
        dump_logs: bool = True,
        without: Iterable[ServiceKey] = (),
    ) -> None:
        """Stop and start again, keeping the configuration unless told otherwise."""
        await self.stop(should_reset=should_reset, dump_logs=dump_logs)
        await self.start(without=without)

    # --- Health ---

    async def healthy(self) -> bool:
        return await self.postgres_running() and await self.application_running()

    async def postgres_running(self) -> bool:
        return await self.service_running(ServiceName.POSTGRES)

    async def application_running(self) -> bool:
        return await self.service_running(self.application_service)

    async def service_running(self, service: ServiceKey) -> bool:
        container = await self._container_for_service(_service_key(service))
        return bool(container and container.running)

    # --- Handle accessors ---

    @property
    def postgres(self) -> PostgresHandleProtocol:
        self._check_started("access postgres")
        return self._require(self._handles.postgres, ServiceName.POSTGRES.value)

    @property
    def kafka_admin(self) -> KafkaAdminProtocol:
        self._check_started("access kafka admin")
        return self._require(self._handles.kafka_admin, ServiceName.KAFKA.value)

    @property
    def zookeeper_hostport(self) -> str:
        self._check_started("access zookeeper")
        port = self._require(self._handles.zookeeper_port, ServiceName.ZOOKEEPER.value)
        return f"{self._host}:{port}"

    @property
    def kafka_host(self) -> str:
        self._check_started("access kafka host")
        return self._host

    @property
    def kafka_port(self) -> int:
        self._check_started("access kafka port")
        return self._require(self._handles.kafka_port, ServiceName.KAFKA.value)

    @property
    def kafka_hostport(self) -> str:
        return f"{self.kafka_host}:{self.kafka_port}"

    @property
    def schema_registry(self) -> SchemaRegistryProtocol:
        self._check_started("access schema registry")
        return self._require(self._handles.schema_registry, ServiceName.SCHEMA_REGISTRY.value)

    @property
    def schema_registry_url(self) -> str:
        self._check_started("access schema registry")
        port = self._require(
            self._handles.schema_registry_port, ServiceName.SCHEMA_REGISTRY.value
        )
        return f"http://{self._host}:{port}"

    async def collect_messages(
        self,
        topic: str,
        expected_count: int,
        wait: float = 5.0,
        collect_partitions: bool = False,
    ) -> list[CollectedMessage] | dict[int, list[CollectedMessage]]:
        """Collect messages the application-under-test published to ``topic``."""
        collector = MessageCollector(self.kafka_hostport)
        return await collector.collect(
            topic, expected_count, wait, collect_partitions=collect_partitions
        )

    def _check_started(self, operation: str) -> None:
        if self._state is not ClusterState.STARTED:
            raise ClusterNotStartedError(operation, self._state.value)

    def _require(self, value: T | None, service: str) -> T:
        if value is not None:
            return value
        if service in self._started_without:
            raise DeliberateExclusionConflict(service)
        raise HarnessError(f"{service} is not part of this start cycle")

    # --- Start steps ---

    async def _detect_docker_host_ip(self) -> str:
        output = await self._supervisor_retry.call(
            lambda: self._supervisor.run_image(self.settings.HOST_PROBE_IMAGE, "ip", "route"),
            operation_name="run",
        )
        for line in output.splitlines():
            match = _DEFAULT_ROUTE.match(line)
            if match:
                host_ip = match.group(1)
                logger.info(f"Detected Docker host IP as {host_ip}")
                return host_ip
        raise HarnessError(f"Unexpected output from `ip route`: {output!r}")

    async def _start_services(self, *services: str, run_hooks: bool = True) -> None:
        to_start = [service for service in services if service not in self._started_without]
        if not to_start:
            return
        if run_hooks:
            for service in to_start:
                await self._run_hook(service)
        await self._supervisor_retry.call(
            lambda: self._supervisor.up(
                to_start, detached=True, no_deps=True, environment=self._environment
            ),
            operation_name="up",
        )

    async def _run_hook(self, service: str) -> None:
        hook = self._hooks.pop(service, None)
        if hook is None or service in self._started_without:
            return
        postgres = self._handles.postgres
        if postgres is None:
            raise HarnessError(f"database not ready for before_service block of {service}")
        logger.info(hook.description, service=service)
        await hook.block(postgres)

    async def _start_postgres_client(self) -> None:
        user = self.settings.POSTGRES_USER

        async def ping(port: int) -> bool:
            return await self._clients.ping_postgres(self._host, port, user)

        port = await self._wait_for_port(
            ServiceName.POSTGRES.value,
            self.settings.POSTGRES_PORT,
            ping,
            max_tries=self.settings.POSTGRES_MAX_TRIES,
        )
        self._handles.postgres_port = port
        self._handles.postgres = await self._clients.connect_postgres(self._host, port, user)
        for extension in self.settings.POSTGRES_EXTENSIONS:
            await self._handles.postgres.execute(f"CREATE EXTENSION IF NOT EXISTS {extension}")

    async def _start_kafka_clients(self) -> None:
        self._handles.zookeeper_port = await self._wait_for_tcp_port(
            ServiceName.ZOOKEEPER.value, self.settings.ZOOKEEPER_PORT
        )
        self._handles.kafka_port = await self._wait_for_tcp_port(
            ServiceName.KAFKA.value, self.settings.KAFKA_PORT
        )
        bootstrap_servers = f"{self._host}:{self._handles.kafka_port}"
        self._handles.kafka_admin = await self._poller.wait_for(
            ServiceName.KAFKA.value,
            lambda: self._clients.connect_kafka_admin(bootstrap_servers),
            max_tries=self.settings.PORT_MAX_TRIES,
            excluded=self._started_without,
            message=f"kafka admin client on {bootstrap_servers}",
        )

    async def _start_schema_registry_client(self) -> None:
        service = ServiceName.SCHEMA_REGISTRY.value
        port = await self._mapped_port(service, self.settings.SCHEMA_REGISTRY_PORT)
        registry = self._clients.schema_registry(f"http://{self._host}:{port}")
        # stored before polling so stop() closes it if the registry never comes up
        self._handles.schema_registry = registry

        async def probe() -> int:
            await registry.subjects()
            return port

        self._handles.schema_registry_port = await self._poller.wait_for(
            service,
            probe,
            max_tries=self.settings.SCHEMA_REGISTRY_MAX_TRIES,
            excluded=self._started_without,
            message=f"{service} on port {port}",
        )

    async def _settle(self) -> None:
        seconds = self.settings.SETTLE_SECONDS
        logger.info(f"Letting things settle for {seconds}s")
        for _ in range(seconds):
            await self._sleep(1)
        logger.info("Settled")

    # --- Waiting ---

    async def _mapped_port(self, service: str, internal_port: int) -> int:
        if service in self._started_without:
            raise DeliberateExclusionConflict(service)
        hostport = await self._supervisor_retry.call(
            lambda: self._supervisor.port(service, internal_port), operation_name="port"
        )
        _, _, mapped_port = hostport.strip().rpartition(":")
        return int(mapped_port)

    async def _wait_for_port(
        self,
        service: str,
        internal_port: int,
        check: Callable[[int], Awaitable[bool]],
        *,
        max_tries: int,
    ) -> int:
        port = await self._mapped_port(service, internal_port)

        async def probe() -> int | None:
            return port if await check(port) else None

        return await self._poller.wait_for(
            service,
            probe,
            max_tries=max_tries,
            excluded=self._started_without,
            message=f"{service} on port {port}",
        )

    async def _wait_for_tcp_port(self, service: str, internal_port: int) -> int:
        async def accepts(port: int) -> bool:
            await tcp_port_probe(self._host, port)
            return True

        return await self._wait_for_port(
            service, internal_port, accepts, max_tries=self.settings.PORT_MAX_TRIES
        )

    async def _wait_for_container(self, service: str) -> ContainerInfo:
        async def probe() -> ContainerInfo | None:
            container = await self._container_for_service(service)
            return container if container and container.running else None

        return await self._poller.wait_for(
            service,
            probe,
            max_tries=self.settings.CONTAINER_MAX_TRIES,
            excluded=self._started_without,
        )

    async def _container_for_service(self, service: str) -> ContainerInfo | None:
        if self._state is not ClusterState.STARTING:
            self._check_started(f"inspect {service}")
        container_id = await self._supervisor_retry.call(
            lambda: self._supervisor.ps(service), operation_name="ps"
        )
        if container_id is None:
            return None
        return await self._inspector_retry.call(
            lambda: self._inspector.inspect(container_id), operation_name="inspect"
        )

    # --- Teardown ---

    async def _close_handles(self) -> None:
        handles: list[tuple[str, Any]] = [
            ("kafka admin", self._handles.kafka_admin),
            ("schema registry", self._handles.schema_registry),
            ("postgres", self._handles.postgres),
        ]
        for name, handle in handles:
            if handle is None:
                continue
            try:
                await handle.close()
            except Exception as e:
                logger.warning(f"Error closing {name} handle: {e}")

    async def _dump_failed_service_logs(self) -> None:
        try:
            container_ids = await self._supervisor_retry.call(
                self._supervisor.ps_all, operation_name="ps"
            )
            failed: list[ContainerInfo] = []
            for container_id in container_ids:
                container = await self._inspector_retry.call(
                    lambda: self._inspector.inspect(container_id), operation_name="inspect"
                )
                if container.exit_code != 0:
                    failed.append(container)
        except Exception as e:
            logger.warning(f"Could not inspect containers for diagnostics: {e}")
            return

        for container in failed:
            await self._dump_container_logs(container)

    async def _dump_container_logs(self, container: ContainerInfo) -> None:
        try:
            stdout, stderr = await self._inspector.logs(container.id)
        except Exception as e:
            logger.warning(
                f"Failed to capture logs for container {container.name} "
                f"(exit code {container.exit_code}): {e}"
            )
            return

        for label, output in (("Stdout", stdout), ("Stderr", stderr)):
            if not output.strip():
                continue
            logger.warning(
                f"{label} from container {container.name} (exit code {container.exit_code})\n"
                f"{_RULER}\n{output}\n{_RULER}",
                container=container.name,
                exit_code=container.exit_code,
            )
