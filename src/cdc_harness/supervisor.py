"""
Default service supervisor and container inspector over the docker CLIs.

Every command runs through ``asyncio.create_subprocess_exec``; a non-zero
exit raises ComposeCommandError, which the orchestrator's retry policy treats
as transient.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Mapping, Sequence

from cdc_harness.config import HarnessSettings
from cdc_harness.errors import ComposeCommandError
from cdc_harness.logging_utils import create_harness_logger
from cdc_harness.protocols import ContainerInfo

logger = create_harness_logger("supervisor")


async def run_command(
    command: list[str], environment: Mapping[str, str] | None = None
) -> tuple[str, str]:
    """Run ``command`` and return ``(stdout, stderr)``.

    Raises:
        ComposeCommandError: The command exited non-zero.
    """
    env = {**os.environ, **environment} if environment else None
    logger.debug(f"Running {' '.join(command)}")
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    stdout, stderr = await process.communicate()
    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")
    if process.returncode != 0:
        raise ComposeCommandError(command, process.returncode or -1, err)
    return out, err


class ComposeSupervisor:
    """``docker compose`` session for one project."""

    def __init__(self, settings: HarnessSettings) -> None:
        self.settings = settings

    def __repr__(self) -> str:
        return f"ComposeSupervisor({self.settings.COMPOSE_FILE or 'docker-compose.yml'})"

    def _compose(self, *args: str) -> list[str]:
        command = ["docker", "compose"]
        if self.settings.COMPOSE_FILE:
            command += ["-f", self.settings.COMPOSE_FILE]
        if self.settings.COMPOSE_PROJECT_NAME:
            command += ["-p", self.settings.COMPOSE_PROJECT_NAME]
        return command + list(args)

    async def up(
        self,
        services: Sequence[str],
        *,
        detached: bool = True,
        no_deps: bool = True,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        args = ["up"]
        if detached:
            args.append("-d")
        if no_deps:
            args.append("--no-deps")
        await run_command(self._compose(*args, *services), environment)
        logger.info(f"Started {', '.join(services)}")

    async def stop(self) -> None:
        await run_command(self._compose("stop"))

    async def remove(self, *, force: bool = True, volumes: bool = True) -> None:
        args = ["rm"]
        if force:
            args.append("-f")
        if volumes:
            args.append("-v")
        await run_command(self._compose(*args))

    async def ps(self, service: str) -> str | None:
        stdout, _ = await run_command(self._compose("ps", "-a", "-q", service))
        container_id = stdout.strip()
        return container_id or None

    async def ps_all(self) -> list[str]:
        stdout, _ = await run_command(self._compose("ps", "-a", "-q"))
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    async def port(self, service: str, internal_port: int) -> str:
        stdout, _ = await run_command(self._compose("port", service, str(internal_port)))
        return stdout.strip()

    async def run_image(self, image: str, *args: str) -> str:
        stdout, _ = await run_command(["docker", "run", "--rm", image, *args])
        return stdout


class DockerInspector:
    """Container state and logs via ``docker inspect`` / ``docker logs``."""

    async def inspect(self, container_id: str) -> ContainerInfo:
        stdout, _ = await run_command(["docker", "inspect", container_id])
        # docker inspect prints a JSON array even for a single container
        details = json.loads(stdout)[0]
        state = details["State"]
        return ContainerInfo(
            id=details["Id"],
            name=details["Name"].lstrip("/"),
            running=bool(state["Running"]),
            exit_code=int(state["ExitCode"]),
        )

    async def logs(self, container_id: str) -> tuple[str, str]:
        return await run_command(["docker", "logs", container_id])
