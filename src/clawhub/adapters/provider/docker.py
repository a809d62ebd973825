"""Local Docker provider.

Manages agent containers through the docker CLI. Used for development where
no Fly.io account is available.
"""

import asyncio
import logging
import os
import re
import secrets
import tempfile
import time

from clawhub.adapters.provider.bridge import (
    build_agent_command,
    mkdir_command,
    parse_agent_output,
    upload_path,
)
from clawhub.adapters.provider.startup import build_environment, build_startup_script
from clawhub.app.config import BridgeConfig
from clawhub.core.domain import InstanceStatus, ProviderKind
from clawhub.core.errors import DockerCommandError, InvalidStateError, ProviderError
from clawhub.core.interfaces import (
    ChatResult,
    CreateInstanceConfig,
    ExecOutput,
    InstanceProvider,
    ProviderHandles,
    ProviderResult,
    UploadResult,
)
from clawhub.core.logging_schema import LogEvent
from clawhub.infra.docker_cli import DockerCLI

logger = logging.getLogger(__name__)

DOCKER_STATE_MAP: dict[str, InstanceStatus] = {
    "running": InstanceStatus.RUNNING,
    "created": InstanceStatus.STARTING,
    "restarting": InstanceStatus.STARTING,
    "paused": InstanceStatus.STOPPED,
    "exited": InstanceStatus.STOPPED,
    "dead": InstanceStatus.STOPPED,
    "removing": InstanceStatus.STOPPING,
    "removed": InstanceStatus.DELETED,
}

CONTAINER_PREFIX = "openclaw-"
SHORT_ID_LENGTH = 12

_PORT_RE = re.compile(r":(\d+)\s*$")


def map_docker_state(state: str | None) -> InstanceStatus:
    """Map a container state to an instance status."""
    return DOCKER_STATE_MAP.get((state or "").strip().lower(), InstanceStatus.UNKNOWN)


def container_name(instance_name: str) -> str:
    """Container name from the instance name plus a millisecond stamp."""
    slug = re.sub(r"[^a-z0-9]+", "-", instance_name.lower()).strip("-") or "instance"
    return f"{CONTAINER_PREFIX}{slug}-{int(time.time() * 1000)}"


def _write_temp(data: bytes) -> str:
    fd, path = tempfile.mkstemp(prefix="clawhub-upload-")
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    return path


class DockerProvider(InstanceProvider):
    """Runs agents as local Docker containers."""

    def __init__(
        self,
        cli: DockerCLI,
        image: str,
        gateway_port: int,
        bridge: BridgeConfig,
    ) -> None:
        self._cli = cli
        self._image = image
        self._gateway_port = gateway_port
        self._bridge = bridge

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.DOCKER

    def handles_from_result(self, result: ProviderResult) -> ProviderHandles:
        return ProviderHandles(
            docker_container_id=result.provider_id,
            docker_port=result.port,
        )

    def require_handles(self, handles: ProviderHandles) -> None:
        if not handles.docker_container_id:
            raise InvalidStateError("No Docker container ID found")

    async def _check_available(self) -> None:
        try:
            await self._cli.run(["version", "--format", "{{.Server.Version}}"])
        except DockerCommandError as e:
            raise DockerCommandError(
                "Docker is not available. Please ensure Docker is running."
            ) from e

    async def _ensure_image(self) -> None:
        """Pull the image if it is not present locally."""
        try:
            await self._cli.run(["image", "inspect", self._image])
        except DockerCommandError:
            logger.info("Pulling image: %s", self._image)
            await self._cli.run(["pull", self._image])

    async def _container_state(self, container_id: str) -> str:
        """Container state, or "removed" when inspect cannot find it."""
        try:
            result = await self._cli.run(
                ["inspect", "--format", "{{.State.Status}}", container_id]
            )
        except DockerCommandError:
            return "removed"
        return result.stdout.strip("'\" ")

    async def _published_port(self, container_id: str) -> int | None:
        """Host port bound to the gateway port, if any."""
        try:
            result = await self._cli.run(
                ["port", container_id, f"{self._gateway_port}/tcp"]
            )
        except DockerCommandError:
            return None
        for line in result.stdout.splitlines():
            match = _PORT_RE.search(line)
            if match:
                return int(match.group(1))
        return None

    async def create_instance(self, config: CreateInstanceConfig) -> ProviderResult:
        await self._check_available()
        await self._ensure_image()

        name = container_name(config.name)
        env = {
            "NODE_ENV": "production",
            "OPENCLAW_GATEWAY_TOKEN": secrets.token_hex(24),
            "OPENCLAW_DISABLE_BONJOUR": "1",
            **build_environment(config),
        }

        args = ["run", "-d", "--name", name]
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        args += [
            "-p",
            str(self._gateway_port),
            "--entrypoint",
            "sh",
            self._image,
            "-c",
            build_startup_script(config),
        ]

        result = await self._cli.run(args)
        container_id = result.stdout.splitlines()[-1].strip() if result.stdout else ""
        if not container_id:
            raise ProviderError("Docker run returned no container ID")

        port = await self._published_port(container_id)
        logger.info(
            "Docker container created",
            extra={
                "event": LogEvent.PROVIDER_CALL,
                "container": name,
                "container_id": container_id[:SHORT_ID_LENGTH],
                "port": port,
            },
        )
        return ProviderResult(
            provider_id=container_id[:SHORT_ID_LENGTH],
            provider_app_id=name,
            ip_address="localhost",
            port=port,
        )

    async def start_instance(self, handles: ProviderHandles) -> None:
        self.require_handles(handles)
        await self._check_available()
        await self._cli.run(["start", handles.docker_container_id])

    async def stop_instance(self, handles: ProviderHandles) -> None:
        self.require_handles(handles)
        await self._check_available()
        await self._cli.run(["stop", handles.docker_container_id])

    async def delete_instance(self, handles: ProviderHandles) -> None:
        container_id = handles.docker_container_id
        if not container_id:
            return

        await self._check_available()
        try:
            await self._cli.run(["rm", "-f", container_id])
        except DockerCommandError as e:
            if "No such container" not in e.detail:
                raise
            logger.debug("Container already gone: %s", container_id)

    async def get_instance_status(self, handles: ProviderHandles) -> InstanceStatus:
        if not handles.docker_container_id:
            return InstanceStatus.UNKNOWN

        try:
            await self._check_available()
            state = await self._container_state(handles.docker_container_id)
        except ProviderError as e:
            logger.warning(
                "Docker status lookup failed",
                extra={"event": LogEvent.PROVIDER_CALL_FAILED, "error": str(e)},
            )
            return InstanceStatus.UNKNOWN
        return map_docker_state(state)

    async def send_message(
        self,
        handles: ProviderHandles,
        session_id: str,
        text: str,
        timeout: int,
    ) -> ChatResult:
        self.require_handles(handles)
        result = await self._cli.run(
            [
                "exec",
                handles.docker_container_id,
                *build_agent_command(session_id, text, timeout),
            ],
            timeout=timeout + self._bridge.grace_period,
            check=False,
        )
        logger.debug(
            "Agent exec finished",
            extra={"event": LogEvent.EXEC_COMPLETE, "exit_code": result.returncode},
        )
        return parse_agent_output(
            ExecOutput(
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.returncode,
            ),
            "Docker",
        )

    async def upload_file(
        self,
        handles: ProviderHandles,
        data: bytes,
        filename: str,
    ) -> UploadResult:
        self.require_handles(handles)
        container_id = handles.docker_container_id
        path = upload_path(filename, self._bridge.upload_dir)

        await self._cli.run(["exec", container_id, *mkdir_command(self._bridge.upload_dir)])

        local_path = await asyncio.to_thread(_write_temp, data)
        try:
            await self._cli.run(["cp", local_path, f"{container_id}:{path}"])
        finally:
            await asyncio.to_thread(os.unlink, local_path)

        logger.info(
            "File uploaded",
            extra={"event": LogEvent.UPLOAD_COMPLETE, "path": path, "size": len(data)},
        )
        return UploadResult(path=path)
