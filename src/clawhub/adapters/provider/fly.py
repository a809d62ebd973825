"""Fly.io provider: one Fly app with one Machine per instance."""

import logging
import re
import time

from clawhub.adapters.provider.bridge import (
    append_command,
    build_agent_command,
    chunk_size_for,
    decode_command,
    encode_chunks,
    mkdir_command,
    parse_agent_output,
    upload_path,
)
from clawhub.adapters.provider.startup import build_environment, build_startup_script
from clawhub.app.config import BridgeConfig
from clawhub.core.domain import InstanceStatus, ProviderKind
from clawhub.core.errors import (
    ClawHubError,
    FlyApiError,
    InvalidStateError,
    ProviderError,
)
from clawhub.core.interfaces import (
    ChatResult,
    CreateInstanceConfig,
    InstanceProvider,
    ProviderHandles,
    ProviderResult,
    UploadResult,
)
from clawhub.core.logging_schema import LogEvent
from clawhub.infra.fly import FlyMachinesClient

logger = logging.getLogger(__name__)

FLY_STATE_MAP: dict[str, InstanceStatus] = {
    "started": InstanceStatus.RUNNING,
    "starting": InstanceStatus.STARTING,
    "stopping": InstanceStatus.STOPPING,
    "stopped": InstanceStatus.STOPPED,
    "suspended": InstanceStatus.STOPPED,
    "destroyed": InstanceStatus.DELETED,
    "created": InstanceStatus.CREATING,
    "replacing": InstanceStatus.CREATING,
}

# Upload steps are short filesystem commands
UPLOAD_EXEC_TIMEOUT = 30


def map_fly_state(state: str | None) -> InstanceStatus:
    """Map a Fly Machine state to an instance status."""
    return FLY_STATE_MAP.get(state or "", InstanceStatus.UNKNOWN)


def fly_app_name(user_id: str) -> str:
    """App names are global on Fly.io: user prefix plus a millisecond stamp."""
    prefix = re.sub(r"[^a-z0-9]", "", user_id.lower())[:8] or "user"
    return f"openclaw-{prefix}-{int(time.time() * 1000)}"


class FlyProvider(InstanceProvider):
    """Runs agents as Fly Machines through the Machines API."""

    def __init__(
        self,
        client: FlyMachinesClient,
        image: str,
        internal_port: int,
        bridge: BridgeConfig,
        exec_arg_limit: int,
    ) -> None:
        self._client = client
        self._image = image
        self._internal_port = internal_port
        self._bridge = bridge
        self._chunk_size = chunk_size_for(exec_arg_limit, bridge.chunk_fraction)

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.FLY

    def handles_from_result(self, result: ProviderResult) -> ProviderHandles:
        return ProviderHandles(
            fly_app_name=result.provider_app_id,
            fly_machine_id=result.provider_id,
        )

    def require_handles(self, handles: ProviderHandles) -> None:
        if not handles.fly_app_name or not handles.fly_machine_id:
            raise InvalidStateError("No machine ID or app name found")

    def _machine_config(self, config: CreateInstanceConfig) -> dict:
        return {
            "image": self._image,
            "env": build_environment(config),
            "guest": {"cpu_kind": "shared", "cpus": 1, "memory_mb": 1024},
            "services": [
                {
                    "protocol": "tcp",
                    "internal_port": self._internal_port,
                    "ports": [
                        {"port": 80, "handlers": ["http"]},
                        {"port": 443, "handlers": ["tls", "http"]},
                    ],
                }
            ],
            "init": {"cmd": ["sh", "-c", build_startup_script(config)]},
        }

    async def create_instance(self, config: CreateInstanceConfig) -> ProviderResult:
        app_name = fly_app_name(config.user_id)
        await self._client.create_app(app_name)

        try:
            machine = await self._client.create_machine(
                app_name, config.region, self._machine_config(config)
            )
        except ProviderError:
            # Machine never came up: remove the empty app before surfacing
            try:
                await self._client.delete_app(app_name)
            except ProviderError as cleanup_error:
                logger.warning(
                    "Failed to remove app after machine creation failed",
                    extra={
                        "event": LogEvent.PROVIDER_CLEANUP_SKIPPED,
                        "app_name": app_name,
                        "error": str(cleanup_error),
                    },
                )
            raise

        logger.info(
            "Fly machine created",
            extra={
                "event": LogEvent.PROVIDER_CALL,
                "app_name": app_name,
                "machine_id": machine["id"],
                "region": config.region,
            },
        )
        return ProviderResult(
            provider_id=machine["id"],
            provider_app_id=app_name,
            ip_address=machine.get("private_ip"),
        )

    async def start_instance(self, handles: ProviderHandles) -> None:
        self.require_handles(handles)
        await self._client.start_machine(handles.fly_app_name, handles.fly_machine_id)

    async def stop_instance(self, handles: ProviderHandles) -> None:
        self.require_handles(handles)
        await self._client.stop_machine(handles.fly_app_name, handles.fly_machine_id)

    async def delete_instance(self, handles: ProviderHandles) -> None:
        app_name = handles.fly_app_name
        if not app_name:
            return

        if handles.fly_machine_id:
            try:
                await self._client.delete_machine(app_name, handles.fly_machine_id)
            except FlyApiError as e:
                if e.status != 404:
                    raise
                logger.debug("Machine already gone: %s", handles.fly_machine_id)

        try:
            await self._client.delete_app(app_name)
        except FlyApiError as e:
            if e.status != 404:
                raise
            logger.debug("App already gone: %s", app_name)

    async def get_instance_status(self, handles: ProviderHandles) -> InstanceStatus:
        if not handles.fly_app_name or not handles.fly_machine_id:
            return InstanceStatus.UNKNOWN

        try:
            machine = await self._client.get_machine(
                handles.fly_app_name, handles.fly_machine_id
            )
        except FlyApiError as e:
            if e.status == 404:
                return InstanceStatus.DELETED
            logger.warning(
                "Fly status lookup failed",
                extra={"event": LogEvent.PROVIDER_CALL_FAILED, "status": e.status},
            )
            return InstanceStatus.UNKNOWN
        except (ClawHubError, ValueError) as e:
            # ConfigurationError when no token is set
            logger.warning(
                "Fly status lookup failed",
                extra={"event": LogEvent.PROVIDER_CALL_FAILED, "error": str(e)},
            )
            return InstanceStatus.UNKNOWN

        if not isinstance(machine, dict):
            return InstanceStatus.UNKNOWN
        return map_fly_state(machine.get("state"))

    async def send_message(
        self,
        handles: ProviderHandles,
        session_id: str,
        text: str,
        timeout: int,
    ) -> ChatResult:
        self.require_handles(handles)
        output = await self._client.exec_machine(
            handles.fly_app_name,
            handles.fly_machine_id,
            build_agent_command(session_id, text, timeout),
            timeout=timeout,
            grace_period=self._bridge.grace_period,
        )
        logger.debug(
            "Agent exec finished",
            extra={"event": LogEvent.EXEC_COMPLETE, "exit_code": output.exit_code},
        )
        return parse_agent_output(output, "Fly.io")

    async def _exec_checked(self, handles: ProviderHandles, command: list[str]) -> None:
        output = await self._client.exec_machine(
            handles.fly_app_name,
            handles.fly_machine_id,
            command,
            timeout=UPLOAD_EXEC_TIMEOUT,
            grace_period=self._bridge.grace_period,
        )
        if output.exit_code != 0:
            detail = output.stderr or f"exit status {output.exit_code}"
            raise ProviderError(f"Fly.io exec failed: {detail}")

    async def upload_file(
        self,
        handles: ProviderHandles,
        data: bytes,
        filename: str,
    ) -> UploadResult:
        self.require_handles(handles)
        path = upload_path(filename, self._bridge.upload_dir)
        staging = f"{path}.b64"

        await self._exec_checked(handles, mkdir_command(self._bridge.upload_dir))
        chunks = encode_chunks(data, self._chunk_size)
        for chunk in chunks:
            await self._exec_checked(handles, append_command(chunk, staging))
        await self._exec_checked(handles, decode_command(staging, path))

        logger.info(
            "File uploaded",
            extra={
                "event": LogEvent.UPLOAD_COMPLETE,
                "path": path,
                "size": len(data),
                "chunks": len(chunks),
            },
        )
        return UploadResult(path=path)

    async def close(self) -> None:
        await self._client.close()
