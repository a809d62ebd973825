"""Tests for FlyProvider."""

import base64
import os
import re
from unittest.mock import AsyncMock

import httpx
import pytest

from clawhub.adapters.provider.fly import FlyProvider, map_fly_state
from clawhub.app.config import BridgeConfig, FlyConfig
from clawhub.core.domain import AIProvider, InstanceStatus, ProviderKind
from clawhub.core.errors import FlyApiError, InvalidStateError, ProviderError
from clawhub.core.interfaces import (
    CreateInstanceConfig,
    ExecOutput,
    ProviderHandles,
    ProviderResult,
)
from clawhub.infra.fly import FlyMachinesClient

EXEC_ARG_LIMIT = 8192
HANDLES = ProviderHandles(fly_app_name="openclaw-user1-1", fly_machine_id="m-1")


class FakeMachineFilesystem:
    """Executes the bridge's upload commands against an in-memory filesystem."""

    def __init__(self) -> None:
        self.files: dict[str, str | bytes] = {}
        self.dirs: set[str] = set()
        self.commands: list[list[str]] = []

    async def exec_machine(self, app, machine, command, timeout, grace_period):
        self.commands.append(command)
        if command[:2] == ["mkdir", "-p"]:
            self.dirs.add(command[2])
        elif command[2].startswith("printf"):
            chunk, path = command[4], command[5]
            self.files[path] = self.files.get(path, "") + chunk
        elif command[2].startswith("base64 -d"):
            staging, target = command[4], command[5]
            self.files[target] = base64.b64decode(self.files.pop(staging))
        else:
            return ExecOutput(stdout="", stderr="unknown command", exit_code=127)
        return ExecOutput(stdout="", stderr="", exit_code=0)


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock(spec=FlyMachinesClient)


@pytest.fixture
def bridge() -> BridgeConfig:
    return BridgeConfig(
        chat_timeout=60, grace_period=5.0, upload_dir="/tmp/uploads", chunk_fraction=0.5
    )


@pytest.fixture
def provider(client: AsyncMock, bridge: BridgeConfig) -> FlyProvider:
    return FlyProvider(
        client=client,
        image="registry.test/openclaw:1",
        internal_port=8080,
        bridge=bridge,
        exec_arg_limit=EXEC_ARG_LIMIT,
    )


def make_http_provider(handler, bridge: BridgeConfig, **overrides) -> FlyProvider:
    """FlyProvider over a real client with a mocked transport."""
    config = FlyConfig(
        api_token=overrides.pop("api_token", "fly-test-token"),
        api_base="https://fly.test/v1",
    )
    return FlyProvider(
        client=FlyMachinesClient(config, transport=httpx.MockTransport(handler)),
        image="registry.test/openclaw:1",
        internal_port=8080,
        bridge=bridge,
        exec_arg_limit=EXEC_ARG_LIMIT,
    )


def make_config(**overrides) -> CreateInstanceConfig:
    values = {
        "instance_id": "inst-1",
        "name": "bot",
        "user_id": "User1234abcdef",
        "ai_provider": AIProvider.GOOGLE,
        "ai_api_key": "gemini-test-key",
        "ai_model": "gemini-2.0-flash",
        "region": "lax",
        "bot_token": "123:abc",
    }
    values.update(overrides)
    return CreateInstanceConfig(**values)


class TestMapFlyState:
    @pytest.mark.parametrize(
        ("state", "expected"),
        [
            ("started", InstanceStatus.RUNNING),
            ("starting", InstanceStatus.STARTING),
            ("stopping", InstanceStatus.STOPPING),
            ("stopped", InstanceStatus.STOPPED),
            ("suspended", InstanceStatus.STOPPED),
            ("destroyed", InstanceStatus.DELETED),
            ("created", InstanceStatus.CREATING),
            ("replacing", InstanceStatus.CREATING),
            ("launching-rockets", InstanceStatus.UNKNOWN),
            ("", InstanceStatus.UNKNOWN),
            (None, InstanceStatus.UNKNOWN),
        ],
    )
    def test_mapping(self, state: str | None, expected: InstanceStatus) -> None:
        assert map_fly_state(state) == expected


class TestCreateInstance:
    async def test_creates_app_then_machine(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.create_machine.return_value = {"id": "m-1", "private_ip": "fdaa::3"}

        result = await provider.create_instance(make_config())

        app_name = client.create_app.call_args.args[0]
        assert re.match(r"^openclaw-user1234-\d+$", app_name)
        assert result == ProviderResult(
            provider_id="m-1", provider_app_id=app_name, ip_address="fdaa::3"
        )

    async def test_machine_config(self, provider: FlyProvider, client: AsyncMock) -> None:
        client.create_machine.return_value = {"id": "m-1"}

        await provider.create_instance(make_config())

        _, region, config = client.create_machine.call_args.args
        assert region == "lax"
        assert config["image"] == "registry.test/openclaw:1"
        assert config["env"]["GOOGLE_API_KEY"] == "gemini-test-key"
        assert config["env"]["TELEGRAM_BOT_TOKEN"] == "123:abc"
        assert "ANTHROPIC_API_KEY" not in config["env"]
        assert config["services"][0]["internal_port"] == 8080
        assert [p["port"] for p in config["services"][0]["ports"]] == [80, 443]
        assert config["init"]["cmd"][:2] == ["sh", "-c"]

    async def test_machine_failure_removes_app(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.create_machine.side_effect = FlyApiError(422, "invalid image")

        with pytest.raises(FlyApiError):
            await provider.create_instance(make_config())

        client.delete_app.assert_awaited_once_with(client.create_app.call_args.args[0])

    def test_handles_from_result(self, provider: FlyProvider) -> None:
        handles = provider.handles_from_result(
            ProviderResult(provider_id="m-1", provider_app_id="app-1")
        )

        assert handles == ProviderHandles(fly_app_name="app-1", fly_machine_id="m-1")
        assert provider.kind == ProviderKind.FLY


class TestStartStop:
    async def test_start(self, provider: FlyProvider, client: AsyncMock) -> None:
        await provider.start_instance(HANDLES)

        client.start_machine.assert_awaited_once_with("openclaw-user1-1", "m-1")

    async def test_stop(self, provider: FlyProvider, client: AsyncMock) -> None:
        await provider.stop_instance(HANDLES)

        client.stop_machine.assert_awaited_once_with("openclaw-user1-1", "m-1")

    async def test_missing_handles(self, provider: FlyProvider, client: AsyncMock) -> None:
        with pytest.raises(InvalidStateError, match="No machine ID or app name found"):
            await provider.start_instance(ProviderHandles(fly_app_name="app-1"))

        client.start_machine.assert_not_called()

    async def test_provider_error_propagates(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.stop_machine.side_effect = FlyApiError(500, "boom")

        with pytest.raises(FlyApiError, match="Fly.io API error: 500 boom"):
            await provider.stop_instance(HANDLES)


class TestDeleteInstance:
    async def test_deletes_machine_then_app(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        await provider.delete_instance(HANDLES)

        client.delete_machine.assert_awaited_once_with("openclaw-user1-1", "m-1")
        client.delete_app.assert_awaited_once_with("openclaw-user1-1")

    async def test_no_handles_is_noop(self, provider: FlyProvider, client: AsyncMock) -> None:
        await provider.delete_instance(ProviderHandles())

        client.delete_machine.assert_not_called()
        client.delete_app.assert_not_called()

    async def test_app_without_machine(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        await provider.delete_instance(ProviderHandles(fly_app_name="app-1"))

        client.delete_machine.assert_not_called()
        client.delete_app.assert_awaited_once_with("app-1")

    async def test_already_gone_tolerated(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.delete_machine.side_effect = FlyApiError(404, "not found")
        client.delete_app.side_effect = FlyApiError(404, "not found")

        await provider.delete_instance(HANDLES)

    async def test_other_errors_raise(self, provider: FlyProvider, client: AsyncMock) -> None:
        client.delete_app.side_effect = FlyApiError(500, "boom")

        with pytest.raises(FlyApiError):
            await provider.delete_instance(HANDLES)


class TestGetInstanceStatus:
    async def test_maps_machine_state(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.get_machine.return_value = {"id": "m-1", "state": "stopped"}

        assert await provider.get_instance_status(HANDLES) == InstanceStatus.STOPPED

    async def test_missing_handles_unknown(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        assert await provider.get_instance_status(ProviderHandles()) == (
            InstanceStatus.UNKNOWN
        )
        client.get_machine.assert_not_called()

    async def test_not_found_is_deleted(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.get_machine.side_effect = FlyApiError(404, "not found")

        assert await provider.get_instance_status(HANDLES) == InstanceStatus.DELETED

    async def test_errors_are_unknown(self, provider: FlyProvider, client: AsyncMock) -> None:
        client.get_machine.side_effect = ProviderError("Fly.io error: connection reset")

        assert await provider.get_instance_status(HANDLES) == InstanceStatus.UNKNOWN

    async def test_missing_token_is_unknown(self, bridge: BridgeConfig) -> None:
        provider = make_http_provider(
            lambda r: httpx.Response(200, json={"state": "started"}), bridge, api_token=None
        )

        assert await provider.get_instance_status(HANDLES) == InstanceStatus.UNKNOWN

    async def test_non_json_body_is_unknown(self, bridge: BridgeConfig) -> None:
        provider = make_http_provider(
            lambda r: httpx.Response(200, text="<html>gateway</html>"), bridge
        )

        assert await provider.get_instance_status(HANDLES) == InstanceStatus.UNKNOWN

    async def test_non_object_body_is_unknown(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.get_machine.return_value = ["started"]

        assert await provider.get_instance_status(HANDLES) == InstanceStatus.UNKNOWN


class TestSendMessage:
    async def test_stderr_noise_with_payload(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.exec_machine.return_value = ExecOutput(
            stdout='{"payloads":[{"text":"hi","mediaUrl":null}]}',
            stderr="warning: deprecated flag",
            exit_code=0,
        )

        result = await provider.send_message(HANDLES, "web-u-i", "hello", 60)

        assert result.response == "hi"
        kwargs = client.exec_machine.call_args.kwargs
        assert kwargs["timeout"] == 60
        assert kwargs["grace_period"] == 5.0

    async def test_failure_surfaces_error_text(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        client.exec_machine.return_value = ExecOutput(
            stdout="", stderr="gateway not ready", exit_code=1
        )

        with pytest.raises(ProviderError, match="gateway not ready"):
            await provider.send_message(HANDLES, "web-u-i", "hello", 60)


class TestUploadFile:
    async def test_large_payload_chunked_and_reassembled(
        self, provider: FlyProvider, client: AsyncMock
    ) -> None:
        fs = FakeMachineFilesystem()
        client.exec_machine.side_effect = fs.exec_machine
        data = os.urandom(100 * 1024)

        result = await provider.upload_file(HANDLES, data, "dataset.csv")

        assert result.path.startswith("/tmp/uploads/")
        assert result.path.endswith(".csv")
        assert fs.files[result.path] == data
        assert "/tmp/uploads" in fs.dirs

        appends = [c for c in fs.commands if c[:3] == ["sh", "-c", 'printf %s "$1" >> "$2"']]
        assert len(appends) > 1
        for command in fs.commands:
            assert sum(len(arg) for arg in command) < EXEC_ARG_LIMIT
        for command in appends:
            assert len(command[4]) <= EXEC_ARG_LIMIT * 0.5

    async def test_failed_step_raises(self, provider: FlyProvider, client: AsyncMock) -> None:
        client.exec_machine.return_value = ExecOutput(
            stdout="", stderr="No space left on device", exit_code=1
        )

        with pytest.raises(ProviderError, match="No space left on device"):
            await provider.upload_file(HANDLES, b"abc", "a.txt")

    async def test_requires_handles(self, provider: FlyProvider) -> None:
        with pytest.raises(InvalidStateError):
            await provider.upload_file(ProviderHandles(), b"abc", "a.txt")
