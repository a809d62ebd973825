"""Tests for FlyMachinesClient."""

import json

import httpx
import pytest

from clawhub.app.config import FlyConfig
from clawhub.core.errors import (
    ConfigurationError,
    FlyApiError,
    ProviderError,
    ProviderTimeoutError,
)
from clawhub.infra.fly import FlyMachinesClient


def make_client(handler, **overrides) -> FlyMachinesClient:
    config = FlyConfig(
        api_token=overrides.pop("api_token", "fly-test-token"),
        api_base="https://fly.test/v1",
        org_slug="test-org",
    )
    return FlyMachinesClient(config, transport=httpx.MockTransport(handler))


class TestFlyMachinesClient:
    async def test_bearer_token_on_every_request(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "m1", "state": "started"})

        client = make_client(handler)
        await client.get_machine("app-1", "m1")

        assert seen[0].headers["Authorization"] == "Bearer fly-test-token"
        assert seen[0].url.path == "/v1/apps/app-1/machines/m1"

    async def test_missing_token_is_configuration_error(self) -> None:
        client = make_client(lambda r: httpx.Response(200), api_token=None)

        with pytest.raises(ConfigurationError):
            await client.get_machine("app-1", "m1")

    async def test_create_app_payload(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201)

        client = make_client(handler)
        await client.create_app("openclaw-user1234-1")

        assert bodies == [{"app_name": "openclaw-user1234-1", "org_slug": "test-org"}]

    async def test_create_machine_payload(self) -> None:
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured.update(json.loads(request.content))
            return httpx.Response(200, json={"id": "m1", "private_ip": "fdaa::2"})

        client = make_client(handler)
        machine = await client.create_machine("app-1", "lax", {"image": "img"})

        assert machine["id"] == "m1"
        assert captured == {
            "name": "app-1-machine",
            "region": "lax",
            "config": {"image": "img"},
        }

    async def test_non_2xx_surfaces_status_and_body(self) -> None:
        client = make_client(lambda r: httpx.Response(422, text="invalid region"))

        with pytest.raises(FlyApiError) as exc_info:
            await client.create_machine("app-1", "xxx", {})

        assert exc_info.value.status == 422
        assert exc_info.value.message == "Fly.io API error: 422 invalid region"

    async def test_delete_machine_forces(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        client = make_client(handler)
        await client.delete_machine("app-1", "m1")

        assert seen[0].method == "DELETE"
        assert seen[0].url.params["force"] == "true"

    async def test_list_machines_empty_body(self) -> None:
        client = make_client(lambda r: httpx.Response(200))

        assert await client.list_machines("app-1") == []

    async def test_exec_machine(self) -> None:
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured.update(json.loads(request.content))
            return httpx.Response(
                200, json={"stdout": "out", "stderr": "warn", "exit_code": 1}
            )

        client = make_client(handler)
        output = await client.exec_machine(
            "app-1", "m1", ["echo", "hi"], timeout=10, grace_period=5
        )

        assert captured == {"command": ["echo", "hi"], "timeout": 10}
        assert output.stdout == "out"
        assert output.stderr == "warn"
        assert output.exit_code == 1

    async def test_timeout_is_recoverable_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)

        with pytest.raises(ProviderTimeoutError):
            await client.exec_machine("app-1", "m1", ["true"], timeout=1, grace_period=1)

    async def test_network_error_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(ProviderError) as exc_info:
            await client.start_machine("app-1", "m1")

        assert exc_info.value.message.startswith("Fly.io error:")

    async def test_non_json_body_wrapped(self) -> None:
        client = make_client(lambda r: httpx.Response(200, text="<html>gateway</html>"))

        with pytest.raises(ProviderError) as exc_info:
            await client.get_machine("app-1", "m1")

        assert "invalid JSON response" in exc_info.value.message

    async def test_close(self) -> None:
        client = make_client(lambda r: httpx.Response(200, json={}))
        await client.get_machine("app-1", "m1")

        await client.close()

        assert client._client is None
