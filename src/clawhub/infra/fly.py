"""Fly.io Machines API client.

Thin async wrapper over https://fly.io/docs/machines/api/ used by FlyProvider.
Every request carries the bearer token; non-2xx responses raise FlyApiError
with the status code and response body verbatim.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx

from clawhub.app.config import FlyConfig
from clawhub.core.errors import (
    ConfigurationError,
    FlyApiError,
    ProviderError,
    ProviderTimeoutError,
)
from clawhub.core.interfaces import ExecOutput

logger = logging.getLogger(__name__)


class FlyMachinesClient:
    """HTTP client for the Fly.io Machines API."""

    def __init__(
        self,
        config: FlyConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_headers(self) -> dict[str, str]:
        if not self._config.api_token:
            raise ConfigurationError("FLY_API_TOKEN environment variable is required")
        return {
            "Authorization": f"Bearer {self._config.api_token}",
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._config.api_base,
                headers=self._get_headers(),
                timeout=self._config.api_timeout,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: Literal["get", "post", "delete"],
        path: str,
        *,
        json: dict | None = None,
        timeout: float | None = None,
        params: dict | None = None,
    ) -> Any:
        """Make a request and return the decoded JSON body (None if empty).

        Raises:
            FlyApiError: Non-2xx response.
            ProviderTimeoutError: Request exceeded its deadline.
            ProviderError: Network failure.
        """
        client = await self._get_client()
        kwargs: dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        if params:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            resp = await client.request(method.upper(), path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Fly.io error: request timed out ({path})") from e
        except httpx.TransportError as e:
            raise ProviderError(f"Fly.io error: {e}") from e

        if not resp.is_success:
            raise FlyApiError(resp.status_code, resp.text)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"Fly.io error: invalid JSON response ({path})") from e

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Apps
    # =========================================================================

    async def create_app(self, name: str) -> None:
        await self._request(
            "post",
            "/apps",
            json={"app_name": name, "org_slug": self._config.org_slug},
        )
        logger.info("Created Fly app: %s", name)

    async def delete_app(self, app_name: str) -> None:
        await self._request("delete", f"/apps/{app_name}")
        logger.info("Deleted Fly app: %s", app_name)

    # =========================================================================
    # Machines
    # =========================================================================

    async def create_machine(self, app_name: str, region: str, config: dict) -> dict:
        return await self._request(
            "post",
            f"/apps/{app_name}/machines",
            json={"name": f"{app_name}-machine", "region": region, "config": config},
        )

    async def start_machine(self, app_name: str, machine_id: str) -> None:
        await self._request("post", f"/apps/{app_name}/machines/{machine_id}/start")

    async def stop_machine(self, app_name: str, machine_id: str) -> None:
        await self._request("post", f"/apps/{app_name}/machines/{machine_id}/stop")

    async def delete_machine(self, app_name: str, machine_id: str) -> None:
        await self._request(
            "delete",
            f"/apps/{app_name}/machines/{machine_id}",
            params={"force": "true"},
        )

    async def get_machine(self, app_name: str, machine_id: str) -> dict:
        return await self._request("get", f"/apps/{app_name}/machines/{machine_id}")

    async def list_machines(self, app_name: str) -> list[dict]:
        return await self._request("get", f"/apps/{app_name}/machines") or []

    async def exec_machine(
        self,
        app_name: str,
        machine_id: str,
        command: list[str],
        timeout: int,
        grace_period: float,
    ) -> ExecOutput:
        """Run a command inside the machine.

        The HTTP deadline is the command timeout plus a grace period, so the
        machine-side timeout fires first in the normal case.
        """
        data = await self._request(
            "post",
            f"/apps/{app_name}/machines/{machine_id}/exec",
            json={"command": command, "timeout": timeout},
            timeout=timeout + grace_period,
        ) or {}
        return ExecOutput(
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
            exit_code=int(data.get("exit_code") or 0),
        )
