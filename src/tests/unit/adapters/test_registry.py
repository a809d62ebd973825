"""Tests for provider construction."""

from unittest.mock import AsyncMock

import pytest

from clawhub.adapters.provider import (
    DockerProvider,
    FlyProvider,
    ProviderRegistry,
    create_provider,
)
from clawhub.app.config import Settings
from clawhub.core.domain import ProviderKind


class TestCreateProvider:
    def test_fly(self, settings: Settings) -> None:
        assert isinstance(create_provider(ProviderKind.FLY, settings), FlyProvider)

    def test_docker(self, settings: Settings) -> None:
        assert isinstance(create_provider(ProviderKind.DOCKER, settings), DockerProvider)

    def test_unknown_kind(self, settings: Settings) -> None:
        with pytest.raises(ValueError):
            create_provider("k8s", settings)


class TestProviderRegistry:
    def test_default_kind_from_settings(self, settings: Settings) -> None:
        registry = ProviderRegistry(settings)

        assert registry.get_provider().kind == ProviderKind.FLY

    def test_built_once_per_kind(self, settings: Settings) -> None:
        registry = ProviderRegistry(settings)

        assert registry.get_provider(ProviderKind.DOCKER) is registry.get_provider(
            ProviderKind.DOCKER
        )

    def test_accepts_plain_string_kind(self, settings: Settings) -> None:
        """Kinds read back from storage arrive as plain strings."""
        registry = ProviderRegistry(settings)

        assert registry.get_provider("docker").kind == ProviderKind.DOCKER

    async def test_close_releases_providers(self, settings: Settings) -> None:
        provider = AsyncMock(spec=FlyProvider)
        registry = ProviderRegistry(settings, {ProviderKind.FLY: provider})

        await registry.close()

        provider.close.assert_awaited_once()
