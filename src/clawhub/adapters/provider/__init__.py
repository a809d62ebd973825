"""Compute provider implementations and the factory keyed on ProviderKind."""

from clawhub.adapters.provider.docker import DockerProvider, map_docker_state
from clawhub.adapters.provider.fly import FlyProvider, map_fly_state
from clawhub.app.config import Settings
from clawhub.core.domain import ProviderKind
from clawhub.core.interfaces import InstanceProvider
from clawhub.infra.docker_cli import DockerCLI
from clawhub.infra.fly import FlyMachinesClient


def create_provider(kind: ProviderKind, settings: Settings) -> InstanceProvider:
    """Build the provider for kind from settings."""
    if kind == ProviderKind.FLY:
        return FlyProvider(
            client=FlyMachinesClient(settings.fly),
            image=settings.instance.image,
            internal_port=settings.fly.internal_port,
            bridge=settings.bridge,
            exec_arg_limit=settings.fly.exec_arg_limit,
        )
    if kind == ProviderKind.DOCKER:
        return DockerProvider(
            cli=DockerCLI(settings.docker),
            image=settings.instance.image,
            gateway_port=settings.docker.gateway_port,
            bridge=settings.bridge,
        )
    raise ValueError(f"Unsupported provider kind: {kind}")


class ProviderRegistry:
    """One provider instance per kind, shared for the process lifetime."""

    def __init__(
        self,
        settings: Settings,
        providers: dict[ProviderKind, InstanceProvider] | None = None,
    ) -> None:
        self._settings = settings
        self._providers: dict[ProviderKind, InstanceProvider] = dict(providers or {})

    @property
    def default_kind(self) -> ProviderKind:
        return self._settings.instance.provider

    def get_provider(self, kind: ProviderKind | None = None) -> InstanceProvider:
        kind = ProviderKind(kind or self.default_kind)
        provider = self._providers.get(kind)
        if provider is None:
            provider = create_provider(kind, self._settings)
            self._providers[kind] = provider
        return provider

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()


__all__ = [
    "DockerProvider",
    "FlyProvider",
    "ProviderRegistry",
    "create_provider",
    "map_docker_state",
    "map_fly_state",
]
