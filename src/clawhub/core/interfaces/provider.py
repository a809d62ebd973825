"""Instance provider interface for compute backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from clawhub.core.domain import AIProvider, InstanceStatus, ProviderKind


@dataclass(frozen=True)
class CreateInstanceConfig:
    """Everything a provider needs to allocate one compute unit."""

    instance_id: str
    name: str
    user_id: str
    ai_provider: AIProvider
    ai_api_key: str
    ai_model: str
    region: str
    bot_token: str | None = None
    github_token: str | None = None


@dataclass(frozen=True)
class ProviderResult:
    """Connection data returned by create_instance."""

    provider_id: str  # Fly machine id or Docker container id
    provider_app_id: str  # Fly app name or Docker container name
    ip_address: str | None = None
    port: int | None = None


@dataclass(frozen=True)
class ProviderHandles:
    """Provider-specific identifiers of an existing compute unit.

    At most one set is populated, matching the instance's provider kind.
    """

    fly_app_name: str | None = None
    fly_machine_id: str | None = None
    docker_container_id: str | None = None
    docker_port: int | None = None

    def is_empty(self) -> bool:
        return not any(
            (self.fly_app_name, self.fly_machine_id, self.docker_container_id)
        )

    def as_values(self) -> dict[str, str | int | None]:
        """Column values for persisting these handles."""
        return {
            "fly_app_name": self.fly_app_name,
            "fly_machine_id": self.fly_machine_id,
            "docker_container_id": self.docker_container_id,
            "docker_port": self.docker_port,
        }


@dataclass(frozen=True)
class ExecOutput:
    """Captured output of a command run inside a compute unit."""

    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True)
class ChatResult:
    response: str


@dataclass(frozen=True)
class UploadResult:
    path: str


class InstanceProvider(ABC):
    """Lifecycle contract shared by every compute backend.

    Implementations: FlyProvider, DockerProvider
    """

    @property
    @abstractmethod
    def kind(self) -> ProviderKind:
        """Return the provider kind."""
        ...

    @abstractmethod
    def handles_from_result(self, result: ProviderResult) -> ProviderHandles:
        """Map create_instance output to the handles persisted for this kind."""
        ...

    @abstractmethod
    def require_handles(self, handles: ProviderHandles) -> None:
        """Raise InvalidStateError unless handles address a compute unit."""
        ...

    @abstractmethod
    async def create_instance(self, config: CreateInstanceConfig) -> ProviderResult:
        """Allocate compute. Performs real side effects on every call."""
        ...

    @abstractmethod
    async def start_instance(self, handles: ProviderHandles) -> None:
        """Start a stopped compute unit."""
        ...

    @abstractmethod
    async def stop_instance(self, handles: ProviderHandles) -> None:
        """Stop a running compute unit."""
        ...

    @abstractmethod
    async def delete_instance(self, handles: ProviderHandles) -> None:
        """Delete whatever exists for handles. Never raises for nothing to delete."""
        ...

    @abstractmethod
    async def get_instance_status(self, handles: ProviderHandles) -> InstanceStatus:
        """Current status mapped from the provider. UNKNOWN instead of raising."""
        ...

    @abstractmethod
    async def send_message(
        self,
        handles: ProviderHandles,
        session_id: str,
        text: str,
        timeout: int,
    ) -> ChatResult:
        """Run one agent chat turn inside the compute unit."""
        ...

    @abstractmethod
    async def upload_file(
        self,
        handles: ProviderHandles,
        data: bytes,
        filename: str,
    ) -> UploadResult:
        """Copy bytes into the compute unit and return the stored path."""
        ...

    async def close(self) -> None:
        """Release transport resources held by the provider."""
        return None
