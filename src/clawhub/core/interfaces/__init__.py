"""Core interfaces."""

from clawhub.core.interfaces.provider import (
    ChatResult,
    CreateInstanceConfig,
    ExecOutput,
    InstanceProvider,
    ProviderHandles,
    ProviderResult,
    UploadResult,
)

__all__ = [
    "ChatResult",
    "CreateInstanceConfig",
    "ExecOutput",
    "InstanceProvider",
    "ProviderHandles",
    "ProviderResult",
    "UploadResult",
]
