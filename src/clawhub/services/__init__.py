"""Services: instance persistence and lifecycle orchestration."""

from clawhub.services.instance_repository import InstanceRecord, InstanceRepository
from clawhub.services.instance_service import (
    InstanceOrchestrator,
    ProvisionOptions,
    get_api_key,
    resolve_ai_provider,
)

__all__ = [
    "InstanceOrchestrator",
    "InstanceRecord",
    "InstanceRepository",
    "ProvisionOptions",
    "get_api_key",
    "resolve_ai_provider",
]
