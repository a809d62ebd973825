"""Domain enums."""

from clawhub.core.domain.instance import (
    ACTIVE_STATUSES,
    TRANSITIONS,
    AIProvider,
    InstanceStatus,
    ProviderKind,
    can_transition,
    sources_for,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TRANSITIONS",
    "AIProvider",
    "InstanceStatus",
    "ProviderKind",
    "can_transition",
    "sources_for",
]
