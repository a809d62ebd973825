"""Instance domain enums and lifecycle transitions."""

from enum import StrEnum


class InstanceStatus(StrEnum):
    """Instance lifecycle status.

    UNKNOWN is a read-time value reported by providers; it is never persisted.
    """

    CREATING = "CREATING"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    STARTING = "STARTING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"
    DELETED = "DELETED"
    UNKNOWN = "UNKNOWN"


class ProviderKind(StrEnum):
    """Compute provider backing an instance."""

    FLY = "fly"
    DOCKER = "docker"


class AIProvider(StrEnum):
    """AI model family served inside the compute unit."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


# Allowed lifecycle transitions (from -> to)
TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.CREATING: frozenset({
        InstanceStatus.PROVISIONING,
        InstanceStatus.FAILED,
        InstanceStatus.DELETED,
    }),
    InstanceStatus.PROVISIONING: frozenset({
        InstanceStatus.RUNNING,
        InstanceStatus.FAILED,
        InstanceStatus.DELETED,
    }),
    InstanceStatus.RUNNING: frozenset({
        InstanceStatus.STOPPING,
        InstanceStatus.DELETED,
    }),
    InstanceStatus.STOPPING: frozenset({
        InstanceStatus.STOPPED,
        InstanceStatus.RUNNING,  # provider rejected the stop
        InstanceStatus.DELETED,
    }),
    InstanceStatus.STOPPED: frozenset({
        InstanceStatus.STARTING,
        InstanceStatus.DELETED,
    }),
    InstanceStatus.STARTING: frozenset({
        InstanceStatus.RUNNING,
        InstanceStatus.STOPPED,  # provider rejected the start
        InstanceStatus.DELETED,
    }),
    InstanceStatus.FAILED: frozenset({
        InstanceStatus.CREATING,  # retry
        InstanceStatus.DELETED,
    }),
    InstanceStatus.DELETED: frozenset(),
    InstanceStatus.UNKNOWN: frozenset(),
}

# Statuses the periodic sync refreshes from the provider
ACTIVE_STATUSES = frozenset({
    InstanceStatus.CREATING,
    InstanceStatus.PROVISIONING,
    InstanceStatus.RUNNING,
    InstanceStatus.STARTING,
    InstanceStatus.STOPPING,
})


def can_transition(current: InstanceStatus, target: InstanceStatus) -> bool:
    """Return True if the lifecycle allows moving from current to target."""
    return target in TRANSITIONS.get(current, frozenset())


def sources_for(target: InstanceStatus) -> frozenset[InstanceStatus]:
    """All statuses from which target is reachable."""
    return frozenset(
        status for status, targets in TRANSITIONS.items() if target in targets
    )
