"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (clawhub-orchestrator)
- event: Event type (provision_started, provider_call_failed, etc.)
- trace_id: Trace ID (one per background provisioning run)

High cardinality fields (OK in logs, NOT in metric labels):
- instance_id: Instance ID
- user_id: User ID
- provider: Provider kind (fly, docker)
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Provisioning pipeline
    INSTANCE_CREATED = "instance_created"
    PROVISION_STARTED = "provision_started"
    PROVISION_SUCCESS = "provision_success"
    PROVISION_FAILED = "provision_failed"
    PROVISION_ORPHANED = "provision_orphaned"

    # Lifecycle actions
    STATE_CHANGED = "state_changed"
    OPERATION_FAILED = "operation_failed"
    STATUS_SYNCED = "status_synced"

    # Provider calls
    PROVIDER_CALL = "provider_call"
    PROVIDER_CALL_FAILED = "provider_call_failed"
    PROVIDER_CLEANUP_SKIPPED = "provider_cleanup_skipped"

    # Command bridge
    EXEC_COMPLETE = "exec_complete"
    EXEC_STDERR_IGNORED = "exec_stderr_ignored"
    UPLOAD_COMPLETE = "upload_complete"

    # Lifecycle events
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"
    DB_CONNECTED = "db_connected"
    DB_ERROR = "db_error"


class ErrorClass(StrEnum):
    """Error classification for structured error logging.

    Use these in the 'error_class' extra field to enable
    filtering by error type and setting up alerts.
    """

    CONFIGURATION = "configuration"  # Missing key or credential
    TRANSIENT = "transient"  # Network, 5xx, non-zero CLI exit
    PERMANENT = "permanent"  # Invalid input, not found
    TIMEOUT = "timeout"  # Exec or request deadline exceeded
