"""Instance orchestrator.

Owns the lifecycle state machine:

    CREATING -> PROVISIONING -> RUNNING <-> STOPPING -> STOPPED
                                RUNNING <- STARTING <- STOPPED
    CREATING/PROVISIONING -> FAILED -> CREATING (retry)
    any non-DELETED -> DELETED

provision_instance persists a CREATING record and returns immediately;
provisioning runs as a background task with its own error boundary that
writes the terminal status (RUNNING or FAILED) back to storage. Every status
write is a compare-and-swap, so a delete issued mid-provisioning wins.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from clawhub.adapters.provider import ProviderRegistry
from clawhub.app.config import AIKeysConfig, Settings
from clawhub.app.logging import bind_instance, clear_trace_context
from clawhub.core.domain import (
    ACTIVE_STATUSES,
    AIProvider,
    InstanceStatus,
    can_transition,
    sources_for,
)
from clawhub.core.errors import (
    ConfigurationError,
    InstanceNotFoundError,
    InvalidStateError,
    ProviderTimeoutError,
    describe_error,
)
from clawhub.core.interfaces import (
    ChatResult,
    CreateInstanceConfig,
    InstanceProvider,
    ProviderHandles,
    UploadResult,
)
from clawhub.core.logging_schema import ErrorClass, LogEvent
from clawhub.services.instance_repository import InstanceRecord, InstanceRepository

logger = logging.getLogger(__name__)

OPENAI_PREFIXES = ("gpt-", "o1-")
ANTHROPIC_PREFIXES = ("claude-",)
GOOGLE_PREFIXES = ("gemini-",)

API_KEY_ENV: dict[AIProvider, str] = {
    AIProvider.OPENAI: "OPENAI_KEY",
    AIProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    AIProvider.GOOGLE: "GEMINI_API_KEY",
}

# Status writes from provision/retry background runs
_FAILABLE_STATES = frozenset({InstanceStatus.CREATING, InstanceStatus.PROVISIONING})


def resolve_ai_provider(model: str) -> AIProvider:
    """Model family from the model name prefix. Unknown prefixes use Anthropic."""
    if model.startswith(OPENAI_PREFIXES):
        return AIProvider.OPENAI
    if model.startswith(ANTHROPIC_PREFIXES):
        return AIProvider.ANTHROPIC
    if model.startswith(GOOGLE_PREFIXES):
        return AIProvider.GOOGLE
    return AIProvider.ANTHROPIC


def get_api_key(provider: AIProvider, keys: AIKeysConfig) -> str:
    """API key for the model family from process configuration.

    Raises:
        ConfigurationError: Key not configured.
    """
    values = {
        AIProvider.OPENAI: keys.openai_key,
        AIProvider.ANTHROPIC: keys.anthropic_api_key,
        AIProvider.GOOGLE: keys.gemini_api_key,
    }
    key = values[provider]
    if not key:
        raise ConfigurationError(
            f'Missing API key for provider "{provider.value}". '
            f"Set {API_KEY_ENV[provider]} environment variable."
        )
    return key


@dataclass(frozen=True)
class ProvisionOptions:
    user_id: str
    name: str
    bot_token: str | None = None
    ai_model: str | None = None  # default: INSTANCE_DEFAULT_MODEL
    region: str | None = None  # default: INSTANCE_DEFAULT_REGION
    is_default: bool = False


class InstanceOrchestrator:
    """Lifecycle operations over InstanceRepository and the provider registry."""

    def __init__(
        self,
        repository: InstanceRepository,
        providers: ProviderRegistry,
        settings: Settings,
    ) -> None:
        self._repo = repository
        self._providers = providers
        self._settings = settings
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_instance(self, instance_id: str, user_id: str) -> InstanceRecord:
        """Get instance owned by user.

        Raises:
            InstanceNotFoundError: Missing or owned by someone else.
        """
        record = await self._repo.get_for_user(instance_id, user_id)
        if record is None:
            raise InstanceNotFoundError()
        return record

    async def list_instances(self, user_id: str) -> list[InstanceRecord]:
        return await self._repo.list_for_user(user_id)

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def provision_instance(self, options: ProvisionOptions) -> str:
        """Persist a CREATING instance and provision it in the background.

        The AI credential is resolved before anything is written, so a
        missing key fails the call without leaving a record behind.

        Returns:
            The new instance id. The record is CREATING when this returns.

        Raises:
            ConfigurationError: No API key for the resolved model family.
        """
        ai_model = options.ai_model or self._settings.instance.default_model
        region = options.region or self._settings.instance.default_region
        ai_provider = resolve_ai_provider(ai_model)
        api_key = get_api_key(ai_provider, self._settings.ai_keys)
        provider = self._providers.get_provider()

        record = await self._repo.create(
            user_id=options.user_id,
            name=options.name,
            provider=provider.kind,
            region=region,
            ai_model=ai_model,
            bot_token=options.bot_token,
            is_default=options.is_default,
        )
        logger.info(
            "Instance created",
            extra={
                "event": LogEvent.INSTANCE_CREATED,
                "instance_id": record.id,
                "user_id": record.user_id,
                "provider": provider.kind.value,
                "ai_provider": ai_provider.value,
            },
        )

        self._spawn(
            self._provision(
                record.id,
                provider,
                self._create_config(record, ai_provider, api_key),
            )
        )
        return record.id

    async def retry_instance(self, instance_id: str, user_id: str) -> InstanceRecord:
        """Re-run provisioning for a FAILED instance on the configured provider.

        Raises:
            InstanceNotFoundError: Instance does not exist.
            InvalidStateError: Not FAILED, or no bot token stored.
            ConfigurationError: No API key for the model family.
        """
        record = await self.get_instance(instance_id, user_id)

        if not can_transition(record.status, InstanceStatus.CREATING):
            raise InvalidStateError("Only failed instances can be retried")
        if not record.bot_token:
            raise InvalidStateError("Instance is missing bot token")

        ai_provider = resolve_ai_provider(record.ai_model)
        api_key = get_api_key(ai_provider, self._settings.ai_keys)
        provider = self._providers.get_provider()

        updated = await self._repo.transition(
            record.id,
            {InstanceStatus.FAILED},
            InstanceStatus.CREATING,
            provider=provider.kind,
            ip_address=None,
            **ProviderHandles().as_values(),
        )
        if updated is None:
            raise InvalidStateError("Instance state changed during retry operation")

        self._spawn(
            self._provision(
                updated.id,
                provider,
                self._create_config(updated, ai_provider, api_key),
            )
        )
        return updated

    def _create_config(
        self,
        record: InstanceRecord,
        ai_provider: AIProvider,
        api_key: str,
    ) -> CreateInstanceConfig:
        return CreateInstanceConfig(
            instance_id=record.id,
            name=record.name,
            user_id=record.user_id,
            ai_provider=ai_provider,
            ai_api_key=api_key,
            ai_model=record.ai_model,
            region=record.region,
            bot_token=record.bot_token,
            github_token=self._settings.ai_keys.github_token,
        )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _provision(
        self,
        instance_id: str,
        provider: InstanceProvider,
        config: CreateInstanceConfig,
    ) -> None:
        """Background provisioning (never raises).

        Flow:
        1. CAS CREATING -> PROVISIONING (stop if deleted meanwhile)
        2. Provider.create_instance
        3. CAS PROVISIONING -> RUNNING with handles and address
        4. On any error, CAS to FAILED from CREATING or PROVISIONING
        """
        bind_instance(instance_id)
        log_ctx = {"instance_id": instance_id, "provider": provider.kind.value}
        try:
            started = await self._repo.transition(
                instance_id, {InstanceStatus.CREATING}, InstanceStatus.PROVISIONING
            )
            if started is None:
                logger.info("Instance left CREATING before provisioning", extra=log_ctx)
                return
            logger.info(
                "Provisioning started",
                extra={**log_ctx, "event": LogEvent.PROVISION_STARTED},
            )

            result = await provider.create_instance(config)
            handles = provider.handles_from_result(result)

            running = await self._repo.transition(
                instance_id,
                {InstanceStatus.PROVISIONING},
                InstanceStatus.RUNNING,
                ip_address=result.ip_address,
                **handles.as_values(),
            )
            if running is None:
                await self._discard_orphan(provider, handles, log_ctx)
                return

            logger.info(
                "Provisioning succeeded",
                extra={**log_ctx, "event": LogEvent.PROVISION_SUCCESS},
            )

        except Exception as e:
            logger.exception(
                "Failed to provision instance %s: %s",
                instance_id,
                describe_error(e, "Unknown provisioning error"),
                extra={
                    **log_ctx,
                    "event": LogEvent.PROVISION_FAILED,
                    "error_class": _classify(e),
                },
            )
            try:
                await self._repo.transition(
                    instance_id, _FAILABLE_STATES, InstanceStatus.FAILED
                )
            except Exception:
                logger.exception("Failed to mark instance %s as FAILED", instance_id)
        finally:
            clear_trace_context()

    async def _discard_orphan(
        self,
        provider: InstanceProvider,
        handles: ProviderHandles,
        log_ctx: dict[str, str],
    ) -> None:
        """Tear down compute created for an instance deleted mid-provisioning."""
        logger.warning(
            "Instance deleted during provisioning, removing created compute",
            extra={**log_ctx, "event": LogEvent.PROVISION_ORPHANED},
        )
        try:
            await provider.delete_instance(handles)
        except Exception as e:
            logger.warning(
                "Orphaned compute cleanup failed: %s",
                describe_error(e, "Unknown provider error"),
                extra={**log_ctx, "event": LogEvent.PROVIDER_CLEANUP_SKIPPED},
            )

    async def wait_idle(self) -> None:
        """Wait until no background provisioning is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self._providers.close()

    # =========================================================================
    # Lifecycle actions
    # =========================================================================

    async def start_instance(self, instance_id: str, user_id: str) -> InstanceRecord:
        """STOPPED -> STARTING -> RUNNING.

        Raises:
            InvalidStateError: Not STOPPED, or provider handles missing.
            ProviderError: Provider rejected the start (status reverts).
        """
        record = await self.get_instance(instance_id, user_id)
        if not can_transition(record.status, InstanceStatus.STARTING):
            raise InvalidStateError(
                f"Cannot start instance in {record.status.value} state"
            )
        provider = self._providers.get_provider(record.provider)
        provider.require_handles(record.handles)

        return await self._run_action(
            record,
            provider.start_instance,
            InstanceStatus.STARTING,
            InstanceStatus.RUNNING,
            "start",
        )

    async def stop_instance(self, instance_id: str, user_id: str) -> InstanceRecord:
        """RUNNING -> STOPPING -> STOPPED.

        Raises:
            InvalidStateError: Not RUNNING, or provider handles missing.
            ProviderError: Provider rejected the stop (status reverts).
        """
        record = await self.get_instance(instance_id, user_id)
        if not can_transition(record.status, InstanceStatus.STOPPING):
            raise InvalidStateError(
                f"Cannot stop instance in {record.status.value} state"
            )
        provider = self._providers.get_provider(record.provider)
        provider.require_handles(record.handles)

        return await self._run_action(
            record,
            provider.stop_instance,
            InstanceStatus.STOPPING,
            InstanceStatus.STOPPED,
            "stop",
        )

    async def _run_action(
        self,
        record: InstanceRecord,
        call: Callable[[ProviderHandles], Awaitable[None]],
        transient: InstanceStatus,
        target: InstanceStatus,
        action_name: str,
    ) -> InstanceRecord:
        log_ctx = {"instance_id": record.id, "action": action_name}

        pending = await self._repo.transition(record.id, {record.status}, transient)
        if pending is None:
            raise InvalidStateError(
                f"Instance state changed during {action_name} operation"
            )

        try:
            await call(record.handles)
        except Exception as e:
            logger.warning(
                "Instance %s failed: %s",
                action_name,
                describe_error(e, f"Failed to {action_name} instance"),
                extra={
                    **log_ctx,
                    "event": LogEvent.OPERATION_FAILED,
                    "error_class": _classify(e),
                },
            )
            await self._repo.transition(record.id, {transient}, record.status)
            raise

        done = await self._repo.transition(record.id, {transient}, target)
        if done is None:
            # Deleted while the provider call was in flight
            return await self.get_instance(record.id, record.user_id)

        logger.info(
            "Instance %s -> %s",
            record.status.value,
            target.value,
            extra={**log_ctx, "event": LogEvent.STATE_CHANGED},
        )
        return done

    async def delete_instance(self, instance_id: str, user_id: str) -> InstanceRecord:
        """Tear down provider resources best-effort, then mark DELETED.

        Allowed from any state. Provider failures are logged and do not
        block the status change. Deleting a DELETED instance is a no-op.
        """
        record = await self.get_instance(instance_id, user_id)
        if record.status == InstanceStatus.DELETED:
            return record

        log_ctx = {"instance_id": record.id, "action": "delete"}
        handles = record.handles
        if handles.is_empty():
            logger.info("No provider resources to delete", extra=log_ctx)
        else:
            provider = self._providers.get_provider(record.provider)
            try:
                await provider.delete_instance(handles)
            except Exception as e:
                logger.warning(
                    "Provider teardown failed, marking deleted anyway: %s",
                    describe_error(e, "Failed to delete instance"),
                    extra={**log_ctx, "event": LogEvent.PROVIDER_CLEANUP_SKIPPED},
                )

        deleted = await self._repo.transition(
            record.id, sources_for(InstanceStatus.DELETED), InstanceStatus.DELETED
        )
        if deleted is None:
            return await self.get_instance(record.id, user_id)

        logger.info(
            "Instance %s -> DELETED",
            record.status.value,
            extra={**log_ctx, "event": LogEvent.STATE_CHANGED},
        )
        return deleted

    # =========================================================================
    # Status sync
    # =========================================================================

    def _addressable(self, record: InstanceRecord, provider: InstanceProvider) -> bool:
        try:
            provider.require_handles(record.handles)
        except InvalidStateError:
            return False
        return True

    async def _refresh(self, record: InstanceRecord) -> InstanceRecord:
        """Persist the provider-observed status. UNKNOWN is never written."""
        if record.status == InstanceStatus.DELETED:
            return record

        provider = self._providers.get_provider(record.provider)
        if not self._addressable(record, provider):
            return record

        observed = await provider.get_instance_status(record.handles)
        if observed in (InstanceStatus.UNKNOWN, record.status):
            return record

        # Observation overrides the transition table; CAS guards concurrent writes
        updated = await self._repo.transition(record.id, {record.status}, observed)
        if updated is None:
            return await self._repo.get(record.id) or record

        logger.info(
            "Synced instance %s: %s -> %s",
            record.id,
            record.status.value,
            observed.value,
            extra={"event": LogEvent.STATUS_SYNCED, "instance_id": record.id},
        )
        return updated

    async def sync_instance_status(
        self, instance_id: str, user_id: str
    ) -> InstanceRecord:
        record = await self.get_instance(instance_id, user_id)
        return await self._refresh(record)

    async def sync_all_statuses(self) -> int:
        """Refresh every active instance. Returns how many changed status."""
        changed = 0
        for record in await self._repo.list_by_status(ACTIVE_STATUSES):
            try:
                refreshed = await self._refresh(record)
            except Exception:
                logger.exception("Failed to sync instance %s", record.id)
                continue
            if refreshed.status != record.status:
                changed += 1
        return changed

    # =========================================================================
    # Command bridge
    # =========================================================================

    async def _require_running(
        self, instance_id: str, user_id: str
    ) -> tuple[InstanceRecord, InstanceProvider]:
        record = await self.get_instance(instance_id, user_id)
        if record.status != InstanceStatus.RUNNING:
            raise InvalidStateError("Instance is not running")
        provider = self._providers.get_provider(record.provider)
        provider.require_handles(record.handles)
        return record, provider

    async def send_message(
        self,
        instance_id: str,
        user_id: str,
        text: str,
        file_path: str | None = None,
    ) -> ChatResult:
        """One chat turn with the instance's agent.

        The session id is stable per user and instance, so the agent keeps
        conversation context across calls.
        """
        record, provider = await self._require_running(instance_id, user_id)
        message = f"[Attached file: {file_path}]\n\n{text}" if file_path else text
        return await provider.send_message(
            record.handles,
            f"web-{user_id}-{instance_id}",
            message,
            self._settings.bridge.chat_timeout,
        )

    async def upload_file(
        self,
        instance_id: str,
        user_id: str,
        data: bytes,
        filename: str,
    ) -> UploadResult:
        record, provider = await self._require_running(instance_id, user_id)
        return await provider.upload_file(record.handles, data, filename)


def _classify(exc: BaseException) -> ErrorClass:
    if isinstance(exc, ConfigurationError):
        return ErrorClass.CONFIGURATION
    if isinstance(exc, ProviderTimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(exc, (InvalidStateError, InstanceNotFoundError)):
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT
