"""Process wiring for the instance orchestrator.

The route layer (not part of this package) enters `lifespan()` once at
startup and uses the yielded orchestrator for every request:

    async with lifespan() as orchestrator:
        instance_id = await orchestrator.provision_instance(options)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from clawhub.adapters.provider import ProviderRegistry
from clawhub.app.config import Settings, get_settings
from clawhub.app.logging import setup_logging
from clawhub.core.logging_schema import LogEvent
from clawhub.core.vault import CredentialVault
from clawhub.infra import close_db, get_session_factory, init_db
from clawhub.services import InstanceOrchestrator, InstanceRepository

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> InstanceOrchestrator:
    """Assemble orchestrator dependencies. Requires init_db() first."""
    vault = CredentialVault(settings.vault.encryption_key, settings.vault.salt)
    if not vault.enabled:
        logger.warning("ENCRYPTION_KEY not set, bot tokens are stored unencrypted")

    repository = InstanceRepository(get_session_factory(), vault)
    return InstanceOrchestrator(repository, ProviderRegistry(settings), settings)


async def _sync_loop(orchestrator: InstanceOrchestrator, interval: float) -> None:
    """Refresh active instance statuses from their providers periodically."""
    while True:
        await asyncio.sleep(interval)
        try:
            changed = await orchestrator.sync_all_statuses()
            if changed:
                logger.info(
                    "Status sync updated %d instance(s)",
                    changed,
                    extra={"event": LogEvent.STATUS_SYNCED},
                )
        except Exception:
            logger.exception("Status sync failed")


@asynccontextmanager
async def lifespan(
    settings: Settings | None = None,
    create_tables: bool = False,
) -> AsyncIterator[InstanceOrchestrator]:
    settings = settings or get_settings()
    setup_logging()

    await init_db(settings.database.url, create_tables=create_tables)
    orchestrator = build_orchestrator(settings)

    logger.info("Starting orchestrator", extra={"event": LogEvent.APP_STARTED})

    sync_task: asyncio.Task | None = None
    if settings.sync.enabled:
        sync_task = asyncio.create_task(
            _sync_loop(orchestrator, settings.sync.interval)
        )

    try:
        yield orchestrator
    finally:
        logger.info("Shutting down orchestrator", extra={"event": LogEvent.APP_STOPPED})
        if sync_task is not None:
            sync_task.cancel()
            try:
                await sync_task
            except asyncio.CancelledError:
                pass

        await orchestrator.wait_idle()
        await orchestrator.close()
        await close_db()
