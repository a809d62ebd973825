"""Instance persistence with transparent bot token encryption.

Every path that accepts or returns an instance goes through this class:

    get / get_for_user      decrypt on read
    list_for_user           decrypt on read
    list_by_status          decrypt on read
    create                  encrypt on write
    update / transition     encrypt on write, decrypt on read
    upsert                  encrypt on write, decrypt on read

Callers only ever see InstanceRecord, a detached copy holding plaintext.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import col, select

from clawhub.core.domain import InstanceStatus, ProviderKind
from clawhub.core.interfaces import ProviderHandles
from clawhub.core.models import Instance, generate_ulid, utc_now
from clawhub.core.vault import CredentialVault

logger = logging.getLogger(__name__)

SECRET_FIELD = "bot_token"

_UPDATABLE_FIELDS = frozenset(Instance.model_fields) - {"id", "user_id", "created_at"}


class InstanceRecord(BaseModel):
    """Detached instance snapshot with the bot token in plaintext."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str
    provider: ProviderKind
    region: str
    ai_model: str
    bot_token: str | None = None
    fly_app_name: str | None = None
    fly_machine_id: str | None = None
    docker_container_id: str | None = None
    docker_port: int | None = None
    status: InstanceStatus
    ip_address: str | None = None
    is_default: bool = False
    created_at: datetime
    updated_at: datetime

    @property
    def handles(self) -> ProviderHandles:
        return ProviderHandles(
            fly_app_name=self.fly_app_name,
            fly_machine_id=self.fly_machine_id,
            docker_container_id=self.docker_container_id,
            docker_port=self.docker_port,
        )


class InstanceRepository:
    """Instance CRUD over short-lived sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
    ) -> None:
        self._session_factory = session_factory
        self._vault = vault

    # =========================================================================
    # Vault boundary
    # =========================================================================

    def _seal(self, values: dict[str, Any]) -> dict[str, Any]:
        unknown = set(values) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown instance fields: {', '.join(sorted(unknown))}")
        if values.get(SECRET_FIELD):
            values = {**values, SECRET_FIELD: self._vault.encrypt(values[SECRET_FIELD])}
        return values

    def _open(self, row: Instance) -> InstanceRecord:
        data = {name: getattr(row, name) for name in InstanceRecord.model_fields}
        if data.get(SECRET_FIELD):
            data[SECRET_FIELD] = self._vault.decrypt(data[SECRET_FIELD])
        return InstanceRecord.model_validate(data)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, instance_id: str) -> InstanceRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Instance, instance_id)
            return self._open(row) if row else None

    async def get_for_user(self, instance_id: str, user_id: str) -> InstanceRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Instance).where(
                    col(Instance.id) == instance_id,
                    col(Instance.user_id) == user_id,
                )
            )
            row = result.scalar_one_or_none()
            return self._open(row) if row else None

    async def list_for_user(
        self,
        user_id: str,
        include_deleted: bool = False,
    ) -> list[InstanceRecord]:
        stmt = select(Instance).where(col(Instance.user_id) == user_id)
        if not include_deleted:
            stmt = stmt.where(col(Instance.status) != InstanceStatus.DELETED.value)
        stmt = stmt.order_by(col(Instance.created_at).desc())

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._open(row) for row in result.scalars().all()]

    async def list_by_status(
        self,
        statuses: Iterable[InstanceStatus],
    ) -> list[InstanceRecord]:
        stmt = select(Instance).where(
            col(Instance.status).in_([s.value for s in statuses])
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._open(row) for row in result.scalars().all()]

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(
        self,
        *,
        user_id: str,
        name: str,
        provider: ProviderKind,
        region: str,
        ai_model: str,
        bot_token: str | None = None,
        is_default: bool = False,
        instance_id: str | None = None,
    ) -> InstanceRecord:
        """Insert a new instance in CREATING."""
        values = self._seal({SECRET_FIELD: bot_token}) if bot_token else {}
        now = utc_now()
        row = Instance(
            id=instance_id or generate_ulid(),
            user_id=user_id,
            name=name,
            provider=provider,
            region=region,
            ai_model=ai_model,
            bot_token=values.get(SECRET_FIELD),
            status=InstanceStatus.CREATING,
            is_default=is_default,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return self._open(row)

    async def update(self, instance_id: str, **values: Any) -> InstanceRecord | None:
        """Unconditional update. Returns None if the instance does not exist."""
        sealed = self._seal(values)
        async with self._session_factory() as session:
            await session.execute(
                update(Instance)
                .where(col(Instance.id) == instance_id)
                .values(**sealed, updated_at=utc_now())
            )
            await session.commit()
            row = await session.get(Instance, instance_id, populate_existing=True)
            return self._open(row) if row else None

    async def transition(
        self,
        instance_id: str,
        from_states: Iterable[InstanceStatus],
        to_state: InstanceStatus,
        **values: Any,
    ) -> InstanceRecord | None:
        """Compare-and-swap status update.

        Applies to_state (and values) only if the current status is in
        from_states. Returns None when the status had already moved on.
        """
        sealed = self._seal(values)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Instance)
                .where(
                    col(Instance.id) == instance_id,
                    col(Instance.status).in_([s.value for s in from_states]),
                )
                .values(**sealed, status=to_state.value, updated_at=utc_now())
            )
            if result.rowcount == 0:  # type: ignore[attr-defined]
                await session.rollback()
                return None

            await session.commit()
            row = await session.get(Instance, instance_id, populate_existing=True)
            return self._open(row) if row else None

    async def upsert(
        self,
        instance_id: str,
        *,
        create_values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> InstanceRecord:
        """Update instance_id with update_values, or create it from create_values."""
        existing = await self.get(instance_id)
        if existing is not None:
            record = await self.update(instance_id, **update_values)
            if record is not None:
                return record
        return await self.create(instance_id=instance_id, **create_values)
