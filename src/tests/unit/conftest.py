"""Shared fixtures for unit tests."""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from clawhub.app.config import (
    AIKeysConfig,
    BridgeConfig,
    DockerConfig,
    FlyConfig,
    ProviderConfig,
    Settings,
    SyncConfig,
    VaultConfig,
)
from clawhub.core.vault import CredentialVault
from clawhub.services.instance_repository import InstanceRepository

TEST_ENCRYPTION_KEY = "0f" * 32


@pytest.fixture
def settings() -> Settings:
    """Settings with every external value pinned (no env leakage)."""
    return Settings(
        instance=ProviderConfig(
            provider="fly",
            default_model="gemini-2.0-flash",
            default_region="lax",
            image="registry.test/openclaw:1",
        ),
        fly=FlyConfig(
            api_token="fly-test-token",
            api_base="https://fly.test/v1",
            org_slug="test-org",
            exec_arg_limit=8192,
        ),
        docker=DockerConfig(binary="docker", gateway_port=18789, command_timeout=5.0),
        ai_keys=AIKeysConfig(
            openai_key="sk-openai-test",
            anthropic_api_key="sk-ant-test",
            gemini_api_key="gemini-test-key",
            github_token=None,
        ),
        vault=VaultConfig(encryption_key=TEST_ENCRYPTION_KEY),
        bridge=BridgeConfig(chat_timeout=60, grace_period=5.0),
        sync=SyncConfig(enabled=False),
    )


@pytest.fixture(scope="session")
def vault() -> CredentialVault:
    """Scrypt is slow; derive the key once per session."""
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """SQLite database with the instances table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'clawhub.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def repository(
    session_factory: async_sessionmaker[AsyncSession], vault: CredentialVault
) -> InstanceRepository:
    return InstanceRepository(session_factory, vault)
