"""Instance model.

Note: bot_token holds ciphertext when the vault is enabled. Read and write
instances through InstanceRepository, which applies the vault on every path.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, String, Text
from sqlmodel import Field, SQLModel

from clawhub.core.domain import InstanceStatus, ProviderKind


class Instance(SQLModel, table=True):
    """One logical agent instance and its compute-unit handles."""

    __tablename__ = "instances"

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)

    name: str = Field(max_length=255)
    provider: ProviderKind = Field(default=ProviderKind.FLY, sa_type=String)
    region: str = Field(default="lax", max_length=32)
    ai_model: str = Field(max_length=128)
    bot_token: str | None = Field(default=None, sa_column=Column(Text))

    # Fly.io handles
    fly_app_name: str | None = Field(default=None, max_length=255)
    fly_machine_id: str | None = Field(default=None, max_length=255)
    # Docker handles
    docker_container_id: str | None = Field(default=None, max_length=128)
    docker_port: int | None = None

    status: InstanceStatus = Field(default=InstanceStatus.CREATING, sa_type=String)
    ip_address: str | None = Field(default=None, max_length=255)
    is_default: bool = Field(default=False)

    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

    __table_args__ = (
        # Status sync polling
        Index("idx_instances_status", "status"),
        Index("idx_instances_user_status", "user_id", "status"),
    )
