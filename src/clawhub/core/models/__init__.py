"""Database models for clawhub.

Models are defined using SQLModel (SQLAlchemy + Pydantic).
"""

from datetime import UTC, datetime

from ulid import ULID

from clawhub.core.models.instance import Instance


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


__all__ = ["Instance", "generate_ulid", "utc_now"]
