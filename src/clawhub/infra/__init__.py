"""Infrastructure: database, Fly.io Machines API and Docker CLI."""

from clawhub.infra.docker_cli import CommandResult, DockerCLI
from clawhub.infra.fly import FlyMachinesClient
from clawhub.infra.postgresql import (
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)

__all__ = [
    "CommandResult",
    "DockerCLI",
    "FlyMachinesClient",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
