"""Docker CLI runner.

Every call passes an explicit argument vector to the docker binary; nothing
goes through a shell, so user-supplied values cannot inject commands.
"""

import asyncio
import logging
from dataclasses import dataclass

from clawhub.app.config import DockerConfig
from clawhub.core.errors import DockerCommandError, ProviderTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    returncode: int


class DockerCLI:
    """Async runner for `docker <args>`."""

    def __init__(self, config: DockerConfig) -> None:
        self._binary = config.binary
        self._timeout = config.command_timeout

    async def run(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run docker with args and capture output.

        Args:
            args: Arguments after the docker binary.
            timeout: Hard deadline in seconds (default: DOCKER_COMMAND_TIMEOUT).
            check: Raise DockerCommandError on non-zero exit.

        Raises:
            DockerCommandError: Binary missing, or non-zero exit with check=True.
            ProviderTimeoutError: Deadline exceeded; the process is killed.
        """
        deadline = timeout if timeout is not None else self._timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DockerCommandError(str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=deadline)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ProviderTimeoutError(
                f"Docker command timed out after {deadline:g}s: {args[0] if args else ''}"
            ) from e

        result = CommandResult(
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
            returncode=proc.returncode if proc.returncode is not None else -1,
        )

        if check and result.returncode != 0:
            raise DockerCommandError(result.stderr or f"exit status {result.returncode}")
        return result
