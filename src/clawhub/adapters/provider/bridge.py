"""Command bridge: agent chat turns and file uploads over a provider's exec.

Providers own the transport (Machines exec API, docker exec/cp); this module
owns the command vectors and the output contract so both behave the same.

Chat output contract:
    The agent CLI prints a JSON object with a "payloads" list on stdout.
    Diagnostic text on stderr does not fail the turn as long as that payload
    is present on stdout.

Upload over exec:
    Bytes are base64-encoded and appended to a staging file in chunks no
    larger than a fraction of the transport's argument limit, then decoded
    in place. Content travels only as argv entries, never inside a shell
    string.
"""

import base64
import json
import logging
import re
from pathlib import PurePosixPath
from uuid import uuid4

from clawhub.core.errors import ProviderError
from clawhub.core.interfaces import ChatResult, ExecOutput
from clawhub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

AGENT_ENTRYPOINT = ["node", "openclaw.mjs"]
PAYLOAD_MARKER = '"payloads"'
FALLBACK_RESPONSE = "No response from agent"

_SUFFIX_RE = re.compile(r"^\.[a-z0-9]{1,16}$")


# =============================================================================
# Chat
# =============================================================================


def build_agent_command(session_id: str, message: str, timeout: int) -> list[str]:
    """Argument vector for one agent turn with JSON output."""
    return [
        *AGENT_ENTRYPOINT,
        "agent",
        "--session-id",
        session_id,
        "--message",
        message,
        "--timeout",
        str(timeout),
        "--json",
    ]


def _extract_payload(stdout: str) -> dict | None:
    """Find the first JSON object on stdout that carries payloads."""
    decoder = json.JSONDecoder()
    idx = stdout.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(stdout, idx)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            if "payloads" in obj:
                return obj
            nested = obj.get("result")
            if isinstance(nested, dict) and "payloads" in nested:
                return nested
        idx = stdout.find("{", idx + 1)
    return None


def parse_agent_output(output: ExecOutput, provider_label: str) -> ChatResult:
    """Turn captured agent output into a ChatResult.

    Raises:
        ProviderError: No payload on stdout. Carries the provider's error text.
    """
    payload = _extract_payload(output.stdout) if PAYLOAD_MARKER in output.stdout else None

    if payload is None:
        detail = output.stderr or output.stdout or f"exit status {output.exit_code}"
        raise ProviderError(f"{provider_label} exec failed: {detail}")

    if output.stderr or output.exit_code != 0:
        logger.info(
            "Agent wrote diagnostics alongside a valid payload",
            extra={
                "event": LogEvent.EXEC_STDERR_IGNORED,
                "exit_code": output.exit_code,
                "stderr": output.stderr[:500],
            },
        )

    texts = [
        item["text"]
        for item in payload.get("payloads") or []
        if isinstance(item, dict) and item.get("text")
    ]
    if not texts:
        return ChatResult(response=FALLBACK_RESPONSE)
    return ChatResult(response="\n\n".join(texts))


# =============================================================================
# Upload
# =============================================================================


def upload_path(filename: str, upload_dir: str) -> str:
    """Collision-resistant target path that keeps the original extension."""
    suffix = PurePosixPath(filename).suffix.lower()
    if not _SUFFIX_RE.match(suffix):
        suffix = ""
    return f"{upload_dir.rstrip('/')}/{uuid4().hex}{suffix}"


def chunk_size_for(arg_limit: int, fraction: float) -> int:
    """Largest base64 chunk (multiple of 4) within fraction of arg_limit."""
    size = int(arg_limit * fraction) // 4 * 4
    return max(size, 4)


def encode_chunks(data: bytes, chunk_size: int) -> list[str]:
    """Base64-encode data and split it into sequential chunks.

    Empty data yields one empty chunk so the staging file still gets created.
    """
    encoded = base64.b64encode(data).decode("ascii")
    chunks = [encoded[i : i + chunk_size] for i in range(0, len(encoded), chunk_size)]
    return chunks or [""]


def mkdir_command(directory: str) -> list[str]:
    return ["mkdir", "-p", directory]


def append_command(chunk: str, staging_path: str) -> list[str]:
    """Append one chunk to the staging file; chunk and path are positional args."""
    return ["sh", "-c", 'printf %s "$1" >> "$2"', "sh", chunk, staging_path]


def decode_command(staging_path: str, target_path: str) -> list[str]:
    """Decode the staging file into target and remove the staging file."""
    return [
        "sh",
        "-c",
        'base64 -d "$1" > "$2" && rm -f "$1"',
        "sh",
        staging_path,
        target_path,
    ]
