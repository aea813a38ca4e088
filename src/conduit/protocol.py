"""ACP method names the SDK tables lack, and the stdio buffer limit for the agent pipes."""

from __future__ import annotations

import os

from acp import AGENT_METHODS, CLIENT_METHODS, PROTOCOL_VERSION

__all__ = [
    "AGENT_METHODS",
    "CLIENT_METHODS",
    "PROTOCOL_VERSION",
    "SESSION_SET_MODEL",
    "STDIO_BUFFER_LIMIT_BYTES",
]

# unstable; agents that advertise ``models`` in their session state accept it
SESSION_SET_MODEL = "session/set_model"

DEFAULT_STDIO_BUFFER_LIMIT_BYTES = 50 * 1024 * 1024
_MIN_STDIO_BUFFER_LIMIT_BYTES = 64 * 1024


def _parse_stdio_buffer_limit(raw_value: str | None) -> int:
    if raw_value is None:
        return DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    try:
        parsed = int(raw_value)
    except ValueError:
        return DEFAULT_STDIO_BUFFER_LIMIT_BYTES
    return max(parsed, _MIN_STDIO_BUFFER_LIMIT_BYTES)


STDIO_BUFFER_LIMIT_BYTES = _parse_stdio_buffer_limit(os.getenv("CONDUIT_STDIO_BUFFER_LIMIT_BYTES"))
