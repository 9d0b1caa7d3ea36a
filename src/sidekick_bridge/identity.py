"""Identity extraction from loosely shaped peer payloads.

The peer is inconsistent about where it puts thread, turn, command and
approval identifiers (camelCase vs snake_case, flat vs nested under
``thread``/``turn``/``item``). Each resolver walks a fixed list of
candidate paths and returns the first truthy value. The order matters:
changing it can attribute events to the wrong session.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Any

THREAD_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("threadId",),
    ("thread_id",),
    ("thread", "id"),
    ("conversationId",),
    ("item", "threadId"),
    ("item", "thread_id"),
)

TURN_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("turnId",),
    ("turn_id",),
    ("turn", "id"),
    ("item", "turnId"),
    ("item", "turn_id"),
)

COMMAND_PATHS: tuple[tuple[str, ...], ...] = (
    ("command",),
    ("parsedCmd", "cmd"),
    ("parsed_cmd",),
    ("item", "command"),
    ("item", "parsedCmd", "cmd"),
    ("item", "parsed_cmd"),
)

APPROVAL_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("approvalId",),
    ("approval_id",),
    ("requestId",),
    ("request_id",),
    ("id",),
)

_BASE64_PATTERN = re.compile(r"[A-Za-z0-9+/]+={0,2}")


def dig(payload: Any, path: tuple[str, ...]) -> Any:
    """Follow ``path`` through nested dicts, returning None on any miss."""
    value = payload
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def first_truthy(payload: Any, paths: tuple[tuple[str, ...], ...]) -> Any:
    for path in paths:
        value = dig(payload, path)
        if value:
            return value
    return None


def first_present(*values: Any) -> Any:
    """Return the first value that is not None (0 and "" count as present)."""
    for value in values:
        if value is not None:
            return value
    return None


def resolve_thread_id(params: Any) -> str | None:
    value = first_truthy(params, THREAD_ID_PATHS)
    return None if value is None else str(value)


def resolve_turn_id(params: Any) -> str | None:
    value = first_truthy(params, TURN_ID_PATHS)
    return None if value is None else str(value)


def extract_approval_id(params: Any) -> str | None:
    value = first_truthy(params, APPROVAL_ID_PATHS)
    return None if value is None else str(value)


def normalize_command(command: Any) -> str | None:
    """Render a command given as a string or an argv list."""
    if not command:
        return None
    if isinstance(command, list):
        return " ".join(str(part) for part in command)
    if isinstance(command, str):
        return command
    return None


def extract_command(params: Any) -> str | None:
    return normalize_command(first_truthy(params, COMMAND_PATHS))


def decode_chunk(chunk: str) -> str:
    """Decode a streamed output chunk.

    Chunks that look like strict base64 (alphabet match and a length that
    is a multiple of four) are decoded to UTF-8 text, replacing invalid
    bytes. Everything else passes through unchanged.
    """
    if not chunk:
        return ""
    if len(chunk) % 4 == 0 and _BASE64_PATTERN.fullmatch(chunk):
        try:
            return base64.b64decode(chunk, validate=True).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            return chunk
    return chunk
