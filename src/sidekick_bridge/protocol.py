"""Wire format for the peer's line-delimited JSON-RPC dialect.

The peer speaks JSON-RPC without the ``jsonrpc`` version field:

    call:          {"method": "thread/start", "id": 2, "params": {...}}
    notification:  {"method": "initialized"}
    response:      {"id": 2, "result": {...}}
    error:         {"id": 2, "error": {"code": -32000, "message": "..."}}

One JSON value per line, UTF-8, newline terminated.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

# Outbound methods
INITIALIZE = "initialize"
INITIALIZED = "initialized"
THREAD_START = "thread/start"
TURN_START = "turn/start"
TURN_CANCEL = "turn/cancel"
APPROVAL_RESPOND = "approval/respond"

# Inbound notifications
THREAD_STARTED = "thread/started"
TURN_STARTED = "turn/started"
TURN_COMPLETED = "turn/completed"
ITEM_STARTED = "item/started"
ITEM_COMPLETED = "item/completed"
AGENT_MESSAGE_DELTA = "item/agentMessage/delta"
COMMAND_OUTPUT_DELTA = "item/commandExecution/outputDelta"
REASONING_SUMMARY_DELTA = "item/reasoning/summaryTextDelta"
COMMAND_APPROVAL = "item/commandExecution/requestApproval"
FILE_CHANGE_APPROVAL = "item/fileChange/requestApproval"

# Low-level execution events share this prefix
LOW_LEVEL_PREFIX = "codex/event/"
EXEC_COMMAND_BEGIN = "codex/event/exec_command_begin"
EXEC_COMMAND_OUTPUT_DELTA = "codex/event/exec_command_output_delta"
EXEC_COMMAND_END = "codex/event/exec_command_end"
AGENT_MESSAGE_CONTENT_DELTA_EVENT = "codex/event/agent_message_content_delta"
AGENT_MESSAGE_DELTA_EVENT = "codex/event/agent_message_delta"

APPROVAL_MARKER = "requestApproval"


class JsonRpcErrorCode:
    """Error codes the bridge sends back to the peer."""

    UNHANDLED_REQUEST = -32000


class MessageKind(str, Enum):
    """Classification of an inbound message."""

    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    INVALID = "invalid"


def classify(message: dict[str, Any]) -> MessageKind:
    """Classify a decoded message.

    A key that is present counts, even when its value is null: a peer
    request carrying ``"id": null`` must still be answered.
    """
    method = message.get("method")
    has_method = isinstance(method, str) and bool(method)
    has_id = "id" in message
    if has_method and has_id:
        return MessageKind.REQUEST
    if has_id:
        return MessageKind.RESPONSE
    if has_method:
        return MessageKind.NOTIFICATION
    return MessageKind.INVALID


def is_approval_method(method: str) -> bool:
    return APPROVAL_MARKER in method


def decode_line(line: str) -> dict[str, Any] | None:
    """Decode one inbound line, returning None for anything but a JSON object."""
    try:
        value = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def encode_message(message: dict[str, Any]) -> str:
    """Serialize a message as a single line (without the trailing newline)."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


def make_request(method: str, request_id: int, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"method": method, "id": request_id}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result_response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"id": request_id, "result": result}


def make_error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"id": request_id, "error": {"code": code, "message": message}}


def drop_none(params: dict[str, Any]) -> dict[str, Any]:
    """Remove keys whose value is None so they are omitted on the wire."""
    return {key: value for key, value in params.items() if value is not None}
