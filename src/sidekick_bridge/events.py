"""Normalized domain events emitted by the bridge.

The peer's notification vocabulary is large and unstable; callers see
only these event kinds:

- thread.started   - a conversation thread exists (once per thread)
- turn.started     - the peer began working on a user message
- turn.completed   - the turn ended (status + optional error)
- item.started     - an output item began (message, command, file change...)
- item.completed   - an output item finished
- item.delta       - incremental text for an item (message, command output,
                     reasoning summary)
- approval.request - the peer wants authorization for a risky action
- error            - the peer process was lost

Every event carries the caller-facing ``session_id`` it was resolved to,
the ``turn_id`` when one applies, and a ``created_at`` timestamp.

Wire form (``to_wire``) uses camelCase keys:

    {
        "type": "item.delta",
        "sessionId": "sess_1",
        "turnId": "turn_9",
        "createdAt": "2025-01-15T10:30:00+00:00",
        "payload": {"threadId": "thr_1", "itemId": "msg_1", "kind": "agentMessage", "delta": "Hi"}
    }
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .approvals import ApprovalDecision, ApprovalKind, Delivery

UNKNOWN = "unknown"


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class EventType(str, Enum):
    """Caller-facing event kinds."""

    THREAD_STARTED = "thread.started"
    TURN_STARTED = "turn.started"
    TURN_COMPLETED = "turn.completed"
    ITEM_STARTED = "item.started"
    ITEM_COMPLETED = "item.completed"
    ITEM_DELTA = "item.delta"
    APPROVAL_REQUEST = "approval.request"
    ERROR = "error"


class DeltaKind(str, Enum):
    """What an item.delta fragment belongs to."""

    AGENT_MESSAGE = "agentMessage"
    COMMAND_OUTPUT = "commandOutput"
    REASONING_SUMMARY = "reasoningSummary"


class BridgeModel(BaseModel):
    """Base model with camelCase aliases for the wire form."""

    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=to_camel,
    )


class ApprovalRequest(BridgeModel):
    """Normalized approval record carried by approval.request."""

    id: str
    session_id: str
    turn_id: str
    kind: ApprovalKind
    title: str
    risk_level: str = "med"
    details: dict[str, Any] = Field(default_factory=dict)
    status: str = "pending"
    created_at: str = Field(default_factory=utc_now)
    codex_approval_id: str | None = None


# =============================================================================
# Event variants
# =============================================================================

_ENVELOPE_KEYS = ("type", "sessionId", "turnId", "createdAt")


class BridgeEvent(BridgeModel):
    """Fields shared by every domain event."""

    type: EventType
    session_id: str
    turn_id: str | None = None
    created_at: str = Field(default_factory=utc_now)

    def to_wire(self) -> dict[str, Any]:
        """Serialize as ``{type, sessionId, turnId, createdAt, payload}``."""
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        envelope = {key: data.pop(key) for key in _ENVELOPE_KEYS if key in data}
        envelope["payload"] = data
        return envelope


class ThreadStartedEvent(BridgeEvent):
    type: Literal[EventType.THREAD_STARTED] = EventType.THREAD_STARTED
    thread_id: str


class TurnStartedEvent(BridgeEvent):
    type: Literal[EventType.TURN_STARTED] = EventType.TURN_STARTED
    turn_id: str
    thread_id: str


class TurnCompletedEvent(BridgeEvent):
    type: Literal[EventType.TURN_COMPLETED] = EventType.TURN_COMPLETED
    turn_id: str
    thread_id: str
    status: str | None = None
    error: Any | None = None


class ItemStartedEvent(BridgeEvent):
    type: Literal[EventType.ITEM_STARTED] = EventType.ITEM_STARTED
    turn_id: str
    thread_id: str
    item: dict[str, Any]


class ItemCompletedEvent(BridgeEvent):
    type: Literal[EventType.ITEM_COMPLETED] = EventType.ITEM_COMPLETED
    turn_id: str
    thread_id: str
    item: dict[str, Any]


class ItemDeltaEvent(BridgeEvent):
    type: Literal[EventType.ITEM_DELTA] = EventType.ITEM_DELTA
    turn_id: str
    thread_id: str
    kind: DeltaKind
    delta: str
    item_id: str | None = None
    summary_index: int | None = None


class ApprovalRequestEvent(BridgeEvent):
    """An approval awaiting a caller decision.

    ``respond`` is set for request-backed approvals. Calling it answers the
    peer through the bridge's ticket, so it is safe to call more than once
    and safe to mix with ``AgentBridge.respond_approval``.
    """

    type: Literal[EventType.APPROVAL_REQUEST] = EventType.APPROVAL_REQUEST
    turn_id: str
    approval: ApprovalRequest
    respond: Callable[[ApprovalDecision | str], Delivery] | None = Field(
        default=None, exclude=True, repr=False
    )

    def to_wire(self) -> dict[str, Any]:
        envelope = super().to_wire()
        envelope["payload"] = envelope["payload"].get("approval", {})
        return envelope


class ErrorEvent(BridgeEvent):
    type: Literal[EventType.ERROR] = EventType.ERROR
    turn_id: str = UNKNOWN
    message: str
    recoverable: bool = False


DomainEvent = (
    ThreadStartedEvent
    | TurnStartedEvent
    | TurnCompletedEvent
    | ItemStartedEvent
    | ItemCompletedEvent
    | ItemDeltaEvent
    | ApprovalRequestEvent
    | ErrorEvent
)

EventListener = Callable[[BridgeEvent], None]
