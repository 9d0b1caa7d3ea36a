"""Peer notification to domain event normalization.

Event Mapping:
- thread/started                       -> thread.started (deduplicated, deferred
                                          until the thread is registered locally)
- turn/started                         -> turn.started
- turn/completed                       -> turn.completed
- item/started, item/completed         -> item.started, item.completed
- item/agentMessage/delta              -> item.delta (agentMessage)
- item/commandExecution/outputDelta    -> item.delta (commandOutput)
- item/reasoning/summaryTextDelta      -> item.delta (reasoningSummary)
- item/*/requestApproval               -> approval.request
- codex/event/exec_command_begin       -> item.started (synthetic commandExecution)
- codex/event/exec_command_output_delta-> item.delta (commandOutput, base64 aware)
- codex/event/exec_command_end         -> item.completed
- codex/event/agent_message*_delta     -> item.delta (agentMessage)

The normalizer owns all identity bookkeeping (thread contexts, the
turn->thread index, streaming buffers, command execution contexts) but
performs no I/O: each call maps one peer message to at most one event.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from . import protocol
from .approvals import approval_kind_for, approval_title
from .events import (
    UNKNOWN,
    ApprovalRequest,
    ApprovalRequestEvent,
    BridgeEvent,
    DeltaKind,
    ItemCompletedEvent,
    ItemDeltaEvent,
    ItemStartedEvent,
    ThreadStartedEvent,
    TurnCompletedEvent,
    TurnStartedEvent,
    utc_now,
)
from .identity import (
    decode_chunk,
    extract_approval_id,
    extract_command,
    first_present,
    normalize_command,
    resolve_thread_id,
    resolve_turn_id,
)

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any], str], BridgeEvent | None]
LowLevelHandler = Callable[[dict[str, Any], str | None, str | None, str], BridgeEvent | None]


@dataclass(frozen=True)
class ThreadContext:
    """Caller-facing identity of a thread. Never mutated after creation."""

    session_id: str
    working_directory: str | None = None


@dataclass
class CommandExecution:
    """Attribution captured at exec_command_begin for later output/end events."""

    thread_id: str | None
    turn_id: str | None
    command: str | None = None
    cwd: str | None = None


class EventNormalizer:
    """Maps peer notifications and approval requests to domain events."""

    def __init__(self, next_id: Callable[[], int] | None = None) -> None:
        self._next_id = next_id or _counter()

        self._threads: dict[str, ThreadContext] = {}
        self._turn_to_thread: dict[str, str] = {}
        self._deferred_threads: set[str] = set()
        self._seen_threads: set[str] = set()
        self._message_buffers: dict[str, str] = {}
        self._executions: dict[str, CommandExecution] = {}

        self._handlers: dict[str, Handler] = {
            protocol.THREAD_STARTED: self._handle_thread_started,
            protocol.TURN_STARTED: self._handle_turn_started,
            protocol.TURN_COMPLETED: self._handle_turn_completed,
            protocol.ITEM_STARTED: self._handle_item,
            protocol.ITEM_COMPLETED: self._handle_item,
            protocol.AGENT_MESSAGE_DELTA: self._handle_agent_message_delta,
            protocol.COMMAND_OUTPUT_DELTA: self._handle_command_output_delta,
            protocol.REASONING_SUMMARY_DELTA: self._handle_reasoning_summary_delta,
            protocol.COMMAND_APPROVAL: self._handle_approval_notification,
            protocol.FILE_CHANGE_APPROVAL: self._handle_approval_notification,
        }
        self._low_level_handlers: dict[str, LowLevelHandler] = {
            protocol.EXEC_COMMAND_BEGIN: self._handle_exec_begin,
            protocol.EXEC_COMMAND_OUTPUT_DELTA: self._handle_exec_output,
            protocol.EXEC_COMMAND_END: self._handle_exec_end,
            protocol.AGENT_MESSAGE_CONTENT_DELTA_EVENT: self._handle_low_level_message_delta,
            protocol.AGENT_MESSAGE_DELTA_EVENT: self._handle_low_level_message_delta,
        }

    # =========================================================================
    # Identity bookkeeping
    # =========================================================================

    def register_thread(
        self,
        thread_id: str,
        session_id: str,
        working_directory: str | None = None,
    ) -> ThreadStartedEvent | None:
        """Record a locally created thread.

        Flushes a thread/started notification that raced ahead of the local
        mapping. Returns the thread.started event unless it was already emitted.
        """
        self._threads.setdefault(thread_id, ThreadContext(session_id, working_directory))
        if thread_id in self._deferred_threads:
            self._deferred_threads.discard(thread_id)
            logger.debug(f"Flushing deferred thread/started for {thread_id}")
        return self._thread_started(thread_id)

    def record_turn(self, turn_id: str, thread_id: str) -> None:
        self._turn_to_thread[turn_id] = thread_id

    def thread_context(self, thread_id: str) -> ThreadContext | None:
        return self._threads.get(thread_id)

    def thread_for_turn(self, turn_id: str) -> str | None:
        return self._turn_to_thread.get(turn_id)

    def buffered_text(self, item_id: str) -> str | None:
        """Text accumulated so far for an in-progress agent message."""
        return self._message_buffers.get(item_id)

    def resolve_session_id(self, thread_id: str | None = None, turn_id: str | None = None) -> str:
        """Resolve the caller-facing session id.

        Precedence: known thread's session, session of the thread owning a
        known turn (or that thread id), raw thread id, raw turn id, "unknown".
        """
        if thread_id and thread_id in self._threads:
            return self._threads[thread_id].session_id
        if turn_id and turn_id in self._turn_to_thread:
            owner = self._turn_to_thread[turn_id]
            if owner in self._threads:
                return self._threads[owner].session_id
            return owner or turn_id
        return thread_id or turn_id or UNKNOWN

    # =========================================================================
    # Entry points
    # =========================================================================

    def normalize_notification(self, method: str, params: Any) -> BridgeEvent | None:
        """Map one notification to a domain event, or None to drop it."""
        if not isinstance(params, dict):
            params = {}
        now = utc_now()

        if method.startswith(protocol.LOW_LEVEL_PREFIX):
            return self._handle_low_level(method, params, now)

        handler = self._handlers.get(method)
        if handler is None:
            logger.debug(f"Unmapped notification: {method}")
            return None
        return handler(method, params, now)

    def approval_event(
        self,
        method: str,
        params: Any,
        request_id: Any | None = None,
    ) -> ApprovalRequestEvent:
        """Build the approval.request event for a request or notification."""
        if not isinstance(params, dict):
            params = {}

        thread_id = resolve_thread_id(params)
        raw_turn_id = resolve_turn_id(params)
        session_id = self.resolve_session_id(thread_id, raw_turn_id)
        turn_id = raw_turn_id or UNKNOWN

        if request_id is not None:
            approval_id = str(request_id)
        else:
            approval_id = extract_approval_id(params) or self._generated_approval_id()

        kind = approval_kind_for(method)
        details: dict[str, Any] = {"method": method, "params": params}
        command = extract_command(params)
        if command:
            details["command"] = command

        approval = ApprovalRequest(
            id=approval_id,
            session_id=session_id,
            turn_id=turn_id,
            kind=kind,
            title=approval_title(kind),
            details=details,
            codex_approval_id=approval_id,
        )
        return ApprovalRequestEvent(
            session_id=session_id,
            turn_id=turn_id,
            created_at=approval.created_at,
            approval=approval,
        )

    # =========================================================================
    # Thread / turn handlers
    # =========================================================================

    def _thread_started(self, thread_id: str) -> ThreadStartedEvent | None:
        if thread_id in self._seen_threads:
            return None
        self._seen_threads.add(thread_id)
        return ThreadStartedEvent(
            session_id=self.resolve_session_id(thread_id),
            thread_id=thread_id,
        )

    def _handle_thread_started(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        thread_id = resolve_thread_id(params)
        if not thread_id:
            return None
        if thread_id not in self._threads:
            self._deferred_threads.add(thread_id)
            return None
        return self._thread_started(thread_id)

    def _handle_turn_started(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        thread_id = resolve_thread_id(params)
        turn_id = resolve_turn_id(params)
        if not thread_id or not turn_id:
            return None

        self._turn_to_thread[turn_id] = thread_id
        return TurnStartedEvent(
            session_id=self.resolve_session_id(thread_id, turn_id),
            turn_id=turn_id,
            thread_id=thread_id,
            created_at=now,
        )

    def _handle_turn_completed(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        thread_id = resolve_thread_id(params)
        turn_id = resolve_turn_id(params)
        if not thread_id or not turn_id:
            return None

        turn = params.get("turn") if isinstance(params.get("turn"), dict) else {}
        return TurnCompletedEvent(
            session_id=self.resolve_session_id(thread_id, turn_id),
            turn_id=turn_id,
            thread_id=thread_id,
            status=turn.get("status"),
            error=turn.get("error") or None,
            created_at=now,
        )

    # =========================================================================
    # Item handlers
    # =========================================================================

    def _handle_item(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        thread_id = resolve_thread_id(params)
        turn_id = resolve_turn_id(params)
        item = params.get("item")
        if not thread_id or not turn_id or not isinstance(item, dict):
            return None

        session_id = self.resolve_session_id(thread_id, turn_id)
        if method == protocol.ITEM_STARTED:
            return ItemStartedEvent(
                session_id=session_id,
                turn_id=turn_id,
                thread_id=thread_id,
                item=item,
                created_at=now,
            )

        if item.get("type") == "agentMessage" and item.get("id"):
            self._message_buffers.pop(str(item["id"]), None)
        return ItemCompletedEvent(
            session_id=session_id,
            turn_id=turn_id,
            thread_id=thread_id,
            item=item,
            created_at=now,
        )

    def _item_delta(
        self,
        params: dict[str, Any],
        kind: DeltaKind,
        now: str,
    ) -> ItemDeltaEvent | None:
        thread_id = resolve_thread_id(params)
        turn_id = resolve_turn_id(params)
        delta = params.get("delta")
        if not thread_id or not turn_id or not delta:
            return None

        item_id = params.get("itemId")
        summary_index = params.get("summaryIndex") if kind == DeltaKind.REASONING_SUMMARY else None
        if not isinstance(summary_index, int):
            summary_index = None
        return ItemDeltaEvent(
            session_id=self.resolve_session_id(thread_id, turn_id),
            turn_id=turn_id,
            thread_id=thread_id,
            item_id=None if item_id is None else str(item_id),
            kind=kind,
            delta=str(delta),
            summary_index=summary_index,
            created_at=now,
        )

    def _handle_agent_message_delta(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        event = self._item_delta(params, DeltaKind.AGENT_MESSAGE, now)
        if event is not None and event.item_id:
            current = self._message_buffers.get(event.item_id, "")
            self._message_buffers[event.item_id] = current + event.delta
        return event

    def _handle_command_output_delta(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        return self._item_delta(params, DeltaKind.COMMAND_OUTPUT, now)

    def _handle_reasoning_summary_delta(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        return self._item_delta(params, DeltaKind.REASONING_SUMMARY, now)

    def _handle_approval_notification(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        return self.approval_event(method, params)

    # =========================================================================
    # Low-level execution events (codex/event/*)
    # =========================================================================

    def _handle_low_level(self, method: str, params: dict[str, Any], now: str) -> BridgeEvent | None:
        msg = params.get("msg")
        if not isinstance(msg, dict):
            msg = {}

        thread_id = resolve_thread_id(params) or resolve_thread_id(msg)
        turn_id = (
            resolve_turn_id(params)
            or resolve_turn_id(msg)
            or str(first_present(params.get("id"), ""))
            or None
        )

        handler = self._low_level_handlers.get(method)
        if handler is None:
            logger.debug(f"Unmapped low-level event: {method}")
            return None
        return handler(msg, thread_id, turn_id, now)

    def _handle_exec_begin(
        self, msg: dict[str, Any], thread_id: str | None, turn_id: str | None, now: str
    ) -> BridgeEvent | None:
        if not thread_id or not turn_id:
            return None

        call_id = _call_id(msg)
        command = normalize_command(
            first_present(msg.get("command"), msg.get("parsed_cmd"), msg.get("parsedCmd"))
        )
        cwd = str(msg["cwd"]) if msg.get("cwd") else None
        self._executions[call_id] = CommandExecution(thread_id, turn_id, command, cwd)

        item = protocol.drop_none(
            {
                "type": "commandExecution",
                "id": call_id,
                "command": command,
                "cwd": cwd,
                "status": "inProgress",
            }
        )
        return ItemStartedEvent(
            session_id=self.resolve_session_id(thread_id, turn_id),
            turn_id=turn_id,
            thread_id=thread_id,
            item=item,
            created_at=now,
        )

    def _handle_exec_output(
        self, msg: dict[str, Any], thread_id: str | None, turn_id: str | None, now: str
    ) -> BridgeEvent | None:
        call_id = _call_id(msg)
        chunk = msg.get("chunk") if isinstance(msg.get("chunk"), str) else ""
        delta = decode_chunk(chunk)
        if not delta:
            return None

        execution = self._executions.get(call_id)
        if execution is not None:
            thread_id = execution.thread_id or thread_id
            turn_id = execution.turn_id or turn_id
        if not thread_id or not turn_id:
            return None

        return ItemDeltaEvent(
            session_id=self.resolve_session_id(thread_id, turn_id),
            turn_id=turn_id,
            thread_id=thread_id,
            item_id=call_id,
            kind=DeltaKind.COMMAND_OUTPUT,
            delta=delta,
            created_at=now,
        )

    def _handle_exec_end(
        self, msg: dict[str, Any], thread_id: str | None, turn_id: str | None, now: str
    ) -> BridgeEvent | None:
        call_id = _call_id(msg)
        execution = self._executions.pop(call_id, None)
        if execution is not None:
            thread_id = execution.thread_id or thread_id
            turn_id = execution.turn_id or turn_id
        if not thread_id or not turn_id:
            return None

        item = protocol.drop_none(
            {
                "type": "commandExecution",
                "id": call_id,
                "exitCode": first_present(msg.get("exit_code"), msg.get("exitCode")),
                "durationMs": first_present(msg.get("duration_ms"), msg.get("durationMs")),
            }
        )
        return ItemCompletedEvent(
            session_id=self.resolve_session_id(thread_id, turn_id),
            turn_id=turn_id,
            thread_id=thread_id,
            item=item,
            created_at=now,
        )

    def _handle_low_level_message_delta(
        self, msg: dict[str, Any], thread_id: str | None, turn_id: str | None, now: str
    ) -> BridgeEvent | None:
        if not thread_id or not turn_id:
            return None

        delta = str(first_present(msg.get("delta"), msg.get("content"), msg.get("text"), ""))
        if not delta:
            return None

        return ItemDeltaEvent(
            session_id=self.resolve_session_id(thread_id, turn_id),
            turn_id=turn_id,
            thread_id=thread_id,
            kind=DeltaKind.AGENT_MESSAGE,
            delta=delta,
            created_at=now,
        )

    def _generated_approval_id(self) -> str:
        return f"approval_{int(time.time() * 1000)}_{self._next_id()}"


def _call_id(msg: dict[str, Any]) -> str:
    return str(first_present(msg.get("call_id"), msg.get("callId"), ""))


def _counter() -> Callable[[], int]:
    state = {"next": 0}

    def next_id() -> int:
        state["next"] += 1
        return state["next"]

    return next_id
