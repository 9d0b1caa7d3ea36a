"""Tests for AgentBridge driven through a scripted peer.

No process is spawned: the ``peer`` fixture records what the bridge writes
and feeds it lines as if they came from the peer's stdout.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from sidekick_bridge import (
    AgentBridge,
    ApprovalDecision,
    ApprovalKind,
    ApprovalRequestEvent,
    BridgeConfig,
    Delivery,
    ErrorEvent,
    EventType,
    HandshakeError,
    PeerProcessError,
    ProtocolError,
    RpcError,
    WorkspaceContext,
    launch_bridge,
)
from sidekick_bridge.handshake import HandshakeState

COMMAND_APPROVAL = "item/commandExecution/requestApproval"


async def open_thread(bridge: AgentBridge, peer, thread_id: str = "thr_1", session_id: str | None = "sess_1") -> str:
    task = asyncio.create_task(bridge.create_thread(WorkspaceContext("/work", session_id=session_id)))
    await peer.respond_to("thread/start", {"thread": {"id": thread_id}})
    return await task


async def start_turn(bridge: AgentBridge, peer, thread_id: str = "thr_1", turn_id: str = "turn_1") -> str:
    task = asyncio.create_task(bridge.send_message(thread_id, "hello"))
    await peer.respond_to("turn/start", {"turn": {"id": turn_id}})
    return await task


# =============================================================================
# Handshake
# =============================================================================


class TestHandshake:
    """initialize / initialized sequencing."""

    @pytest.mark.asyncio
    async def test_initialize_is_first_and_carries_client_info(self, bridge: AgentBridge, peer) -> None:
        await bridge.start()
        await asyncio.sleep(0)

        assert peer.written[0] == {
            "method": "initialize",
            "id": 1,
            "params": {"clientInfo": bridge.config.client_info},
        }
        assert not bridge.is_ready

    @pytest.mark.asyncio
    async def test_response_sends_initialized_and_becomes_ready(self, bridge: AgentBridge, peer) -> None:
        await bridge.start()
        peer.feed({"id": 1, "result": {"userAgent": {}}})
        await peer.settle()

        await bridge.wait_ready()
        assert bridge.is_ready
        assert peer.written[1] == {"method": "initialized"}

    @pytest.mark.asyncio
    async def test_operations_wait_for_handshake(self, bridge: AgentBridge, peer) -> None:
        task = asyncio.create_task(bridge.create_thread(WorkspaceContext("/work")))
        await asyncio.sleep(0)
        await peer.settle()

        assert peer.sent("thread/start") == []

        await peer.respond_to("initialize", {})
        await peer.respond_to("thread/start", {"thread": {"id": "thr_1"}})
        assert await task == "thr_1"
        assert [m.get("method") for m in peer.written[:3]] == ["initialize", "initialized", "thread/start"]

    @pytest.mark.asyncio
    async def test_rejected_initialize(self, bridge: AgentBridge, peer) -> None:
        await bridge.start()
        await peer.respond_to("initialize", error={"code": -32600, "message": "unsupported client"})

        with pytest.raises(HandshakeError, match="unsupported client"):
            await bridge.wait_ready()
        with pytest.raises(HandshakeError):
            await bridge.create_thread(WorkspaceContext("/work"))

        assert bridge.handshake_state == HandshakeState.FAILED
        assert peer.sent("initialized") == []

    @pytest.mark.asyncio
    async def test_rejected_without_message(self, bridge: AgentBridge, peer) -> None:
        await bridge.start()
        await peer.respond_to("initialize", error={"code": 1})

        with pytest.raises(HandshakeError, match="initialize failed"):
            await bridge.wait_ready()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, bridge: AgentBridge, peer) -> None:
        await asyncio.gather(bridge.start(), bridge.start(), bridge.start())
        await asyncio.sleep(0)
        assert len(peer.sent("initialize")) == 1


# =============================================================================
# Calls
# =============================================================================


class TestCalls:
    """Correlated calls and public operations."""

    @pytest.mark.asyncio
    async def test_create_thread_params(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        await open_thread(bridge, peer)

        params = peer.sent("thread/start")[0]["params"]
        assert params == {
            "model": bridge.config.model,
            "cwd": "/work",
            "approvalPolicy": "on-request",
            "sandbox": "workspace-write",
        }

    @pytest.mark.asyncio
    async def test_create_thread_model_override(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        task = asyncio.create_task(bridge.create_thread(WorkspaceContext("/work", model="gpt-other")))
        request = await peer.respond_to("thread/start", {"thread": {"id": "thr_1"}})
        await task
        assert request["params"]["model"] == "gpt-other"

    @pytest.mark.asyncio
    async def test_create_thread_without_id(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        task = asyncio.create_task(bridge.create_thread(WorkspaceContext("/work")))
        await peer.respond_to("thread/start", {"thread": {}})

        with pytest.raises(ProtocolError):
            await task

    @pytest.mark.asyncio
    async def test_send_message_builds_input(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        thread_id = await open_thread(bridge, peer)

        task = asyncio.create_task(bridge.send_message(thread_id, "Review this", ["/work/a.py", "/work/b.py"]))
        request = await peer.respond_to("turn/start", {"turn": {"id": "turn_1"}})

        assert await task == "turn_1"
        assert request["params"] == {
            "threadId": "thr_1",
            "cwd": "/work",
            "input": [
                {"type": "text", "text": "Review this"},
                {"type": "file", "path": "/work/a.py"},
                {"type": "file", "path": "/work/b.py"},
            ],
        }

    @pytest.mark.asyncio
    async def test_send_message_without_turn_id(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        task = asyncio.create_task(bridge.send_message("thr_1", "hi"))
        await peer.respond_to("turn/start", {})

        with pytest.raises(ProtocolError):
            await task

    @pytest.mark.asyncio
    async def test_rpc_error_reaches_only_that_caller(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        failing = asyncio.create_task(bridge.call("thread/start", {}))
        other = asyncio.create_task(bridge.call("thread/start", {}))

        await peer.respond_to("thread/start", error={"code": -32602, "message": "bad model"})
        await peer.respond_to("thread/start", {"ok": True})

        with pytest.raises(RpcError, match="bad model"):
            await failing
        assert await other == {"ok": True}

    @pytest.mark.asyncio
    async def test_cancel_confirmed(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        await open_thread(bridge, peer)
        await start_turn(bridge, peer)

        task = asyncio.create_task(bridge.cancel("turn_1"))
        request = await peer.respond_to("turn/cancel", {})

        assert await task == Delivery.CONFIRMED
        assert request["params"] == {"turnId": "turn_1", "threadId": "thr_1"}

    @pytest.mark.asyncio
    async def test_cancel_failure_is_swallowed(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        task = asyncio.create_task(bridge.cancel("turn_x"))
        request = await peer.respond_to("turn/cancel", error={"message": "no such turn"})

        assert await task == Delivery.LOCAL
        assert request["params"] == {"turnId": "turn_x"}

    @pytest.mark.asyncio
    async def test_cancel_before_start_does_not_spawn(self, bridge: AgentBridge, peer) -> None:
        assert await bridge.cancel("turn_1") == Delivery.LOCAL

        assert not peer.started
        assert peer.written == []


# =============================================================================
# Peer requests and approvals
# =============================================================================


class TestApprovals:
    """Request-backed and notification-backed approvals."""

    @pytest.mark.asyncio
    async def test_request_approval_answered_once(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        peer.feed({"id": 7, "method": COMMAND_APPROVAL, "params": {"command": "rm -rf /tmp/x"}})
        await peer.settle()

        approvals = [e for e in events if isinstance(e, ApprovalRequestEvent)]
        assert len(approvals) == 1
        assert approvals[0].approval.id == "7"
        assert approvals[0].approval.kind == ApprovalKind.COMMAND
        assert approvals[0].approval.details["command"] == "rm -rf /tmp/x"
        assert bridge.pending_approvals == ["7"]

        assert await bridge.respond_approval("7", ApprovalDecision.APPROVE_ONCE) == Delivery.LOCAL
        assert await bridge.respond_approval("7", ApprovalDecision.DENY_ONCE) == Delivery.SKIPPED
        assert approvals[0].respond is not None
        assert approvals[0].respond(ApprovalDecision.DENY_ONCE) == Delivery.SKIPPED

        assert peer.responses()[-1] == {"id": 7, "result": {"decision": "accept"}}
        assert sum(1 for m in peer.responses() if m.get("id") == 7) == 1

    @pytest.mark.asyncio
    async def test_event_responder(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)

        def decline(event) -> None:
            if isinstance(event, ApprovalRequestEvent):
                event.respond("deny_always")

        bridge.on_event(decline)
        peer.feed({"id": 8, "method": "item/fileChange/requestApproval", "params": {}})
        await peer.settle()

        assert {"id": 8, "result": {"decision": "decline"}} in peer.responses()
        assert await bridge.respond_approval("8", "approve_once") == Delivery.SKIPPED

    @pytest.mark.asyncio
    async def test_notification_approval_uses_approval_respond(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        peer.feed({"method": COMMAND_APPROVAL, "params": {"approvalId": "apv_1", "threadId": "thr_1"}})
        await peer.settle()

        event = events[-1]
        assert isinstance(event, ApprovalRequestEvent)
        assert event.respond is None

        task = asyncio.create_task(bridge.respond_approval("apv_1", "approve_always", remember_rule=True))
        request = await peer.respond_to("approval/respond", {})

        assert await task == Delivery.CONFIRMED
        assert request["params"] == {"approvalId": "apv_1", "decision": "accept", "rememberRule": True}

    @pytest.mark.asyncio
    async def test_notification_approval_failure_swallowed(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        peer.feed({"method": COMMAND_APPROVAL, "params": {"approvalId": "apv_2"}})
        await peer.settle()

        task = asyncio.create_task(bridge.respond_approval("apv_2", "deny_once"))
        request = await peer.respond_to("approval/respond", error={"message": "expired"})

        assert await task == Delivery.LOCAL
        assert "rememberRule" not in request["params"]

    @pytest.mark.asyncio
    async def test_unknown_approval_is_noop(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        written = len(peer.written)

        assert await bridge.respond_approval("nope", "approve_once") == Delivery.SKIPPED
        assert len(peer.written) == written

    @pytest.mark.asyncio
    async def test_unhandled_peer_request(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        peer.feed({"id": 12, "method": "account/login", "params": {}})
        await peer.settle()

        assert peer.responses()[-1] == {
            "id": 12,
            "error": {"code": -32000, "message": "Unhandled request: account/login"},
        }
        assert events == []


# =============================================================================
# Process loss and shutdown
# =============================================================================


class TestProcessLoss:
    """Unexpected exit fails everything once."""

    @pytest.mark.asyncio
    async def test_exit_rejects_pending_calls(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        first = asyncio.create_task(bridge.call("thread/start", {}))
        second = asyncio.create_task(bridge.call("turn/start", {}))
        await asyncio.sleep(0)
        await peer.settle()

        peer.exit(1)
        results = await asyncio.gather(first, second, return_exceptions=True)

        assert all(isinstance(r, PeerProcessError) for r in results)
        assert "code=1" in str(results[0])

        await asyncio.sleep(0)
        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert len(errors) == 1
        assert errors[0].recoverable is True
        assert errors[0].session_id == "unknown"
        assert errors[0].turn_id == "unknown"
        assert errors[0].message == "codex app-server exited (code=1 signal=?)"

    @pytest.mark.asyncio
    async def test_exit_before_handshake_fails_readiness(self, bridge: AgentBridge, peer) -> None:
        await bridge.start()
        peer.exit(2)
        await peer.settle()

        with pytest.raises(PeerProcessError, match="code=2"):
            await bridge.wait_ready()

    @pytest.mark.asyncio
    async def test_calls_after_exit_fail_fast(self, bridge: AgentBridge, peer) -> None:
        await peer.handshake(bridge)
        peer.exit(0)
        await peer.settle()

        with pytest.raises(PeerProcessError):
            await bridge.call("thread/start", {})
        assert await bridge.cancel("turn_1") == Delivery.LOCAL

    @pytest.mark.asyncio
    async def test_spawn_failure(self, config: BridgeConfig, make_peer) -> None:
        peer = make_peer(start_error=FileNotFoundError("codex: not found"))
        bridge = AgentBridge(config, peer)
        events: list = []
        bridge.on_event(events.append)

        await bridge.start()

        with pytest.raises(PeerProcessError, match="failed to start codex app-server"):
            await bridge.wait_ready()
        assert len(events) == 1
        assert events[0].type == EventType.ERROR
        assert events[0].recoverable is True

    @pytest.mark.asyncio
    async def test_shutdown_emits_no_error(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        pending = asyncio.create_task(bridge.call("thread/start", {}))
        await asyncio.sleep(0)

        await bridge.shutdown()
        await bridge.shutdown()

        with pytest.raises(PeerProcessError, match="bridge shut down"):
            await pending
        assert peer.terminated
        assert not any(isinstance(e, ErrorEvent) for e in events)
        with pytest.raises(PeerProcessError):
            await bridge.call("thread/start", {})

    @pytest.mark.asyncio
    async def test_context_manager(self, config: BridgeConfig, make_peer) -> None:
        peer = make_peer()

        async def answer_initialize() -> None:
            await peer.respond_to("initialize", {})

        answering = asyncio.create_task(answer_initialize())
        async with AgentBridge(config, peer) as bridge:
            assert bridge.is_ready
        await answering
        assert peer.terminated
        assert bridge.is_closed

    @pytest.mark.asyncio
    async def test_launch_bridge_starts(self, config: BridgeConfig, make_peer) -> None:
        peer = make_peer()
        bridge = await launch_bridge(config, peer)
        await asyncio.sleep(0)

        assert peer.started
        assert len(peer.sent("initialize")) == 1
        await bridge.shutdown()


# =============================================================================
# Event flow
# =============================================================================


class TestEventFlow:
    """Ordering, dedupe and listener isolation."""

    @pytest.mark.asyncio
    async def test_thread_started_once_when_notification_first(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        task = asyncio.create_task(bridge.create_thread(WorkspaceContext("/work", session_id="sess_1")))
        await asyncio.sleep(0)

        peer.feed({"method": "thread/started", "params": {"thread": {"id": "thr_1"}}})
        await peer.respond_to("thread/start", {"thread": {"id": "thr_1"}})
        await task
        peer.feed({"method": "thread/started", "params": {"thread": {"id": "thr_1"}}})
        await peer.settle()

        started = [e for e in events if e.type == EventType.THREAD_STARTED]
        assert len(started) == 1
        assert started[0].session_id == "sess_1"

    @pytest.mark.asyncio
    async def test_thread_started_once_when_response_first(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        await open_thread(bridge, peer)
        peer.feed({"method": "thread/started", "params": {"threadId": "thr_1"}})
        await peer.settle()

        assert [e.type for e in events] == [EventType.THREAD_STARTED]

    @pytest.mark.asyncio
    async def test_session_defaults_to_thread_id(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        await open_thread(bridge, peer, session_id=None)
        assert events[0].session_id == "thr_1"

    @pytest.mark.asyncio
    async def test_session_falls_back_to_turn_id(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        peer.feed({"id": 4, "method": COMMAND_APPROVAL, "params": {"turnId": "turn_orphan"}})
        await peer.settle()

        assert events[0].session_id == "turn_orphan"

    @pytest.mark.asyncio
    async def test_exec_output_attributed_to_begin_context(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        await open_thread(bridge, peer)
        peer.feed(
            {
                "method": "codex/event/exec_command_begin",
                "params": {"conversationId": "thr_1", "id": "turn_1", "msg": {"call_id": "c1", "command": "ls"}},
            }
        )
        peer.feed({"method": "codex/event/exec_command_output_delta", "params": {"msg": {"call_id": "c1", "chunk": "YS50eHQK"}}})
        peer.feed({"method": "codex/event/exec_command_end", "params": {"msg": {"call_id": "c1", "exit_code": 0}}})
        await peer.settle()

        types = [e.type for e in events]
        assert types == [EventType.THREAD_STARTED, EventType.ITEM_STARTED, EventType.ITEM_DELTA, EventType.ITEM_COMPLETED]
        assert all(e.session_id == "sess_1" for e in events)
        assert events[2].delta == "a.txt\n"
        assert events[3].turn_id == "turn_1"

    @pytest.mark.asyncio
    async def test_listener_failure_is_isolated(self, bridge: AgentBridge, peer) -> None:
        broken = MagicMock(side_effect=RuntimeError("listener bug"))
        healthy = MagicMock()
        bridge.on_event(broken)
        bridge.on_event(healthy)

        await peer.handshake(bridge)
        await open_thread(bridge, peer)
        await start_turn(bridge, peer)
        peer.feed({"method": "turn/started", "params": {"threadId": "thr_1", "turnId": "turn_1"}})
        await peer.settle()

        assert broken.call_count == 2
        assert healthy.call_count == 2
        assert bridge.is_ready

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bridge: AgentBridge, peer) -> None:
        listener = MagicMock()
        unsubscribe = bridge.on_event(listener)
        unsubscribe()
        unsubscribe()

        await peer.handshake(bridge)
        await open_thread(bridge, peer)
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_garbage_lines_are_dropped(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        peer.feed("not json at all")
        peer.feed("[1, 2, 3]")
        peer.feed({"params": {}})
        peer.feed({"id": 999, "result": {}})
        await open_thread(bridge, peer)

        assert [e.type for e in events] == [EventType.THREAD_STARTED]

    @pytest.mark.asyncio
    async def test_events_preserve_peer_order(self, bridge: AgentBridge, peer, events) -> None:
        await peer.handshake(bridge)
        await open_thread(bridge, peer)
        for index in range(5):
            peer.feed(
                {
                    "method": "item/agentMessage/delta",
                    "params": {"threadId": "thr_1", "turnId": "turn_1", "itemId": "m", "delta": str(index)},
                }
            )
        await peer.settle()

        assert [e.delta for e in events[1:]] == ["0", "1", "2", "3", "4"]
        assert bridge.buffered_text("m") == "01234"
