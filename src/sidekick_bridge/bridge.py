"""AgentBridge: the caller-facing facade over one peer process.

The bridge owns the peer, runs a single reader task that handles every
inbound line in order, and exposes the public operations. Everything the
reader touches is mutated synchronously inside ``_handle_line``, so no
locks are needed.

Inbound routing:

    peer request  (method + id)  -> approval ticket, or -32000 "Unhandled request"
    response      (id, no method)-> handshake, or the call table
    notification  (method, no id)-> EventNormalizer -> listeners
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from . import protocol
from .approvals import (
    ApprovalDecision,
    ApprovalRegistry,
    Delivery,
    NotificationTicket,
    RequestTicket,
    map_decision,
)
from .config import BridgeConfig
from .correlation import CallTable
from .errors import BridgeError, HandshakeError, PeerProcessError, ProtocolError
from .events import UNKNOWN, ApprovalRequestEvent, BridgeEvent, ErrorEvent, EventListener
from .handshake import Handshake, HandshakeState
from .identity import dig
from .normalizer import EventNormalizer
from .transport import PeerProcess, SubprocessPeer, TrafficLog, describe_exit

logger = logging.getLogger(__name__)

SHUT_DOWN_MESSAGE = "bridge shut down"


@dataclass
class WorkspaceContext:
    """Where and for whom a thread is created."""

    workspace_root: str
    session_id: str | None = None
    model: str | None = None


class AgentBridge:
    """Bridge between a caller and the codex app-server peer.

    Usage:
        async with AgentBridge(BridgeConfig.from_env()) as bridge:
            bridge.on_event(print)
            thread_id = await bridge.create_thread(WorkspaceContext("/repo"))
            await bridge.send_message(thread_id, "List the files")

    The peer is spawned and ``initialize`` sent by ``start()``, which every
    operation calls on first use. ``cancel`` is the exception: on a bridge
    that was never started it returns ``Delivery.LOCAL`` without spawning.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        peer: PeerProcess | None = None,
    ) -> None:
        self.config = config or BridgeConfig.from_env()
        self._peer = peer or SubprocessPeer(
            self.config.command,
            working_directory=self.config.working_directory,
            env=self.config.env,
            shutdown_timeout=self.config.shutdown_timeout,
        )

        self._calls = CallTable()
        self._handshake = Handshake()
        self._normalizer = EventNormalizer(next_id=self._calls.next_id)
        self._approvals = ApprovalRegistry()
        self._listeners: list[EventListener] = []
        self._traffic = TrafficLog()

        self._reader_task: asyncio.Task[None] | None = None
        self._started = False
        self._closing = False
        self._lost: PeerProcessError | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def handshake_state(self) -> HandshakeState:
        return self._handshake.state

    @property
    def is_ready(self) -> bool:
        return self._handshake.is_ready

    @property
    def is_closed(self) -> bool:
        return self._closing or self._lost is not None

    @property
    def pending_approvals(self) -> list[str]:
        return self._approvals.pending_ids()

    def buffered_text(self, item_id: str) -> str | None:
        """Agent message text streamed so far for an item still in progress."""
        return self._normalizer.buffered_text(item_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Launch the peer and send initialize. Safe to call repeatedly.

        Spawn failures are not raised here: they fail the handshake, so the
        next ``wait_ready`` (or any public operation) raises PeerProcessError,
        and a recoverable error event is emitted.
        """
        if self._started:
            return
        if self._closing:
            raise PeerProcessError(SHUT_DOWN_MESSAGE)
        self._started = True

        if self.config.traffic_log:
            self._traffic = TrafficLog.open(self.config.resolved_log_dir())

        # The ready future must exist before the first await so that
        # concurrent callers all wait on the same handshake.
        request_id = self._calls.next_id()
        self._handshake.begin(request_id)

        try:
            await self._peer.start()
        except (OSError, PeerProcessError) as e:
            self._traffic.write("process-error", str(e))
            self._peer_lost(f"failed to start codex app-server: {e}")
            return

        self._reader_task = asyncio.create_task(self._read_loop(), name="sidekick-bridge-reader")

        initialize = protocol.make_request(
            protocol.INITIALIZE,
            request_id,
            {"clientInfo": self.config.client_info},
        )
        try:
            self._send(initialize)
        except PeerProcessError as e:
            self._peer_lost(str(e))

    async def wait_ready(self) -> None:
        """Wait for the handshake. Raises HandshakeError or PeerProcessError."""
        await self.start()
        await self._handshake.wait()

    async def shutdown(self) -> None:
        """Stop the peer and fail everything still pending. Idempotent.

        An explicit shutdown emits no error event.
        """
        if self._closing:
            return
        self._closing = True
        logger.info("Shutting down agent bridge")

        error = PeerProcessError(SHUT_DOWN_MESSAGE)
        self._handshake.reject(error)
        failed = self._calls.fail_all(error)
        if failed:
            logger.debug(f"Rejected {failed} pending call(s) on shutdown")

        try:
            await self._peer.terminate()
        finally:
            if self._reader_task is not None and not self._reader_task.done():
                self._reader_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader_task
            self._traffic.close()

    async def __aenter__(self) -> AgentBridge:
        try:
            await self.wait_ready()
        except BaseException:
            await self.shutdown()
            raise
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.shutdown()

    # =========================================================================
    # Events
    # =========================================================================

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to domain events. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: BridgeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed on {event.type.value}")

    # =========================================================================
    # Public operations
    # =========================================================================

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a correlated call once the handshake is done and await its result.

        Raises:
            RpcError: The peer answered with an error
            PeerProcessError: The peer is gone or the bridge was shut down
        """
        await self.wait_ready()
        self._ensure_open()

        pending = self._calls.register(method)
        try:
            self._send(protocol.make_request(method, pending.id, params))
            return await pending.future
        finally:
            self._calls.discard(pending.id)

    async def create_thread(self, context: WorkspaceContext) -> str:
        """Start a conversation thread and return its id.

        Raises:
            ProtocolError: If the peer's response carries no thread id
        """
        result = await self.call(
            protocol.THREAD_START,
            {
                "model": context.model or self.config.model,
                "cwd": context.workspace_root,
                "approvalPolicy": self.config.approval_policy,
                "sandbox": self.config.sandbox.value,
            },
        )
        thread_id = dig(result, ("thread", "id"))
        if not thread_id:
            raise ProtocolError("thread/start response did not include a thread id")

        thread_id = str(thread_id)
        event = self._normalizer.register_thread(
            thread_id,
            context.session_id or thread_id,
            context.workspace_root,
        )
        if event is not None:
            self._emit(event)
        logger.info(f"Created thread {thread_id}")
        return thread_id

    async def send_message(
        self,
        thread_id: str,
        text: str,
        attachments: list[str] | None = None,
    ) -> str:
        """Start a turn with ``text`` and optional file attachments; return the turn id.

        Raises:
            ProtocolError: If the peer's response carries no turn id
        """
        items: list[dict[str, Any]] = [{"type": "text", "text": text}]
        items.extend({"type": "file", "path": path} for path in attachments or [])

        context = self._normalizer.thread_context(thread_id)
        params = protocol.drop_none(
            {
                "threadId": thread_id,
                "cwd": context.working_directory if context else None,
                "input": items,
            }
        )
        result = await self.call(protocol.TURN_START, params)

        turn_id = dig(result, ("turn", "id"))
        if not turn_id:
            raise ProtocolError("turn/start response did not include a turn id")

        turn_id = str(turn_id)
        self._normalizer.record_turn(turn_id, thread_id)
        return turn_id

    async def cancel(self, turn_id: str) -> Delivery:
        """Ask the peer to cancel a turn. Advisory: never raises."""
        if not self._started:
            logger.debug(f"turn/cancel for {turn_id} not sent: bridge never started")
            return Delivery.LOCAL

        params = {"turnId": turn_id}
        thread_id = self._normalizer.thread_for_turn(turn_id)
        if thread_id:
            params["threadId"] = thread_id

        try:
            await self.call(protocol.TURN_CANCEL, params)
        except BridgeError as e:
            logger.warning(f"turn/cancel for {turn_id} not confirmed: {e}")
            return Delivery.LOCAL
        return Delivery.CONFIRMED

    async def respond_approval(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        remember_rule: bool = False,
    ) -> Delivery:
        """Answer a pending approval. Unknown or already answered ids are a no-op."""
        ticket = self._approvals.take(approval_id)
        if ticket is None:
            logger.debug(f"No pending approval {approval_id}")
            return Delivery.SKIPPED

        if isinstance(ticket, RequestTicket):
            return self._answer_request(ticket, decision)

        params: dict[str, Any] = {
            "approvalId": ticket.approval_id,
            "decision": map_decision(decision),
        }
        if remember_rule:
            params["rememberRule"] = True
        try:
            await self.call(protocol.APPROVAL_RESPOND, params)
        except BridgeError as e:
            logger.warning(f"approval/respond for {approval_id} not confirmed: {e}")
            return Delivery.LOCAL
        return Delivery.CONFIRMED

    # =========================================================================
    # Approval tickets
    # =========================================================================

    def _answer_request(self, ticket: RequestTicket, decision: ApprovalDecision | str) -> Delivery:
        response = protocol.make_result_response(
            ticket.request_id,
            {"decision": map_decision(decision)},
        )
        try:
            self._send(response)
        except PeerProcessError as e:
            logger.warning(f"Could not answer approval {ticket.approval_id}: {e}")
        return Delivery.LOCAL

    def _respond_to_request(self, approval_id: str) -> Callable[[ApprovalDecision | str], Delivery]:
        def respond(decision: ApprovalDecision | str) -> Delivery:
            ticket = self._approvals.take(approval_id)
            if ticket is None:
                return Delivery.SKIPPED
            if not isinstance(ticket, RequestTicket):
                # A notification reused the id; leave it for respond_approval
                self._approvals.add(ticket)
                return Delivery.SKIPPED
            return self._answer_request(ticket, decision)

        return respond

    # =========================================================================
    # Reader
    # =========================================================================

    async def _read_loop(self) -> None:
        try:
            async for line in self._peer.lines():
                try:
                    self._handle_line(line)
                except Exception:
                    logger.exception("Failed to handle line from peer")
        except (OSError, PeerProcessError) as e:
            logger.warning(f"Reading from peer failed: {e}")

        code = await self._peer.wait()
        if not self._closing:
            self._peer_lost(f"codex app-server exited ({describe_exit(code)})")

    def _handle_line(self, line: str) -> None:
        self._traffic.write("server->client", line)

        message = protocol.decode_line(line)
        if message is None:
            logger.debug(f"Dropping non-JSON line from peer: {line[:200]}")
            return

        kind = protocol.classify(message)
        if kind == protocol.MessageKind.REQUEST:
            self._handle_peer_request(message)
        elif kind == protocol.MessageKind.RESPONSE:
            self._handle_response(message)
        elif kind == protocol.MessageKind.NOTIFICATION:
            self._handle_notification(message)
        else:
            logger.debug(f"Dropping unclassifiable message: {line[:200]}")

    def _handle_response(self, message: dict[str, Any]) -> None:
        if self._handshake.is_initialize_response(message.get("id")):
            self._complete_handshake(message)
            return
        self._calls.resolve(message)

    def _complete_handshake(self, message: dict[str, Any]) -> None:
        error = message.get("error")
        if error:
            reason = error.get("message") if isinstance(error, dict) else str(error)
            self._handshake.reject(HandshakeError(reason or "initialize failed"))
            return

        try:
            self._send(protocol.make_notification(protocol.INITIALIZED))
        except PeerProcessError as e:
            self._handshake.reject(e)
            return
        self._handshake.accept()

    def _handle_peer_request(self, message: dict[str, Any]) -> None:
        method = message["method"]
        request_id = message.get("id")

        if protocol.is_approval_method(method):
            event = self._normalizer.approval_event(method, message.get("params"), request_id=request_id)
            approval_id = event.approval.id
            self._approvals.add(RequestTicket(approval_id, request_id, method))
            event.respond = self._respond_to_request(approval_id)
            self._emit(event)
            return

        logger.debug(f"Rejecting unhandled peer request: {method}")
        try:
            self._send(
                protocol.make_error_response(
                    request_id,
                    protocol.JsonRpcErrorCode.UNHANDLED_REQUEST,
                    f"Unhandled request: {method}",
                )
            )
        except PeerProcessError as e:
            logger.warning(f"Could not reject peer request {method}: {e}")

    def _handle_notification(self, message: dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params")

        event = self._normalizer.normalize_notification(method, params)
        if event is None:
            return
        if isinstance(event, ApprovalRequestEvent):
            self._approvals.add(
                NotificationTicket(
                    event.approval.id,
                    method,
                    params if isinstance(params, dict) else {},
                )
            )
        self._emit(event)

    # =========================================================================
    # Transport helpers
    # =========================================================================

    def _send(self, message: dict[str, Any]) -> None:
        line = protocol.encode_message(message)
        self._traffic.write("client->server", line)
        self._peer.write_line(line)

    def _ensure_open(self) -> None:
        if self._closing:
            raise PeerProcessError(SHUT_DOWN_MESSAGE)
        if self._lost is not None:
            raise PeerProcessError(str(self._lost))

    def _peer_lost(self, message: str) -> None:
        """Fail everything once and tell listeners. The peer is not restarted."""
        if self._lost is not None or self._closing:
            return

        error = PeerProcessError(message)
        self._lost = error
        self._traffic.write("process-exit", message)
        logger.warning(message)

        self._handshake.reject(error)
        failed = self._calls.fail_all(error)
        if failed:
            logger.debug(f"Rejected {failed} pending call(s): {message}")

        self._emit(ErrorEvent(session_id=UNKNOWN, message=message, recoverable=True))


async def launch_bridge(
    config: BridgeConfig | None = None,
    peer: PeerProcess | None = None,
) -> AgentBridge:
    """Create a bridge and start it. Readiness is awaited by the first operation."""
    bridge = AgentBridge(config, peer)
    await bridge.start()
    return bridge
