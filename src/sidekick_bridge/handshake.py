"""Initialize/initialized handshake state machine.

    NOT_STARTED --begin()--> AWAITING_INITIALIZE_RESPONSE --accept()--> READY
                                         |
                                         +--------reject()--------> FAILED

Every public bridge operation awaits the same shared ready future, so
concurrent callers queue implicitly behind one initialize round-trip.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from .errors import HandshakeError

logger = logging.getLogger(__name__)


class HandshakeState(str, Enum):
    NOT_STARTED = "not_started"
    AWAITING_INITIALIZE_RESPONSE = "awaiting_initialize_response"
    READY = "ready"
    FAILED = "failed"


def _mark_retrieved(future: asyncio.Future[Any]) -> None:
    # Nobody may be waiting when the handshake fails; avoid the
    # "exception was never retrieved" warning.
    if not future.cancelled():
        future.exception()


class Handshake:
    """Tracks the one initialize request of a bridge instance."""

    def __init__(self) -> None:
        self.state = HandshakeState.NOT_STARTED
        self.request_id: int | None = None
        self._ready: asyncio.Future[None] | None = None

    @property
    def is_ready(self) -> bool:
        return self.state == HandshakeState.READY

    @property
    def is_terminal(self) -> bool:
        return self.state in (HandshakeState.READY, HandshakeState.FAILED)

    def begin(self, request_id: int) -> None:
        """Record the initialize request id and create the ready future."""
        if self.state != HandshakeState.NOT_STARTED:
            raise RuntimeError(f"initialize already sent (state={self.state.value})")

        self._ready = asyncio.get_running_loop().create_future()
        self._ready.add_done_callback(_mark_retrieved)
        self.request_id = request_id
        self.state = HandshakeState.AWAITING_INITIALIZE_RESPONSE

    def is_initialize_response(self, message_id: Any) -> bool:
        return (
            self.state == HandshakeState.AWAITING_INITIALIZE_RESPONSE
            and message_id == self.request_id
        )

    def accept(self) -> None:
        """Initialize succeeded; release everyone waiting on readiness."""
        if self.is_terminal or self._ready is None:
            return
        self.state = HandshakeState.READY
        self.request_id = None
        if not self._ready.done():
            self._ready.set_result(None)
        logger.info("Peer handshake complete")

    def reject(self, error: Exception) -> None:
        """Fail the handshake. No-op once READY or FAILED."""
        if self.is_terminal:
            return
        self.state = HandshakeState.FAILED
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
            self._ready.add_done_callback(_mark_retrieved)
        if not self._ready.done():
            self._ready.set_exception(error)
        logger.warning(f"Peer handshake failed: {error}")

    async def wait(self) -> None:
        """Wait until READY; raises the failure once FAILED."""
        if self._ready is None:
            raise HandshakeError("handshake has not been started")
        # shield: one cancelled waiter must not cancel the shared future
        await asyncio.shield(self._ready)
