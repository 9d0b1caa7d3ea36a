"""Exceptions raised by the agent bridge.

Error taxonomy:
- HandshakeError: peer rejected ``initialize``. Fatal, discard the bridge.
- PeerProcessError: the peer could not be started, went away, or the
  bridge was shut down. Every in-flight call fails with it.
- RpcError: the peer answered a single call with an error. Only the
  awaiting caller sees it.
- ProtocolError: the peer answered successfully but left out a field
  the bridge cannot work without.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for all bridge errors."""


class HandshakeError(BridgeError):
    """The peer rejected the ``initialize`` request."""


class PeerProcessError(BridgeError, ConnectionError):
    """The peer process is unavailable (spawn failure, exit, or shutdown)."""


class ProtocolError(BridgeError):
    """The peer sent a response missing a required field."""


class RpcError(BridgeError):
    """The peer answered a call with a JSON-RPC error object."""

    def __init__(
        self,
        method: str,
        message: str | None = None,
        code: int | None = None,
        data: Any | None = None,
    ) -> None:
        self.method = method
        self.message = message or f"RPC error: {method}"
        self.code = code
        self.data = data
        super().__init__(self.message)
