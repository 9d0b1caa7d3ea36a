"""Sidekick agent bridge.

Drives the ``codex app-server`` peer over line-delimited JSON-RPC and turns
its notifications into a small set of normalized domain events.
"""

__version__ = "0.1.0"

from .approvals import ApprovalDecision, ApprovalKind, Delivery  # noqa: E402
from .bridge import AgentBridge, WorkspaceContext, launch_bridge  # noqa: E402
from .config import BridgeConfig, SandboxMode  # noqa: E402
from .errors import (  # noqa: E402
    BridgeError,
    HandshakeError,
    PeerProcessError,
    ProtocolError,
    RpcError,
)
from .events import (  # noqa: E402
    ApprovalRequest,
    ApprovalRequestEvent,
    BridgeEvent,
    DeltaKind,
    DomainEvent,
    ErrorEvent,
    EventType,
    ItemCompletedEvent,
    ItemDeltaEvent,
    ItemStartedEvent,
    ThreadStartedEvent,
    TurnCompletedEvent,
    TurnStartedEvent,
)
from .transport import PeerProcess, SubprocessPeer  # noqa: E402

__all__ = [
    "__version__",
    # Bridge
    "AgentBridge",
    "WorkspaceContext",
    "launch_bridge",
    "BridgeConfig",
    "SandboxMode",
    "PeerProcess",
    "SubprocessPeer",
    # Approvals
    "ApprovalDecision",
    "ApprovalKind",
    "Delivery",
    # Events
    "EventType",
    "DeltaKind",
    "BridgeEvent",
    "DomainEvent",
    "ThreadStartedEvent",
    "TurnStartedEvent",
    "TurnCompletedEvent",
    "ItemStartedEvent",
    "ItemCompletedEvent",
    "ItemDeltaEvent",
    "ApprovalRequest",
    "ApprovalRequestEvent",
    "ErrorEvent",
    # Errors
    "BridgeError",
    "HandshakeError",
    "PeerProcessError",
    "ProtocolError",
    "RpcError",
]
