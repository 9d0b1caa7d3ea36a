"""Approval tickets.

An approval reaches the bridge in one of two shapes:

- Request-backed: the peer sent an RPC call (``method`` + ``id``) and is
  blocked until the bridge answers that exact id.
- Notification-backed: the peer sent a plain notification carrying an
  approval identifier; the answer is a new ``approval/respond`` call.

Either way a ticket is consumed at most once. ``ApprovalRegistry.take``
removes the ticket, so a second decision for the same id finds nothing
and becomes a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """Decisions a caller can make on an approval request."""

    APPROVE_ONCE = "approve_once"
    APPROVE_ALWAYS = "approve_always"
    DENY_ONCE = "deny_once"
    DENY_ALWAYS = "deny_always"


class ApprovalKind(str, Enum):
    COMMAND = "command"
    FILE_WRITE = "file_write"


class Delivery(str, Enum):
    """Outcome of a best-effort operation.

    Callers are only ever guaranteed ``LOCAL``: the bridge finished its own
    bookkeeping. ``CONFIRMED`` means the peer also answered.
    """

    SKIPPED = "skipped"  # nothing was pending for the identifier
    LOCAL = "local"
    CONFIRMED = "confirmed"


PEER_ACCEPT = "accept"
PEER_DECLINE = "decline"


def map_decision(decision: ApprovalDecision | str) -> str:
    """Map a caller decision to the peer's accept/decline vocabulary."""
    return PEER_ACCEPT if decision.startswith("approve") else PEER_DECLINE


def approval_kind_for(method: str) -> ApprovalKind:
    return ApprovalKind.COMMAND if "commandExecution" in method else ApprovalKind.FILE_WRITE


def approval_title(kind: ApprovalKind) -> str:
    return "Approve command?" if kind == ApprovalKind.COMMAND else "Approve file edits?"


@dataclass
class RequestTicket:
    """Approval the peer is waiting on as an RPC call."""

    approval_id: str
    request_id: Any
    method: str


@dataclass
class NotificationTicket:
    """Approval announced by notification; answered with approval/respond."""

    approval_id: str
    method: str
    params: dict[str, Any] = field(default_factory=dict)


Ticket = RequestTicket | NotificationTicket


class ApprovalRegistry:
    """Outstanding approval tickets keyed by approval id."""

    def __init__(self) -> None:
        self._tickets: dict[str, Ticket] = {}

    def add(self, ticket: Ticket) -> None:
        if ticket.approval_id in self._tickets:
            logger.debug(f"Replacing pending approval ticket {ticket.approval_id}")
        self._tickets[ticket.approval_id] = ticket

    def take(self, approval_id: str) -> Ticket | None:
        """Remove and return the ticket, or None if already resolved/unknown."""
        return self._tickets.pop(approval_id, None)

    def pending_ids(self) -> list[str]:
        return list(self._tickets)

    def __contains__(self, approval_id: object) -> bool:
        return approval_id in self._tickets

    def __len__(self) -> int:
        return len(self._tickets)
