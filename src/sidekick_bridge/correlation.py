"""Correlation of outbound calls with inbound responses."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any

from .errors import RpcError

logger = logging.getLogger(__name__)


@dataclass
class PendingCall:
    """An outbound call waiting for its response."""

    id: int
    method: str
    future: asyncio.Future[Any]


class CallTable:
    """Pending calls keyed by their numeric id.

    Ids are allocated from one monotonically increasing counter that is
    also used for the initialize request and for generated approval ids.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingCall] = {}

    def next_id(self) -> int:
        return next(self._ids)

    def register(self, method: str) -> PendingCall:
        call = PendingCall(
            id=self.next_id(),
            method=method,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[call.id] = call
        return call

    def resolve(self, message: dict[str, Any]) -> bool:
        """Settle the call matching ``message["id"]``.

        Returns False for unknown ids; stray or duplicate responses are
        ignored rather than raised.
        """
        message_id = message.get("id")
        if not isinstance(message_id, int | str):
            return False

        call = self._pending.pop(message_id, None)  # type: ignore[arg-type]
        if call is None:
            logger.debug(f"Ignoring response for unknown call id {message_id!r}")
            return False

        if call.future.done():
            # The caller gave up (cancelled) before the peer answered
            return True

        error = message.get("error")
        if error:
            call.future.set_exception(_rpc_error(call.method, error))
        else:
            call.future.set_result(message.get("result"))
        return True

    def discard(self, call_id: int) -> None:
        self._pending.pop(call_id, None)

    def fail_all(self, error: Exception) -> int:
        """Reject every pending call with ``error``. Returns how many failed."""
        failed = 0
        for call in self._pending.values():
            if not call.future.done():
                call.future.set_exception(error)
                failed += 1
        self._pending.clear()
        return failed

    def pending_methods(self) -> list[str]:
        return [call.method for call in self._pending.values()]

    def __len__(self) -> int:
        return len(self._pending)


def _rpc_error(method: str, error: Any) -> RpcError:
    if isinstance(error, dict):
        return RpcError(
            method,
            message=error.get("message") or None,
            code=error.get("code"),
            data=error.get("data"),
        )
    return RpcError(method, message=str(error))
