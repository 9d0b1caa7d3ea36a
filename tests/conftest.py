"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from sidekick_bridge import AgentBridge, BridgeConfig, BridgeEvent
from sidekick_bridge.errors import PeerProcessError


class ScriptedPeer:
    """In-memory PeerProcess driven by the test.

    ``feed`` queues lines for the bridge's reader, ``written`` records every
    message the bridge sent, ``exit`` simulates the process going away.
    """

    def __init__(self, start_error: Exception | None = None) -> None:
        self.start_error = start_error
        self.started = False
        self.terminated = False
        self.written: list[dict[str, Any]] = []
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._exited = asyncio.Event()
        self._exit_code: int | None = None
        self._answered: set[Any] = set()

    # PeerProcess ------------------------------------------------------------

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def write_line(self, line: str) -> None:
        if self._exited.is_set():
            raise PeerProcessError("codex app-server stdin is not writable")
        self.written.append(json.loads(line))

    async def lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._lines.get()
            try:
                if line is None:
                    return
                yield line
            finally:
                self._lines.task_done()

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self._exit_code

    async def terminate(self) -> None:
        self.terminated = True
        if not self._exited.is_set():
            self.exit(-signal.SIGTERM)

    # Test controls ----------------------------------------------------------

    def feed(self, message: dict[str, Any] | str) -> None:
        self._lines.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def exit(self, code: int | None = 0) -> None:
        self._exit_code = code
        self._exited.set()
        self._lines.put_nowait(None)

    async def settle(self) -> None:
        """Wait until every fed line has been handled by the bridge."""
        await self._lines.join()
        for _ in range(5):
            await asyncio.sleep(0)

    def sent(self, method: str) -> list[dict[str, Any]]:
        return [m for m in self.written if m.get("method") == method]

    def responses(self) -> list[dict[str, Any]]:
        return [m for m in self.written if "method" not in m]

    async def respond_to(
        self,
        method: str,
        result: Any = None,
        error: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Answer the oldest unanswered call to ``method``."""
        for _ in range(100):
            request = next(
                (m for m in self.sent(method) if "id" in m and m["id"] not in self._answered),
                None,
            )
            if request is not None:
                break
            await asyncio.sleep(0)
        else:
            raise AssertionError(f"bridge never sent {method}")

        self._answered.add(request["id"])
        reply: dict[str, Any] = {"id": request["id"]}
        if error is not None:
            reply["error"] = error
        else:
            reply["result"] = result if result is not None else {}
        self.feed(reply)
        await self.settle()
        return request

    async def handshake(self, bridge: AgentBridge) -> None:
        """Start ``bridge`` and complete initialize/initialized."""
        await bridge.start()
        await self.respond_to("initialize", {"userAgent": "codex/test"})
        await bridge.wait_ready()


@pytest.fixture
def peer() -> ScriptedPeer:
    return ScriptedPeer()


@pytest.fixture
def config(tmp_path) -> BridgeConfig:
    return BridgeConfig(traffic_log=False, log_dir=str(tmp_path))


@pytest.fixture
def bridge(config: BridgeConfig, peer: ScriptedPeer) -> AgentBridge:
    return AgentBridge(config, peer)


@pytest.fixture
def events(bridge: AgentBridge) -> list[BridgeEvent]:
    """Every event the bridge emits, in order."""
    received: list[BridgeEvent] = []
    bridge.on_event(received.append)
    return received


@pytest.fixture
def make_peer() -> Callable[..., ScriptedPeer]:
    return ScriptedPeer
