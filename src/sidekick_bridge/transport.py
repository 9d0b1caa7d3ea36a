"""Process & transport I/O for the peer.

The bridge talks to the peer only through the ``PeerProcess`` protocol,
so tests can swap in a scripted fake without spawning anything.

Wire format:
- stdin:  one JSON value per line, UTF-8, LF terminated
- stdout: one JSON value per line (CRLF tolerated)
- stderr: inherited unchanged, never parsed
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, TextIO, runtime_checkable

from .errors import PeerProcessError

logger = logging.getLogger(__name__)

ENCODING = "utf-8"
NEWLINE = "\n"

# Peer lines can carry whole diffs or command output
STREAM_LIMIT = 16 * 1024 * 1024


@runtime_checkable
class PeerProcess(Protocol):
    """Capability interface for the external peer."""

    async def start(self) -> None:
        """Launch the peer. Raises OSError/PeerProcessError if it cannot start."""
        ...

    def write_line(self, line: str) -> None:
        """Write one line (newline appended). Fire-and-forget."""
        ...

    def lines(self) -> AsyncIterator[str]:
        """Yield non-empty lines from the peer until its output closes."""
        ...

    async def wait(self) -> int | None:
        """Wait for exit and return the exit code (negative for signals)."""
        ...

    async def terminate(self) -> None:
        """Stop the peer. Safe to call more than once."""
        ...


def describe_exit(returncode: int | None) -> str:
    """Render an exit status as ``code=<c> signal=<s>``."""
    code = "?"
    sig = "?"
    if returncode is not None:
        if returncode < 0:
            try:
                sig = signal.Signals(-returncode).name
            except ValueError:
                sig = str(-returncode)
        else:
            code = str(returncode)
    return f"code={code} signal={sig}"


class SubprocessPeer:
    """Peer launched with ``asyncio.create_subprocess_exec``."""

    def __init__(
        self,
        command: list[str],
        working_directory: str | None = None,
        env: dict[str, str] | None = None,
        shutdown_timeout: float = 5.0,
    ) -> None:
        if not command:
            raise ValueError("peer command must not be empty")
        self._command = list(command)
        self._working_directory = working_directory
        self._env = env
        self._shutdown_timeout = shutdown_timeout
        self._process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    async def start(self) -> None:
        if self._process is not None:
            return

        env = {**os.environ, **self._env} if self._env else None
        self._process = await asyncio.create_subprocess_exec(
            *self._command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=None,
            cwd=self._working_directory,
            env=env,
            limit=STREAM_LIMIT,
        )
        logger.info(f"Launched peer: {' '.join(self._command)} (pid={self._process.pid})")

    def write_line(self, line: str) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise PeerProcessError("codex app-server stdin is not writable")
        process.stdin.write((line + NEWLINE).encode(ENCODING))

    async def lines(self) -> AsyncIterator[str]:
        if self._process is None or self._process.stdout is None:
            raise PeerProcessError("codex app-server is not running")

        stdout = self._process.stdout
        while True:
            try:
                raw = await stdout.readline()
            except ValueError as e:
                # Line exceeded STREAM_LIMIT; the reader skips past it
                logger.warning(f"Dropping oversized line from peer: {e}")
                continue
            if not raw:
                return
            line = raw.decode(ENCODING, errors="replace").rstrip("\r\n")
            if line.strip():
                yield line

    async def wait(self) -> int | None:
        if self._process is None:
            return None
        return await self._process.wait()

    async def terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self._shutdown_timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        logger.info(f"Peer terminated (pid={process.pid})")


class TrafficLog:
    """Timestamped record of every raw line exchanged with the peer.

    Purely diagnostic. When the log directory cannot be created or the file
    cannot be opened, the log is disabled and the bridge keeps running.
    """

    def __init__(self, path: Path | None = None, stream: TextIO | None = None) -> None:
        self.path = path
        self._stream = stream

    @classmethod
    def open(cls, log_dir: Path) -> TrafficLog:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Traffic log disabled, cannot create {log_dir}: {e}")
            return cls()

        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path = log_dir / f"codex_appserver_{timestamp}.log"
        try:
            stream = open(path, "a", encoding=ENCODING, buffering=1)  # noqa: SIM115
        except OSError as e:
            logger.warning(f"Traffic log disabled, cannot open {path}: {e}")
            return cls()

        log = cls(path, stream)
        log.write("log-start", f"writing to {path}")
        logger.info(f"Codex app-server traffic log: {path}")
        return log

    @property
    def enabled(self) -> bool:
        return self._stream is not None

    def write(self, prefix: str, value: str) -> None:
        if self._stream is None:
            return
        try:
            self._stream.write(f"[{datetime.now(UTC).isoformat()}] {prefix} {value}{NEWLINE}")
        except (OSError, ValueError) as e:
            logger.warning(f"Traffic log disabled after write failure: {e}")
            self._stream = None

    def close(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        with contextlib.suppress(OSError):
            stream.close()
