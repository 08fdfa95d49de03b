"""
Agent process — runs an agent CLI as an asyncio subprocess.

Reader tasks push every stdout line, stderr chunk and the final exit onto
one ``asyncio.Queue``, so consumers handle output strictly in arrival order
and always see exactly one ``exit`` item last.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

log = logging.getLogger(__name__)

# Stream-json lines can carry whole assistant messages.
STREAM_LINE_LIMIT = 16 * 1024 * 1024


@dataclass
class StreamItem:
    kind: str  # "stdout" | "stderr" | "exit"
    text: str = ""
    returncode: int | None = None

    @property
    def signal_name(self) -> str | None:
        if self.returncode is None or self.returncode >= 0:
            return None
        try:
            return signal.Signals(-self.returncode).name
        except ValueError:
            return str(-self.returncode)


class AgentHandle(Protocol):
    items: asyncio.Queue

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    @property
    def finished(self) -> bool: ...


AgentSpawner = Callable[[list[str], str], Awaitable[AgentHandle]]


class AgentProcess:
    """A running agent subprocess and its output queue."""

    def __init__(self, proc: asyncio.subprocess.Process):
        self.proc = proc
        self.items: asyncio.Queue[StreamItem] = asyncio.Queue()
        self._pump = asyncio.create_task(self._run())

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def finished(self) -> bool:
        return self.proc.returncode is not None

    async def _read_lines(self, stream: asyncio.StreamReader, kind: str) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; drop what was buffered.
                log.warning("Agent %s line exceeded %d bytes, skipped", kind, STREAM_LINE_LIMIT)
                continue
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace")
            if kind == "stdout":
                text = text.rstrip("\r\n")
            await self.items.put(StreamItem(kind, text))

    async def _run(self) -> None:
        await asyncio.gather(
            self._read_lines(self.proc.stdout, "stdout"),
            self._read_lines(self.proc.stderr, "stderr"),
        )
        returncode = await self.proc.wait()
        await self.items.put(StreamItem("exit", returncode=returncode))

    def terminate(self) -> None:
        if self.proc.returncode is None:
            try:
                self.proc.terminate()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        if self.proc.returncode is None:
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass


async def spawn_agent(argv: list[str], cwd: str) -> AgentProcess:
    """Start ``argv`` in ``cwd``. Raises ``OSError`` if the binary cannot be started."""
    log.info("Spawning agent: %s (cwd=%s)", argv[0], cwd)
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        limit=STREAM_LINE_LIMIT,
    )
    return AgentProcess(proc)


@dataclass
class AgentRunResult:
    returncode: int | None
    stdout_lines: list[str]
    stderr: str


async def collect_output(handle: AgentHandle) -> AgentRunResult:
    """Drain a handle's queue until its exit item."""
    stdout_lines: list[str] = []
    stderr_parts: list[str] = []
    while True:
        item = await handle.items.get()
        if item.kind == "stdout":
            stdout_lines.append(item.text)
        elif item.kind == "stderr":
            stderr_parts.append(item.text)
        else:
            return AgentRunResult(item.returncode, stdout_lines, "".join(stderr_parts))
