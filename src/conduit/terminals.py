"""Client-hosted terminals the agent asks for in native mode.

Terminal endpoints follow https://agentclientprotocol.com/protocol/terminals.
"""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import contextlib
import itertools
import logging
import os
import signal
from dataclasses import dataclass
from typing import Callable, Dict, Iterable

from acp.schema import TerminalExitStatus

from conduit.log_utils import log_event

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 65536
KILL_GRACE_S = 2.0


@dataclass(frozen=True)
class TerminalOutput:
    output: str
    truncated: bool = False
    exit_status: TerminalExitStatus | None = None


def build_exit_status(returncode: int | None) -> TerminalExitStatus | None:
    if returncode is None:
        return None
    if returncode < 0:
        sig = abs(returncode)
        try:
            sig_name = signal.Signals(sig).name
        except ValueError:
            sig_name = f"SIG{sig}"
        return TerminalExitStatus(exit_code=None, signal=sig_name)
    return TerminalExitStatus(exit_code=returncode, signal=None)


def tail_bytes(data: bytes, limit: int | None) -> tuple[str, bool]:
    """Keep at most ``limit`` bytes from the end, cut on a character boundary."""
    if limit is None or len(data) <= limit:
        return data.decode(errors="replace"), False
    tail = data[len(data) - limit :] if limit > 0 else b""
    # skip UTF-8 continuation bytes left over from the cut
    start = 0
    while start < len(tail) and (tail[start] & 0xC0) == 0x80:
        start += 1
    return tail[start:].decode(errors="replace"), True


class TerminalHandle:
    """One spawned command with its combined stdout/stderr buffer."""

    def __init__(
        self,
        terminal_id: str,
        process: aio_subprocess.Process,
        command: str,
        output_byte_limit: int | None = None,
        on_release: Callable[[str], None] | None = None,
    ) -> None:
        self.id = terminal_id
        self.process = process
        self.command = command
        self.output_byte_limit = output_byte_limit
        self.released = False
        self._on_release = on_release
        self._output = bytearray()
        self._exit: asyncio.Task[TerminalExitStatus | None] | None = None
        self._pumps = [
            asyncio.create_task(self._pump(stream), name=f"{terminal_id}-pump")
            for stream in (process.stdout, process.stderr)
            if stream is not None
        ]

    @property
    def exit_code(self) -> int | None:
        return self.process.returncode

    @property
    def accumulated_output(self) -> bytes:
        return bytes(self._output)

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            self._output.extend(chunk)

    def get_output(self) -> TerminalOutput:
        output, truncated = tail_bytes(bytes(self._output), self.output_byte_limit)
        return TerminalOutput(output=output, truncated=truncated, exit_status=build_exit_status(self.exit_code))

    async def wait_for_exit(self) -> TerminalExitStatus | None:
        """Resolve once the process exited; later callers get the cached status."""
        if self._exit is None:
            self._exit = asyncio.create_task(self._wait(), name=f"{self.id}-wait")
        return await asyncio.shield(self._exit)

    async def _wait(self) -> TerminalExitStatus | None:
        returncode = await self.process.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        log_event(logger, "terminal.exited", terminal_id=self.id, returncode=returncode)
        return build_exit_status(returncode)

    async def kill(self) -> None:
        if self.process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()
        await self.process.wait()
        log_event(logger, "terminal.killed", terminal_id=self.id)

    async def release(self) -> None:
        """Kill the command if needed and drop the handle from its registry."""
        if not self.released:
            self.released = True
            if self._on_release is not None:
                self._on_release(self.id)
        await self.kill()
        if self._pumps:
            _, pending = await asyncio.wait(self._pumps, timeout=KILL_GRACE_S)
            for task in pending:
                task.cancel()


class TerminalRegistry:
    """Owns every terminal spawned for the agent; ids are never reused."""

    def __init__(self) -> None:
        self._handles: Dict[str, TerminalHandle] = {}
        self._ids = itertools.count(1)

    def __contains__(self, terminal_id: object) -> bool:
        return terminal_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    async def create(
        self,
        command: str,
        args: Iterable[str] = (),
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        output_byte_limit: int | None = None,
    ) -> TerminalHandle:
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        argv = list(args)
        if not argv and any(ch.isspace() for ch in command):
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=full_env,
                stdin=aio_subprocess.DEVNULL,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                command,
                *argv,
                cwd=cwd,
                env=full_env,
                stdin=aio_subprocess.DEVNULL,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
            )
        terminal_id = f"terminal-{next(self._ids)}"
        handle = TerminalHandle(terminal_id, proc, command, output_byte_limit, on_release=self._forget)
        self._handles[terminal_id] = handle
        log_event(logger, "terminal.created", terminal_id=terminal_id, command=command, pid=proc.pid)
        return handle

    def get(self, terminal_id: str) -> TerminalHandle | None:
        return self._handles.get(terminal_id)

    def _forget(self, terminal_id: str) -> None:
        self._handles.pop(terminal_id, None)

    async def release(self, terminal_id: str) -> bool:
        handle = self._handles.get(terminal_id)
        if handle is None:
            return False
        await handle.release()
        log_event(logger, "terminal.released", terminal_id=terminal_id)
        return True

    async def release_all(self) -> None:
        handles = list(self._handles.values())
        for handle in handles:
            try:
                await handle.release()
            except Exception:  # noqa: BLE001
                logger.exception("failed to release terminal %s", handle.id)
