"""Agent subprocess ownership: spawn, stderr draining, exit signalling and kill."""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import contextlib
import logging
from typing import Callable

from conduit.errors import ConnectError
from conduit.log_utils import log_event
from conduit.protocol import STDIO_BUFFER_LIMIT_BYTES

logger = logging.getLogger(__name__)

DEFAULT_TERMINATE_GRACE_S = 2.0


class AgentProcess:
    """One spawned agent with piped stdio.

    ``stdin``/``stdout`` are handed to the ACP connection and nothing else
    touches them. ``exited`` is set once the process is gone, whatever the
    cause.
    """

    def __init__(self, proc: aio_subprocess.Process, command: str) -> None:
        self._proc = proc
        self.command = command
        self.exited = asyncio.Event()
        self._exit_callbacks: list[Callable[[int | None], None]] = []
        self._stderr_task = asyncio.create_task(self._drain_stderr(), name="agent-stderr")
        self._watch_task = asyncio.create_task(self._watch_exit(), name="agent-exit")

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        limit: int = STDIO_BUFFER_LIMIT_BYTES,
    ) -> AgentProcess:
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                env=env,
                stdin=aio_subprocess.PIPE,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                limit=limit,
            )
        except FileNotFoundError as exc:
            raise ConnectError(f"agent binary not found: {command}") from exc
        except PermissionError as exc:
            raise ConnectError(f"permission denied launching agent: {command}") from exc
        except OSError as exc:
            raise ConnectError(f"failed to launch agent {command}: {exc}") from exc

        if proc.stdin is None or proc.stdout is None:
            raise ConnectError("agent process does not expose stdio pipes")
        log_event(logger, "transport.spawned", command=command, pid=proc.pid, cwd=cwd)
        return cls(proc, command)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def stdin(self) -> asyncio.StreamWriter:
        assert self._proc.stdin is not None
        return self._proc.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self._proc.stdout is not None
        return self._proc.stdout

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def add_exit_callback(self, callback: Callable[[int | None], None]) -> None:
        """Run ``callback(returncode)`` once the process has exited (immediately if it already has)."""
        if self.exited.is_set():
            callback(self._proc.returncode)
            return
        self._exit_callbacks.append(callback)

    async def wait(self) -> int | None:
        await self.exited.wait()
        return self._proc.returncode

    async def kill(self, grace: float = DEFAULT_TERMINATE_GRACE_S) -> None:
        """Terminate, then kill after ``grace`` seconds. Safe to call repeatedly or after exit."""
        if self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    self._proc.kill()
                await self._proc.wait()
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
        await self.exited.wait()
        with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
            await asyncio.wait_for(self._stderr_task, timeout=grace)

    async def _watch_exit(self) -> None:
        returncode = await self._proc.wait()
        level = logging.INFO if returncode == 0 else logging.WARNING
        log_event(logger, "transport.exited", level=level, pid=self._proc.pid, returncode=returncode)
        self.exited.set()
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(returncode)
            except Exception:  # noqa: BLE001
                logger.exception("agent exit callback failed")

    async def _drain_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # over-long stderr line; skip what is buffered
                continue
            if not line:
                return
            logger.debug("agent stderr: %s", line.decode(errors="replace").rstrip())
