"""Serve the requests the agent sends back into the client.

:class:`HostCallbackMediator` is the ``acp.Client`` the SDK connection routes
inbound traffic to. Permission prompts, file-system access and terminal
management go to host-supplied handlers; ``session/update`` notifications go
to the update sink. A failing or missing handler never leaves the agent
waiting: permission falls back to a denial and a read to empty content.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from acp import Client, RequestError
from acp.schema import (
    AllowedOutcome,
    CreateTerminalResponse,
    DeniedOutcome,
    EnvVariable,
    KillTerminalResponse,
    PermissionOption,
    ReadTextFileResponse,
    ReleaseTerminalResponse,
    RequestPermissionResponse,
    TerminalOutputResponse,
    ToolCallUpdate,
    WaitForTerminalExitResponse,
    WriteTextFileResponse,
)

from conduit.config import ClientMode
from conduit.errors import CallbackError, request_failed, unknown_terminal
from conduit.log_utils import log_context, log_event
from conduit.models import PermissionDecision, PermissionRequest, ToolCall
from conduit.terminals import TerminalHandle, TerminalRegistry
from conduit.wire import to_permission_request

logger = logging.getLogger(__name__)

PermissionHandler = Callable[[PermissionRequest], Awaitable[PermissionDecision]]
UpdateSink = Callable[[str, Any], None]


@runtime_checkable
class FileSystem(Protocol):
    """Host file-system adapter used for ``fs/*`` requests."""

    async def read_text_file(self, path: str, line: int | None = None, limit: int | None = None) -> str: ...

    async def write_text_file(self, path: str, content: str) -> None: ...


class LocalFileSystem:
    """Default adapter backed by the local disk; a missing file reads as empty."""

    async def read_text_file(self, path: str, line: int | None = None, limit: int | None = None) -> str:
        return await asyncio.to_thread(self._read, Path(path), line, limit)

    async def write_text_file(self, path: str, content: str) -> None:
        await asyncio.to_thread(self._write, Path(path), content)

    @staticmethod
    def _read(path: Path, line: int | None, limit: int | None) -> str:
        if not path.is_file():
            return ""
        text = path.read_text(encoding="utf-8", errors="replace")
        if line is None and limit is None:
            return text
        lines = text.splitlines(keepends=True)
        start = max((line or 1) - 1, 0)
        end = start + limit if limit is not None else len(lines)
        return "".join(lines[start:end])

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def _denied() -> RequestPermissionResponse:
    return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))


def choose_option_id(request: PermissionRequest, decision: PermissionDecision) -> str:
    if decision.option_id:
        return decision.option_id
    for option in request.options:
        if option.kind == "allow_once":
            return option.option_id
    if request.options:
        return request.options[0].option_id
    return "allow"


class HostCallbackMediator(Client):
    """Answers ``session/request_permission``, ``fs/*`` and ``terminal/*`` calls."""

    def __init__(
        self,
        *,
        mode: ClientMode = "native",
        permission_handler: PermissionHandler | None = None,
        file_system: FileSystem | None = None,
        terminals: TerminalRegistry | None = None,
        tool_lookup: Callable[[str], ToolCall | None] | None = None,
        cwd_lookup: Callable[[], str | None] | None = None,
        update_sink: UpdateSink | None = None,
    ) -> None:
        self.mode = mode
        self._permission_handler = permission_handler
        self._file_system: FileSystem = file_system or LocalFileSystem()
        self.terminals = terminals if terminals is not None else TerminalRegistry()
        self._tool_lookup = tool_lookup
        self._cwd_lookup = cwd_lookup
        self._update_sink = update_sink
        self._pending_permissions: set[asyncio.Future[PermissionDecision]] = set()

    @property
    def supports_terminal(self) -> bool:
        return self.mode == "native"

    @property
    def pending_permissions(self) -> int:
        return len(self._pending_permissions)

    def set_permission_handler(self, handler: PermissionHandler | None) -> None:
        self._permission_handler = handler

    def cancel_pending_permissions(self) -> None:
        """Answer every permission prompt still waiting on the host as cancelled."""
        for pending in list(self._pending_permissions):
            pending.cancel()

    async def session_update(self, session_id: str, update: Any, **kwargs: Any) -> None:
        # runs before the first await so updates are applied in wire order
        if self._update_sink is None:
            return
        self._update_sink(session_id, update)

    async def request_permission(
        self, session_id: str, tool_call: ToolCallUpdate, options: list[PermissionOption], **kwargs: Any
    ) -> RequestPermissionResponse:
        known = self._tool_lookup(tool_call.tool_call_id) if self._tool_lookup else None
        request = to_permission_request(session_id, tool_call, options, known)
        handler = self._permission_handler
        if handler is None:
            log_event(logger, "permission.auto_deny", session_id=session_id, tool=request.tool_call.title)
            return _denied()
        pending = asyncio.ensure_future(handler(request))
        self._pending_permissions.add(pending)
        try:
            decision = await pending
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not pending.cancelled() or (current is not None and current.cancelling()):
                raise
            log_event(logger, "permission.cancelled", session_id=session_id)
            return _denied()
        except Exception as exc:  # noqa: BLE001
            error = CallbackError(f"permission handler failed: {exc!r}")
            log_event(logger, "permission.handler_failed", level=logging.WARNING, error=str(error))
            return _denied()
        finally:
            self._pending_permissions.discard(pending)
        if not decision.granted:
            log_event(logger, "permission.denied", session_id=session_id, tool=request.tool_call.title)
            return _denied()
        option_id = choose_option_id(request, decision)
        log_event(logger, "permission.granted", session_id=session_id, option_id=option_id)
        return RequestPermissionResponse(outcome=AllowedOutcome(option_id=option_id, outcome="selected"))

    def _resolve_path(self, path: str) -> str:
        candidate = Path(path)
        if candidate.is_absolute() or self._cwd_lookup is None:
            return path
        base = self._cwd_lookup()
        return str(Path(base) / candidate) if base else path

    async def read_text_file(
        self, session_id: str, path: str, line: int | None = None, limit: int | None = None, **kwargs: Any
    ) -> ReadTextFileResponse:
        resolved = self._resolve_path(path)
        try:
            content = await self._file_system.read_text_file(resolved, line, limit)
        except Exception as exc:  # noqa: BLE001
            error = CallbackError(f"read of {resolved} failed: {exc!r}")
            log_event(logger, "fs.read_failed", level=logging.WARNING, error=str(error))
            content = ""
        return ReadTextFileResponse(content=content)

    async def write_text_file(self, session_id: str, path: str, content: str, **kwargs: Any) -> WriteTextFileResponse:
        resolved = self._resolve_path(path)
        try:
            await self._file_system.write_text_file(resolved, content)
        except Exception as exc:
            log_event(logger, "fs.write_failed", level=logging.WARNING, path=resolved, error=repr(exc))
            raise request_failed(f"failed to write {resolved}", path=resolved, error=str(exc)) from exc
        log_event(logger, "fs.write", level=logging.DEBUG, path=resolved, size=len(content))
        return WriteTextFileResponse()

    def _require_native(self, method: str) -> None:
        if not self.supports_terminal:
            log_event(logger, "terminal.rejected", level=logging.INFO, method=method, mode=self.mode)
            raise RequestError.method_not_found(method)

    def _handle(self, terminal_id: str) -> TerminalHandle:
        handle = self.terminals.get(terminal_id)
        if handle is None:
            raise unknown_terminal(terminal_id)
        return handle

    async def create_terminal(
        self,
        session_id: str,
        command: str,
        args: list[str] | None = None,
        env: list[EnvVariable] | None = None,
        cwd: str | None = None,
        output_byte_limit: int | None = None,
        **kwargs: Any,
    ) -> CreateTerminalResponse:
        self._require_native("terminal/create")
        workdir = self._resolve_path(cwd) if cwd else (self._cwd_lookup() if self._cwd_lookup else None)
        with log_context(session_id=session_id):
            try:
                handle = await self.terminals.create(
                    command,
                    args or [],
                    cwd=workdir,
                    env={ev.name: ev.value for ev in env or []},
                    output_byte_limit=output_byte_limit,
                )
            except OSError as exc:
                raise request_failed(f"failed to start {command}", error=str(exc)) from exc
        return CreateTerminalResponse(terminal_id=handle.id)

    async def terminal_output(self, session_id: str, terminal_id: str, **kwargs: Any) -> TerminalOutputResponse:
        self._require_native("terminal/output")
        result = self._handle(terminal_id).get_output()
        return TerminalOutputResponse(output=result.output, truncated=result.truncated, exit_status=result.exit_status)

    async def wait_for_terminal_exit(
        self, session_id: str, terminal_id: str, **kwargs: Any
    ) -> WaitForTerminalExitResponse:
        self._require_native("terminal/wait_for_exit")
        status = await self._handle(terminal_id).wait_for_exit()
        return WaitForTerminalExitResponse(
            exit_code=status.exit_code if status else None,
            signal=status.signal if status else None,
        )

    async def kill_terminal(self, session_id: str, terminal_id: str, **kwargs: Any) -> KillTerminalResponse:
        self._require_native("terminal/kill")
        await self._handle(terminal_id).kill()
        return KillTerminalResponse()

    async def release_terminal(self, session_id: str, terminal_id: str, **kwargs: Any) -> ReleaseTerminalResponse:
        self._require_native("terminal/release")
        if not await self.terminals.release(terminal_id):
            raise unknown_terminal(terminal_id)
        return ReleaseTerminalResponse()

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        log_event(logger, "rpc.method_not_found", level=logging.WARNING, method=f"_{method}")
        raise RequestError.method_not_found(f"_{method}")

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        log_event(logger, "rpc.notification.ignored", level=logging.DEBUG, method=f"_{method}")
