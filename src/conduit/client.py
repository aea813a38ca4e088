"""Host-facing ACP client: connect to an agent, stream prompts, manage sessions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterable, Literal

from acp import text_block
from pydantic import BaseModel

from conduit.config import (
    ClientOptions,
    SessionConfig,
    build_agent_env,
    mcp_servers_to_wire,
    resolve_agent_command,
    resolve_api_key,
)
from conduit.connection import AgentConnection
from conduit.errors import ConduitError, ConnectError, Disconnected, NotConnectedError, UnsupportedOperation
from conduit.events import StreamEvent
from conduit.log_utils import log_context, log_event
from conduit.mediator import HostCallbackMediator, PermissionHandler
from conduit.models import (
    AgentCapabilities,
    ConfigOption,
    ListSessionsResult,
    McpServerConfig,
    Mode,
    ModelInfo,
    ModelRef,
    ModeRef,
)
from conduit.session_state import Session, SessionStateManager
from conduit.terminals import TerminalHandle, TerminalRegistry
from conduit.translator import EventTranslator, PromptCycle
from conduit.transport import AgentProcess
from conduit.wire import McpServer, SessionSetupResponse, map_stop_reason, to_config_options, to_session_listing

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

ConnectionStatus = Literal["disconnected", "connecting", "connected", "thinking"]

AGENT_EXIT_DRAIN_S = 1.0
EOF_POLL_S = 0.05

ContentItem = str | dict[str, Any] | BaseModel


async def _stdout_closed(process: AgentProcess) -> None:
    while not process.stdout.at_eof():
        await asyncio.sleep(EOF_POLL_S)


class AcpClient:
    """One agent subprocess, one connection, at most one current session.

    ``send_message`` returns a lazy event stream that must be drained once, in
    order; it always ends with exactly one ``message_complete`` or ``error``.
    A new prompt waits until the agent has answered the previous one, so late
    updates from an abandoned or timed-out turn never reach the next stream.
    """

    def __init__(self, options: ClientOptions | None = None) -> None:
        self.options = options or ClientOptions()
        self._state = SessionStateManager()
        self._translator = EventTranslator(self._state, on_event=self.options.on_event)
        self._terminals = TerminalRegistry()
        self._mediator = HostCallbackMediator(
            mode=self.options.mode,
            permission_handler=self.options.permission_handler,
            file_system=self.options.file_system,
            terminals=self._terminals,
            tool_lookup=self._translator.tools.get,
            cwd_lookup=self._current_cwd,
            update_sink=self._translator.handle_update,
        )
        self._process: AgentProcess | None = None
        self._conn: AgentConnection | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._prompt_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._config: SessionConfig | None = None
        self._mcp_servers: list[McpServer] = []
        self._status: ConnectionStatus = "disconnected"
        self.signal = asyncio.Event()

    # -- lifecycle -----------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        log_event(logger, "client.status", level=logging.DEBUG, status=status)
        callback = self.options.on_status_change
        if callback is None:
            return
        try:
            callback(status)
        except Exception:  # noqa: BLE001
            logger.exception("on_status_change observer failed")

    def is_connected(self) -> bool:
        session = self._state.current
        return (
            self._conn is not None
            and not self._conn.is_closed
            and session is not None
            and session.is_active
        )

    async def connect(self, config: SessionConfig) -> Session:
        """Spawn the agent, run ``initialize`` then ``session/new``; no session exists on failure."""
        if self.is_connected():
            raise ConduitError("already connected; call disconnect() first")
        await self._teardown()
        self._set_status("connecting")
        self.signal = asyncio.Event()
        try:
            api_key = resolve_api_key(config.api_key)
            command, args = resolve_agent_command(config)
            process = await AgentProcess.spawn(
                command,
                args,
                cwd=config.cwd,
                env=build_agent_env(config, api_key),
            )
            self._process = process
            conn = AgentConnection(
                self._mediator,
                process.stdin,
                process.stdout,
                request_timeout=self.options.request_timeout,
            )
            self._conn = conn
            self._watcher = asyncio.create_task(self._watch_agent(process, conn), name="agent-watch")
            await conn.initialize(
                terminal=self._mediator.supports_terminal,
                client_name=self.options.client_name,
                client_version=self.options.client_version,
            )
            mcp_servers = mcp_servers_to_wire(config.mcp_servers)
            response = await conn.new_session(config.cwd, mcp_servers)
        except ConnectError:
            await self._teardown()
            raise
        except (ConduitError, OSError) as exc:
            await self._teardown()
            raise ConnectError(f"agent handshake failed: {exc}") from exc
        except asyncio.CancelledError:
            await self._teardown()
            raise

        self._config = config
        self._mcp_servers = mcp_servers
        session = self._establish(response.session_id, config.cwd, response)
        self._set_status("connected")
        return session

    async def disconnect(self) -> None:
        """Kill the agent and drop the session. Safe to call repeatedly."""
        await self._teardown()
        self._state.clear()

    async def closed(self) -> None:
        """Wait until the current connection has closed, for whatever reason."""
        await self.signal.wait()

    async def _teardown(self) -> None:
        watcher, self._watcher = self._watcher, None
        conn, self._conn = self._conn, None
        process, self._process = self._process, None
        prompt_task, self._prompt_task = self._prompt_task, None
        for task in (watcher, *self._background):
            if task is None or task is asyncio.current_task():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._mediator.cancel_pending_permissions()
        if conn is not None:
            await conn.close()
        if prompt_task is not None and not prompt_task.done():
            # the closed connection fails the outstanding prompt with Disconnected
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                async with asyncio.timeout(AGENT_EXIT_DRAIN_S):
                    await prompt_task
        await self._terminals.release_all()
        if process is not None:
            await process.kill()
        if conn is not None or process is not None:
            self._mark_closed("disconnected by client")
        self._set_status("disconnected")

    async def _watch_agent(self, process: AgentProcess, conn: AgentConnection) -> None:
        waiters = [
            asyncio.create_task(conn.wait_closed()),
            asyncio.create_task(process.wait()),
            asyncio.create_task(_stdout_closed(process)),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if not conn.is_closed:
                # the agent may exit with its last notifications still buffered
                with contextlib.suppress(TimeoutError):
                    async with asyncio.timeout(AGENT_EXIT_DRAIN_S):
                        await _stdout_closed(process)
                await asyncio.sleep(0)
                exited = process.returncode is not None
                conn.mark_closed("agent exited" if exited else "agent closed its output stream")
                await conn.close()
        finally:
            for waiter in waiters:
                waiter.cancel()
        if self._conn is not conn:
            return
        reason = conn.close_reason or "agent exited"
        log_event(logger, "client.agent_lost", level=logging.WARNING, reason=reason, returncode=process.returncode)
        self._mediator.cancel_pending_permissions()
        await self._terminals.release_all()
        await process.kill()
        self._mark_closed(reason)
        self._set_status("disconnected")

    def _mark_closed(self, reason: str) -> None:
        self._state.deactivate()
        if not self.signal.is_set():
            log_event(logger, "client.closed", reason=reason)
            self.signal.set()

    # -- session access ------------------------------------------------------------

    def get_session(self) -> Session | None:
        return self._state.current

    def get_agent_capabilities(self) -> AgentCapabilities | None:
        return self._conn.agent_capabilities if self._conn is not None else None

    def _current_cwd(self) -> str | None:
        session = self._state.current
        return session.cwd if session is not None else None

    def _require_connection(self) -> AgentConnection:
        if self._conn is None or self._conn.is_closed:
            raise NotConnectedError("not connected to an agent")
        return self._conn

    def _require_session(self) -> tuple[AgentConnection, Session]:
        conn = self._require_connection()
        session = self._state.current
        if session is None or not session.is_active:
            raise NotConnectedError("no active session")
        return conn, session

    def _establish(self, session_id: str, cwd: str, response: SessionSetupResponse) -> Session:
        self._translator.reset()
        return self._state.establish(session_id, cwd, response)

    # -- prompting ------------------------------------------------------------------

    def _build_prompt(self, text: str, additional_content: Iterable[ContentItem] | None) -> list[Any]:
        blocks: list[Any] = [text_block(text)]
        capabilities = self.get_agent_capabilities()
        for item in additional_content or ():
            block: Any = text_block(item) if isinstance(item, str) else item
            block_type = block.get("type") if isinstance(block, dict) else getattr(block, "type", None)
            if block_type == "image" and capabilities is not None and not capabilities.prompt_image:
                raise UnsupportedOperation("agent does not accept image prompt content")
            blocks.append(block)
        return blocks

    async def _wait_for_previous_prompt(self) -> None:
        task = self._prompt_task
        if task is None or task.done():
            return
        log_event(logger, "prompt.draining", level=logging.DEBUG)
        await asyncio.wait({task})

    async def send_message(
        self,
        text: str,
        *,
        additional_content: Iterable[ContentItem] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        conn, session = self._require_session()
        prompt = self._build_prompt(text, additional_content)
        if self._translator.active_cycle is None:
            await self._wait_for_previous_prompt()
            conn, session = self._require_session()
        cycle = self._translator.begin_cycle(session.id)
        self._set_status("thinking")
        task = asyncio.create_task(self._run_prompt(conn, cycle, prompt), name="acp-prompt")
        self._prompt_task = task
        try:
            async for event in cycle.events():
                yield event
        finally:
            if not cycle.finished:
                log_event(logger, "stream.abandoned", level=logging.INFO, session_id=session.id)
                cycle.complete("cancelled")
                self._mediator.cancel_pending_permissions()
                self._spawn(self._cancel_turn(conn, session.id))
            self._translator.end_cycle(cycle)
            if self._status == "thinking":
                self._set_status("connected" if self.is_connected() else "disconnected")

    async def _run_prompt(self, conn: AgentConnection, cycle: PromptCycle, prompt: list[Any]) -> None:
        with log_context(session_id=cycle.session_id):
            try:
                response = await conn.prompt(cycle.session_id, prompt)
            except asyncio.CancelledError:
                cycle.complete("cancelled")
                raise
            except Exception as exc:  # noqa: BLE001 - any failure ends the stream with one error event
                log_event(logger, "prompt.failed", level=logging.WARNING, error=repr(exc))
                cycle.fail(exc)
                return
            else:
                stop_reason = map_stop_reason(response.stop_reason)
                log_event(logger, "prompt.completed", stop_reason=stop_reason)
                cycle.complete(stop_reason)
            finally:
                self._translator.settle(cycle)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_turn(self, conn: AgentConnection, session_id: str) -> None:
        try:
            await conn.cancel(session_id)
        except ConduitError as exc:
            log_event(logger, "prompt.cancel_failed", level=logging.WARNING, error=str(exc))

    async def send_message_sync(
        self,
        text: str,
        *,
        additional_content: Iterable[ContentItem] | None = None,
    ) -> list[StreamEvent]:
        """Drain :meth:`send_message` into a list, notifying ``on_event`` for each event."""
        events: list[StreamEvent] = []
        async for event in self.send_message(text, additional_content=additional_content):
            events.append(event)
            if self.options.on_event is not None:
                try:
                    self.options.on_event(event)
                except Exception:  # noqa: BLE001
                    logger.exception("on_event observer failed for %s", event.type)
        return events

    async def cancel(self) -> None:
        """Ask the agent to stop the current turn; advisory, bounded by ``cancel_timeout``."""
        conn, session = self._conn, self._state.current
        if conn is None or conn.is_closed or session is None:
            return
        self._mediator.cancel_pending_permissions()
        try:
            await conn.cancel(session.id)
        except Disconnected as exc:
            log_event(logger, "prompt.cancel_failed", level=logging.WARNING, error=str(exc))
            return
        cycle = self._translator.active_cycle
        if cycle is not None:
            cycle.expire_after(self.options.cancel_timeout)

    def set_permission_handler(self, handler: PermissionHandler | None) -> None:
        self._mediator.set_permission_handler(handler)

    # -- modes, models, config options ------------------------------------------------

    def get_available_modes(self) -> list[Mode]:
        session = self._state.current
        return list(session.available_modes) if session is not None else []

    def get_current_mode(self) -> ModeRef | None:
        session = self._state.current
        return session.current_mode if session is not None else None

    async def set_mode(self, mode_id: str) -> None:
        conn, session = self._require_session()
        await conn.set_session_mode(session.id, mode_id)
        self._state.set_current_mode(mode_id)

    def get_available_models(self) -> list[ModelInfo]:
        session = self._state.current
        return list(session.available_models) if session is not None else []

    def get_current_model(self) -> ModelRef | None:
        session = self._state.current
        return session.current_model if session is not None else None

    async def set_model(self, model_id: str) -> None:
        conn, session = self._require_session()
        await conn.set_session_model(session.id, model_id)
        self._state.set_current_model(model_id)

    def get_config_options(self) -> list[ConfigOption]:
        session = self._state.current
        return list(session.config_options) if session is not None else []

    async def set_config_option(self, config_id: str, value: str | bool) -> list[ConfigOption]:
        conn, session = self._require_session()
        response = await conn.set_config_option(session.id, config_id, value)
        options = to_config_options(response.config_options)
        self._state.apply_config_options(session.id, options)
        return options

    # -- session management ---------------------------------------------------------

    def _session_cwd(self, cwd: str | None) -> str:
        if cwd:
            return cwd
        current = self._current_cwd()
        if current:
            return current
        if self._config is not None:
            return self._config.cwd
        raise NotConnectedError("no working directory known; pass cwd explicitly")

    def _wire_mcp(self, mcp_servers: list[McpServerConfig | Any] | None) -> list[McpServer]:
        return mcp_servers_to_wire(mcp_servers) if mcp_servers is not None else list(self._mcp_servers)

    async def list_sessions(self, cwd: str | None = None, cursor: str | None = None) -> ListSessionsResult:
        conn = self._require_connection()
        return to_session_listing(await conn.list_sessions(cwd, cursor))

    async def load_session(
        self,
        session_id: str,
        *,
        cwd: str | None = None,
        mcp_servers: list[McpServerConfig | Any] | None = None,
    ) -> Session:
        conn = self._require_connection()
        target_cwd = self._session_cwd(cwd)
        response = await conn.load_session(session_id, target_cwd, self._wire_mcp(mcp_servers))
        return self._establish(session_id, target_cwd, response)

    async def fork_session(self, session_id: str | None = None, *, cwd: str | None = None) -> str:
        """Fork ``session_id`` (default: the current session); returns the new id without switching."""
        conn = self._require_connection()
        source = session_id or (self._state.current.id if self._state.current else None)
        if source is None:
            raise NotConnectedError("no session to fork")
        response = await conn.fork_session(source, self._session_cwd(cwd))
        return response.session_id

    async def resume_session(
        self,
        session_id: str,
        *,
        cwd: str | None = None,
        mcp_servers: list[McpServerConfig | Any] | None = None,
    ) -> Session:
        conn = self._require_connection()
        target_cwd = self._session_cwd(cwd)
        response = await conn.resume_session(session_id, target_cwd, self._wire_mcp(mcp_servers))
        return self._establish(session_id, target_cwd, response)

    # -- terminals ------------------------------------------------------------------

    def supports_terminal(self) -> bool:
        return self._mediator.supports_terminal

    async def create_terminal(
        self,
        command: str,
        *,
        args: Iterable[str] = (),
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        output_byte_limit: int | None = None,
    ) -> TerminalHandle:
        if not self.supports_terminal():
            raise UnsupportedOperation("terminals are only hosted in native mode")
        return await self._terminals.create(
            command,
            args,
            cwd=cwd or self._current_cwd(),
            env=env,
            output_byte_limit=output_byte_limit,
        )

    async def __aenter__(self) -> AcpClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.disconnect()


def create_client(options: ClientOptions | None = None, **overrides: Any) -> AcpClient:
    """Build an :class:`AcpClient`; keyword overrides patch ``options`` field by field."""
    base = options or ClientOptions()
    if overrides:
        base = ClientOptions(**{**base.__dict__, **overrides})
    return AcpClient(base)
