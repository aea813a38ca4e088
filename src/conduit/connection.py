"""Typed ACP calls to the agent over the SDK's ``ClientSideConnection``.

The SDK owns framing, id correlation and inbound dispatch. This layer adds
what the session client needs on top: the initialize gate, capability gating
of the optional session methods, a per-request timeout, mapping of SDK
failures onto :mod:`conduit.errors`, and a closed signal.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence, TypeVar

from acp import PROTOCOL_VERSION, Client, RequestError, connect_to_agent
from acp.connection import StreamEvent
from acp.schema import (
    ClientCapabilities,
    FileSystemCapabilities,
    ForkSessionResponse,
    Implementation,
    InitializeResponse,
    ListSessionsResponse,
    LoadSessionRequest,
    NewSessionRequest,
    PromptRequest,
    PromptResponse,
    ResumeSessionRequest,
    SetSessionConfigOptionResponse,
)
from acp.utils import request_model_from_dict
from pydantic import ValidationError

from conduit.errors import ConduitError, Disconnected, ProtocolError, RpcError, UnsupportedOperation
from conduit.log_utils import log_event
from conduit.models import AgentCapabilities
from conduit.protocol import AGENT_METHODS, SESSION_SET_MODEL
from conduit.wire import (
    LoadSessionResult,
    McpServer,
    NewSessionResult,
    ResumeSessionResult,
    SetSessionModelRequest,
    SetSessionModelResponse,
    to_capabilities,
)

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_traffic(event: StreamEvent) -> None:
    message = event.message
    error = message.get("error")
    log_event(
        logger,
        "rpc.traffic",
        level=logging.DEBUG,
        direction=event.direction.value,
        id=message.get("id"),
        method=message.get("method"),
        error=error.get("code") if isinstance(error, dict) else None,
    )


class AgentConnection:
    """One SDK connection to an agent.

    ``initialize`` must succeed before anything else is sent; the capability
    flags it returns are fixed for the life of the connection and gate the
    optional session RPCs. Once the stream is gone every call raises
    :class:`~conduit.errors.Disconnected`.
    """

    def __init__(
        self,
        client: Client,
        input_stream: Any,
        output_stream: Any = None,
        *,
        request_timeout: float | None = None,
    ) -> None:
        self._sdk = connect_to_agent(client, input_stream, output_stream, observers=[_log_traffic])
        self._request_timeout = request_timeout
        self._capabilities: AgentCapabilities | None = None
        self.protocol_version: int | None = None
        self._closed = asyncio.Event()
        self.close_reason: str | None = None

    @property
    def agent_capabilities(self) -> AgentCapabilities | None:
        return self._capabilities

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def mark_closed(self, reason: str) -> None:
        if self._closed.is_set():
            return
        self.close_reason = reason
        self._closed.set()
        log_event(logger, "rpc.closed", reason=reason)

    async def close(self) -> None:
        self.mark_closed("connection closed by client")
        await self._sdk.close()

    async def _guard(self, method: str, call: Callable[[], Awaitable[T]]) -> T:
        if self.is_closed:
            raise Disconnected(f"cannot send {method}: {self.close_reason}")
        try:
            # same task as the caller, so it resumes before later notifications are applied
            async with asyncio.timeout(self._request_timeout):
                return await call()
        except RequestError as exc:
            raise RpcError.from_request_error(exc, method=method) from exc
        except ConnectionError as exc:
            self.mark_closed("agent closed its output stream")
            raise Disconnected(f"{method}: {self.close_reason}") from exc
        except ValidationError as exc:
            raise ProtocolError(f"invalid {method} response: {exc}") from exc

    def _require_initialized(self, method: str) -> None:
        if self._capabilities is None:
            raise ConduitError(f"{method} sent before initialize completed")

    def _require(self, capability: str, method: str) -> None:
        self._require_initialized(method)
        assert self._capabilities is not None
        if not getattr(self._capabilities, capability):
            raise UnsupportedOperation(f"agent does not advertise {capability}; {method} unavailable")

    async def initialize(
        self,
        *,
        protocol_version: int = PROTOCOL_VERSION,
        terminal: bool = True,
        client_name: str = "conduit",
        client_version: str = "0.1.0",
    ) -> InitializeResponse:
        capabilities = ClientCapabilities(
            fs=FileSystemCapabilities(read_text_file=True, write_text_file=True),
            terminal=terminal,
        )
        info = Implementation(name=client_name, title=client_name, version=client_version)
        response = await self._guard(
            AGENT_METHODS["initialize"],
            lambda: self._sdk.initialize(
                protocol_version=protocol_version, client_capabilities=capabilities, client_info=info
            ),
        )
        self.protocol_version = response.protocol_version
        self._capabilities = to_capabilities(response.agent_capabilities)
        log_event(
            logger,
            "rpc.initialized",
            protocol_version=response.protocol_version,
            capabilities=self._capabilities.model_dump(),
        )
        return response

    async def authenticate(self, method_id: str) -> None:
        method = AGENT_METHODS["authenticate"]
        self._require_initialized(method)
        await self._guard(method, lambda: self._sdk.authenticate(method_id=method_id))

    async def new_session(self, cwd: str, mcp_servers: Sequence[McpServer]) -> NewSessionResult:
        method = AGENT_METHODS["session_new"]
        self._require_initialized(method)
        request = NewSessionRequest(cwd=cwd, mcp_servers=list(mcp_servers))
        response = await self._guard(
            method, lambda: request_model_from_dict(self._sdk._conn, method, request, NewSessionResult)
        )
        if not response.session_id:
            raise ProtocolError("session/new response carries no sessionId")
        return response

    async def load_session(self, session_id: str, cwd: str, mcp_servers: Sequence[McpServer]) -> LoadSessionResult:
        method = AGENT_METHODS["session_load"]
        self._require("load_session", method)
        request = LoadSessionRequest(session_id=session_id, cwd=cwd, mcp_servers=list(mcp_servers))
        return await self._guard(
            method, lambda: request_model_from_dict(self._sdk._conn, method, request, LoadSessionResult)
        )

    async def resume_session(
        self, session_id: str, cwd: str, mcp_servers: Sequence[McpServer]
    ) -> ResumeSessionResult:
        method = AGENT_METHODS["session_resume"]
        self._require("resume_session", method)
        request = ResumeSessionRequest(session_id=session_id, cwd=cwd, mcp_servers=list(mcp_servers))
        return await self._guard(
            method, lambda: request_model_from_dict(self._sdk._conn, method, request, ResumeSessionResult)
        )

    async def prompt(self, session_id: str, prompt: Sequence[Any]) -> PromptResponse:
        """Run one turn; returns once every ``session/update`` sent before the answer is applied."""
        method = AGENT_METHODS["session_prompt"]
        self._require_initialized(method)
        try:
            blocks = PromptRequest(session_id=session_id, prompt=list(prompt)).prompt
        except ValidationError as exc:
            raise ConduitError(f"invalid prompt content: {exc}") from exc
        return await self._guard(method, lambda: self._sdk.prompt(session_id=session_id, prompt=blocks))

    async def cancel(self, session_id: str) -> None:
        method = AGENT_METHODS["session_cancel"]
        self._require_initialized(method)
        await self._guard(method, lambda: self._sdk.cancel(session_id=session_id))

    async def set_session_mode(self, session_id: str, mode_id: str) -> None:
        method = AGENT_METHODS["session_set_mode"]
        self._require_initialized(method)
        await self._guard(method, lambda: self._sdk.set_session_mode(session_id=session_id, mode_id=mode_id))

    async def set_session_model(self, session_id: str, model_id: str) -> None:
        self._require_initialized(SESSION_SET_MODEL)
        request = SetSessionModelRequest(session_id=session_id, model_id=model_id)
        await self._guard(
            SESSION_SET_MODEL,
            lambda: request_model_from_dict(self._sdk._conn, SESSION_SET_MODEL, request, SetSessionModelResponse),
        )

    async def set_config_option(
        self, session_id: str, config_id: str, value: str | bool
    ) -> SetSessionConfigOptionResponse:
        method = AGENT_METHODS["session_set_config_option"]
        self._require_initialized(method)
        return await self._guard(
            method,
            lambda: self._sdk.set_config_option(config_id=config_id, session_id=session_id, value=value),
        )

    async def list_sessions(self, cwd: str | None = None, cursor: str | None = None) -> ListSessionsResponse:
        method = AGENT_METHODS["session_list"]
        self._require("list_sessions", method)
        return await self._guard(method, lambda: self._sdk.list_sessions(cwd=cwd, cursor=cursor))

    async def fork_session(self, session_id: str, cwd: str) -> ForkSessionResponse:
        method = AGENT_METHODS["session_fork"]
        self._require("fork_session", method)
        return await self._guard(method, lambda: self._sdk.fork_session(session_id=session_id, cwd=cwd))

    async def __aenter__(self) -> AgentConnection:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
