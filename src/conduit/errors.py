"""Exception taxonomy for the ACP session client."""

from __future__ import annotations

from typing import Any

from acp import RequestError

JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_INVALID_PARAMS = -32602
JSONRPC_INTERNAL_ERROR = -32603


class ConduitError(Exception):
    """Base class for every error raised by this package."""


class ConnectError(ConduitError):
    """Spawning the agent or completing the handshake failed; no session exists."""


class ProtocolError(ConduitError):
    """The agent answered with a payload that does not match the ACP schema."""


class RpcError(ConduitError):
    """The agent answered a request with a JSON-RPC error payload."""

    def __init__(self, code: int, message: str, data: Any | None = None, *, method: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data
        self.method = method

    @classmethod
    def from_request_error(cls, exc: RequestError, *, method: str | None = None) -> RpcError:
        return cls(exc.code, str(exc) or "Unknown error", exc.data, method=method)

    def __str__(self) -> str:
        prefix = f"{self.method}: " if self.method else ""
        return f"{prefix}{self.message} (code {self.code})"


class Disconnected(ConduitError):
    """The agent process exited or the stream closed while a request was outstanding."""


class CallbackError(ConduitError):
    """A host-supplied permission, file-system or terminal handler failed."""


class NotConnectedError(ConduitError):
    """A session-scoped operation was attempted without an active session."""


class UnsupportedOperation(ConduitError):
    """The agent did not advertise the capability, or the client mode forbids the call."""


class PromptInProgress(ConduitError):
    """A second prompt cycle was started while one is still streaming."""


def request_failed(message: str, **data: Any) -> RequestError:
    return RequestError(JSONRPC_INTERNAL_ERROR, message, data or None)


def unknown_terminal(terminal_id: str) -> RequestError:
    return RequestError(JSONRPC_INVALID_PARAMS, f"unknown terminal {terminal_id}", {"terminalId": terminal_id})
