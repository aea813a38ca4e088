"""Connection settings, credential lookup and agent binary discovery."""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Literal

from acp.schema import EnvVariable, HttpHeader, HttpMcpServer, McpServerStdio, SseMcpServer
from dotenv import load_dotenv

from conduit.errors import ConnectError
from conduit.models import McpServerConfig
from conduit.paths import config_dir
from conduit.wire import McpServer

if TYPE_CHECKING:
    from conduit.events import StreamEvent
    from conduit.mediator import FileSystem, PermissionHandler

logger = logging.getLogger(__name__)

API_KEY_ENV = "ANTHROPIC_API_KEY"
AGENT_BINARY_ENV = "CONDUIT_AGENT_BINARY"
DEFAULT_AGENT_BINARY = "claude-code-acp"
DEFAULT_CANCEL_TIMEOUT_S = 30.0
EXTRA_PATH_DIRS = ("/opt/homebrew/bin", "/usr/local/bin")
MCP_CONFIG_FILE = "mcp.json"

_MCP_SERVER_TYPES: dict[str, type[McpServer]] = {"stdio": McpServerStdio, "http": HttpMcpServer, "sse": SseMcpServer}

ClientMode = Literal["native", "passthrough"]


@dataclass
class SessionConfig:
    """What :meth:`conduit.client.AcpClient.connect` needs to start an agent."""

    cwd: str
    api_key: str | None = None
    binary_path: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    mcp_servers: list[McpServerConfig | Any] = field(default_factory=list)


@dataclass
class ClientOptions:
    """Behaviour of one :class:`conduit.client.AcpClient` instance.

    ``native`` mode hosts terminals requested by the agent; ``passthrough``
    leaves terminal ownership with the agent and rejects those requests.
    """

    mode: ClientMode = "native"
    permission_handler: PermissionHandler | None = None
    file_system: FileSystem | None = None
    on_event: Callable[[StreamEvent], None] | None = None
    on_status_change: Callable[[str], None] | None = None
    client_name: str = "conduit"
    client_version: str = "0.1.0"
    cancel_timeout: float = DEFAULT_CANCEL_TIMEOUT_S
    request_timeout: float | None = None


def resolve_api_key(explicit: str | None) -> str | None:
    """Return the API credential from config or environment; absence only warns."""
    if explicit:
        return explicit
    load_dotenv(override=False)
    value = os.getenv(API_KEY_ENV)
    if not value:
        logger.warning("%s not set; the agent must provide its own credentials", API_KEY_ENV)
        return None
    return value


def _search_dirs() -> list[Path]:
    home = Path.home()
    return [
        Path("/opt/homebrew/bin"),
        Path("/usr/local/bin"),
        Path("/usr/bin"),
        home / ".npm-global" / "bin",
        home / ".local" / "share" / "pnpm",
        home / ".volta" / "bin",
        home / "AppData" / "Roaming" / "npm",
    ]


def find_agent_binary(name: str = DEFAULT_AGENT_BINARY) -> str | None:
    """Locate the agent on PATH or in well-known install locations."""
    found = shutil.which(name)
    if found:
        return found
    binary_name = f"{name}.cmd" if sys.platform == "win32" else name
    for directory in _search_dirs():
        candidate = directory / binary_name
        if candidate.exists():
            return str(candidate)
    return None


def resolve_agent_command(config: SessionConfig) -> tuple[str, list[str]]:
    """Turn the configured binary into a ``(program, args)`` pair for spawning."""
    binary = config.binary_path or os.getenv(AGENT_BINARY_ENV) or find_agent_binary()
    if not binary:
        raise ConnectError(
            f"{DEFAULT_AGENT_BINARY} binary not found; install it or set binary_path / {AGENT_BINARY_ENV}"
        )

    path = Path(binary)
    if path.suffix == ".js":
        return "node", [str(path), *config.args]
    if path.suffix == ".py" and path.exists() and not os.access(path, os.X_OK):
        return sys.executable, [str(path), *config.args]
    return binary, list(config.args)


def build_agent_env(config: SessionConfig, api_key: str | None) -> dict[str, str]:
    env = os.environ.copy()
    env.update(config.env)
    if api_key:
        env[API_KEY_ENV] = api_key
    path_parts = [env.get("PATH", ""), *EXTRA_PATH_DIRS]
    env["PATH"] = os.pathsep.join(part for part in path_parts if part)
    return env


def mcp_servers_to_wire(servers: list[McpServerConfig | Any]) -> list[McpServer]:
    """Turn MCP server definitions into the ACP schema entries ``session/new`` carries.

    Plain :class:`McpServerConfig` values become stdio servers; schema objects
    loaded by :func:`load_mcp_config` pass through unchanged and raw dicts are
    validated by their ``type``.
    """
    wire: list[McpServer] = []
    for server in servers:
        if isinstance(server, McpServerConfig):
            server = McpServerStdio(
                name=server.name,
                command=server.command,
                args=server.args,
                env=[EnvVariable(name=k, value=v) for k, v in server.env.items()],
            )
        elif isinstance(server, dict):
            server_cls = _MCP_SERVER_TYPES.get(server.get("type", "stdio"), McpServerStdio)
            server = server_cls.model_validate(server)
        wire.append(server)
    return wire


def default_mcp_config_path() -> Path:
    return config_dir() / MCP_CONFIG_FILE


def load_mcp_config(path: str) -> list[Any]:
    """Load MCP server definitions from a JSON array file into ACP schema objects."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("failed to read mcp config %s: %s", path, exc)
        return []

    if not isinstance(data, list):
        logger.error("mcp config %s must be a JSON array", path)
        return []

    servers: list[Any] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        stype = entry.get("type", "stdio")
        name = entry.get("name") or ""
        if stype == "stdio":
            command = entry.get("command")
            if not command:
                continue
            env = entry.get("env", [])
            if isinstance(env, dict):
                env = [{"name": k, "value": v} for k, v in env.items()]
            servers.append(
                McpServerStdio(
                    name=name,
                    command=command,
                    args=entry.get("args", []),
                    env=[
                        EnvVariable(name=ev["name"], value=ev["value"])
                        for ev in env
                        if isinstance(ev, dict) and "name" in ev and "value" in ev
                    ],
                )
            )
        elif stype in {"http", "sse"}:
            url = entry.get("url")
            if not url:
                continue
            servers.append(
                _MCP_SERVER_TYPES[stype](
                    type=stype,
                    name=name,
                    url=url,
                    headers=[
                        HttpHeader(name=h["name"], value=h["value"])
                        for h in entry.get("headers", [])
                        if isinstance(h, dict) and "name" in h and "value" in h
                    ],
                )
            )
    return servers
