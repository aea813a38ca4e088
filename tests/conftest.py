from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from conduit.config import SessionConfig

FAKE_AGENT = Path(__file__).with_name("fake_agent.py")


@pytest.fixture(autouse=True)
def _isolate_home(tmp_path_factory, monkeypatch):
    """Force tests to use a temporary HOME/XDG dirs to avoid permission issues."""
    base = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(base))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(base / ".config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(base / ".local" / "state"))
    monkeypatch.setenv("XDG_DATA_HOME", str(base / ".local" / "share"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(base / ".cache"))
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("CONDUIT_AGENT_BINARY", raising=False)
    monkeypatch.setattr(Path, "home", lambda: base)


class MemoryTransport:
    """Client end of an in-memory message stream; ``None`` in the inbox is EOF."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self.outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.closed = False

    async def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("Transport closed")
        self.outbox.put_nowait(dict(message))

    async def receive(self) -> dict[str, Any] | None:
        return await self.inbox.get()

    async def close(self) -> None:
        self.closed = True


class FakePeer:
    """The agent end of an in-memory connection. Build it inside a running loop."""

    def __init__(self) -> None:
        self.transport = MemoryTransport()

    def send(self, message: dict[str, Any]) -> None:
        self.transport.inbox.put_nowait({"jsonrpc": "2.0", **message})

    def close(self) -> None:
        self.transport.inbox.put_nowait(None)

    async def next_message(self, timeout: float = 2.0) -> dict[str, Any]:
        return await asyncio.wait_for(self.transport.outbox.get(), timeout=timeout)


@pytest.fixture
def make_peer():
    return FakePeer


@pytest.fixture
def agent_config(tmp_path: Path):
    """Factory for a SessionConfig that runs the scripted fake agent."""

    def _build(*flags: str, **overrides: Any) -> SessionConfig:
        values: dict[str, Any] = {
            "cwd": str(tmp_path),
            "api_key": "test-key",
            "binary_path": sys.executable,
            "args": [str(FAKE_AGENT), *flags],
        }
        values.update(overrides)
        return SessionConfig(**values)

    return _build
