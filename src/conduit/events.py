"""Consumer-facing stream events produced while a prompt cycle runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Union

from conduit.models import AvailableCommand, ConfigOption, ModeRef, PlanEntry, StopReason, ToolCall


@dataclass(frozen=True)
class MessageStart:
    type: ClassVar[str] = "message_start"
    session_id: str
    message_id: str = ""


@dataclass(frozen=True)
class TextDelta:
    type: ClassVar[str] = "text_delta"
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    type: ClassVar[str] = "thinking_delta"
    text: str


@dataclass(frozen=True)
class ToolCallStartEvent:
    type: ClassVar[str] = "tool_call_start"
    tool_call: ToolCall


@dataclass(frozen=True)
class ToolCallDelta:
    """A non-terminal update; ``tool_call`` is the merged state after applying it."""

    type: ClassVar[str] = "tool_call_delta"
    tool_call: ToolCall


@dataclass(frozen=True)
class ToolCallComplete:
    type: ClassVar[str] = "tool_call_complete"
    tool_call: ToolCall


@dataclass(frozen=True)
class PlanEvent:
    type: ClassVar[str] = "plan"
    entries: list[PlanEntry] = field(default_factory=list)


@dataclass(frozen=True)
class ModeChange:
    type: ClassVar[str] = "mode_change"
    mode: ModeRef


@dataclass(frozen=True)
class ConfigOptionsChange:
    type: ClassVar[str] = "config_options"
    config_options: list[ConfigOption] = field(default_factory=list)


@dataclass(frozen=True)
class CommandsUpdate:
    type: ClassVar[str] = "commands_update"
    commands: list[AvailableCommand] = field(default_factory=list)


@dataclass(frozen=True)
class SessionInfoEvent:
    type: ClassVar[str] = "session_info"
    title: str | None = None
    last_updated: datetime | None = None


@dataclass(frozen=True)
class MessageComplete:
    type: ClassVar[str] = "message_complete"
    stop_reason: StopReason


@dataclass(frozen=True)
class ErrorEvent:
    type: ClassVar[str] = "error"
    error: BaseException


StreamEvent = Union[
    MessageStart,
    TextDelta,
    ThinkingDelta,
    ToolCallStartEvent,
    ToolCallDelta,
    ToolCallComplete,
    PlanEvent,
    ModeChange,
    ConfigOptionsChange,
    CommandsUpdate,
    SessionInfoEvent,
    MessageComplete,
    ErrorEvent,
]

TERMINAL_EVENTS: tuple[type, ...] = (MessageComplete, ErrorEvent)


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)
