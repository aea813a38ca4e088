"""Client-side data model handed to the host.

These are the normalised shapes the host works with; the raw ACP payloads they
are built from live in :mod:`conduit.wire`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ToolKind = Literal["read", "write", "edit", "bash", "search", "web", "mcp", "other"]
ToolCallStatus = Literal["pending", "in_progress", "completed", "failed"]
PermissionOptionKind = Literal["allow_once", "allow_always", "reject_once", "reject_always"]
PlanEntryStatus = Literal["pending", "in_progress", "completed"]
PlanEntryPriority = Literal["high", "medium", "low"]
StopReason = Literal["end_turn", "tool_use", "max_tokens", "max_turn_requests", "refusal", "cancelled"]

TERMINAL_TOOL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class Schema(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")


class Mode(Schema):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str | None = None


class ModelInfo(Schema):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str | None = None


class ModeRef(Schema):
    mode_id: str


class ModelRef(Schema):
    model_id: str


class ConfigOptionChoice(Schema):
    """One selectable value; for a grouped choice ``id``/``label`` describe the group."""

    id: str
    label: str
    description: str | None = None
    option_ids: list[str] = Field(default_factory=list)

    @property
    def is_group(self) -> bool:
        return bool(self.option_ids)


class ConfigOption(Schema):
    id: str
    name: str
    category: str | None = None
    current_value: str | bool | None = None
    options: list[ConfigOptionChoice] = Field(default_factory=list)


class ToolCallLocation(Schema):
    path: str
    line: int | None = None


class DiffContent(Schema):
    type: Literal["diff"] = "diff"
    path: str
    old_text: str | None = None
    new_text: str | None = None


class TerminalContent(Schema):
    type: Literal["terminal"] = "terminal"
    terminal_id: str


class TextContent(Schema):
    type: Literal["content"] = "content"
    block: dict[str, Any]

    @property
    def text(self) -> str | None:
        value = self.block.get("text")
        return value if isinstance(value, str) else None


ToolCallContentItem = Annotated[Union[DiffContent, TerminalContent, TextContent], Field(discriminator="type")]


class ToolCall(Schema):
    """Latest known state of one agent-initiated action."""

    tool_call_id: str
    title: str = ""
    kind: ToolKind = "other"
    status: ToolCallStatus = "pending"
    locations: list[ToolCallLocation] = Field(default_factory=list)
    content: list[ToolCallContentItem] = Field(default_factory=list)
    raw_input: Any | None = None
    raw_output: Any | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_TOOL_STATUSES


class PlanEntry(Schema):
    content: str
    status: PlanEntryStatus = "pending"
    priority: PlanEntryPriority | None = None


class PermissionOption(Schema):
    option_id: str
    name: str
    kind: PermissionOptionKind


class PermissionRequest(Schema):
    session_id: str
    tool_call: ToolCall
    options: list[PermissionOption] = Field(default_factory=list)


class PermissionDecision(Schema):
    """Host answer to a :class:`PermissionRequest`.

    ``option_id`` picks a specific option; when omitted on a grant the first
    ``allow_once`` option is used.
    """

    granted: bool
    option_id: str | None = None


class AvailableCommand(Schema):
    name: str
    description: str = ""
    hint: str | None = None


class SessionListing(Schema):
    session_id: str
    cwd: str
    title: str | None = None
    last_updated: datetime | None = None


class ListSessionsResult(Schema):
    sessions: list[SessionListing] = Field(default_factory=list)
    next_cursor: str | None = None


class AgentCapabilities(Schema):
    """Capability flags negotiated at ``initialize``; immutable for the connection."""

    model_config = ConfigDict(frozen=True)

    load_session: bool = False
    mcp_servers: bool = False
    fork_session: bool = False
    resume_session: bool = False
    list_sessions: bool = False
    prompt_image: bool = False
    prompt_embedded_context: bool = False


class McpServerConfig(Schema):
    """A stdio MCP server the agent should start for the session."""

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
