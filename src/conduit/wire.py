"""Conversion of ACP schema payloads into :mod:`conduit.models`.

Payloads are parsed by the ``acp.schema`` models the SDK validates against.
Only the unstable session-model surface, which the schema does not carry yet,
is declared here.
"""

from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from acp.schema import AgentCapabilities as WireAgentCapabilities
from acp.schema import (
    AudioContentBlock,
    BaseModel,
    ContentToolCallContent,
    EmbeddedResourceContentBlock,
    FileEditToolCallContent,
    HttpMcpServer,
    ImageContentBlock,
    ListSessionsResponse,
    LoadSessionResponse,
    McpServerStdio,
    NewSessionResponse,
    ResourceContentBlock,
    ResumeSessionResponse,
    SessionConfigOptionBoolean,
    SessionConfigOptionSelect,
    SessionConfigSelectGroup,
    SessionModeState,
    SseMcpServer,
    TerminalToolCallContent,
    TextContentBlock,
    ToolCallUpdate,
)
from acp.schema import AvailableCommand as WireCommand
from acp.schema import PermissionOption as WirePermissionOption
from acp.schema import PlanEntry as WirePlanEntry
from acp.schema import ToolCall as WireToolCall
from acp.schema import ToolCallLocation as WireLocation
from pydantic import Field

from conduit.models import (
    AgentCapabilities,
    AvailableCommand,
    ConfigOption,
    ConfigOptionChoice,
    DiffContent,
    ListSessionsResult,
    Mode,
    ModelInfo,
    PermissionOption,
    PermissionRequest,
    PlanEntry,
    SessionListing,
    StopReason,
    TerminalContent,
    TextContent,
    ToolCall,
    ToolCallLocation,
    ToolCallStatus,
    ToolKind,
)

_STOP_REASONS: frozenset[str] = frozenset(
    {"end_turn", "tool_use", "max_tokens", "max_turn_requests", "refusal", "cancelled"}
)
_TOOL_STATUSES: frozenset[str] = frozenset({"pending", "in_progress", "completed", "failed"})

# ACP tool kinds folded onto the client's coarser categories.
_TOOL_KINDS: dict[str, ToolKind] = {
    "read": "read",
    "edit": "edit",
    "delete": "write",
    "move": "write",
    "search": "search",
    "execute": "bash",
    "fetch": "web",
    "think": "other",
    "switch_mode": "other",
    "other": "other",
}

WireConfigOption = Union[SessionConfigOptionSelect, SessionConfigOptionBoolean]
ContentBlock = Union[
    TextContentBlock, ImageContentBlock, AudioContentBlock, ResourceContentBlock, EmbeddedResourceContentBlock
]
WireToolContent = Union[ContentToolCallContent, FileEditToolCallContent, TerminalToolCallContent]
McpServer = Union[McpServerStdio, HttpMcpServer, SseMcpServer]


class WireModel(BaseModel):
    model_id: str = Field(alias="modelId")
    name: str
    description: Optional[str] = None


class SessionModelState(BaseModel):
    available_models: list[WireModel] = Field(default_factory=list, alias="availableModels")
    current_model_id: Optional[str] = Field(default=None, alias="currentModelId")


class SetSessionModelRequest(BaseModel):
    session_id: str = Field(alias="sessionId")
    model_id: str = Field(alias="modelId")


class SetSessionModelResponse(BaseModel):
    pass


class NewSessionResult(NewSessionResponse):
    models: Optional[SessionModelState] = None


class LoadSessionResult(LoadSessionResponse):
    models: Optional[SessionModelState] = None


class ResumeSessionResult(ResumeSessionResponse):
    models: Optional[SessionModelState] = None


SessionSetupResponse = Union[NewSessionResult, LoadSessionResult, ResumeSessionResult]
"""Result of ``session/new``, ``session/load`` and ``session/resume``."""


def map_stop_reason(reason: str | None) -> StopReason:
    if reason in _STOP_REASONS:
        return reason  # type: ignore[return-value]
    return "end_turn"


def map_tool_status(status: str | None) -> ToolCallStatus:
    if status in _TOOL_STATUSES:
        return status  # type: ignore[return-value]
    return "pending"


def map_tool_kind(kind: str | None) -> ToolKind:
    if not kind:
        return "other"
    return _TOOL_KINDS.get(kind, "other")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    with contextlib.suppress(ValueError, TypeError):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return None


def block_text(block: ContentBlock) -> str | None:
    """Displayable text of one ACP content block."""
    if isinstance(block, TextContentBlock):
        return block.text
    if isinstance(block, ImageContentBlock):
        return "<image>"
    if isinstance(block, AudioContentBlock):
        return "<audio>"
    if isinstance(block, ResourceContentBlock):
        return block.uri or "<resource>"
    if isinstance(block, EmbeddedResourceContentBlock):
        return "<resource>"
    return None


def to_modes(state: SessionModeState) -> list[Mode]:
    return [Mode(id=m.id, name=m.name, description=m.description) for m in state.available_modes]


def to_models(state: SessionModelState) -> list[ModelInfo]:
    return [ModelInfo(id=m.model_id, name=m.name, description=m.description) for m in state.available_models]


def to_config_options(options: Iterable[WireConfigOption]) -> list[ConfigOption]:
    result: list[ConfigOption] = []
    for opt in options:
        choices: list[ConfigOptionChoice] = []
        if isinstance(opt, SessionConfigOptionSelect):
            for choice in opt.options:
                if isinstance(choice, SessionConfigSelectGroup):
                    choices.append(
                        ConfigOptionChoice(
                            id=choice.group,
                            label=choice.name,
                            option_ids=[o.value for o in choice.options],
                        )
                    )
                else:
                    choices.append(
                        ConfigOptionChoice(id=choice.value, label=choice.name, description=choice.description)
                    )
        result.append(
            ConfigOption(
                id=opt.id,
                name=opt.name,
                category=opt.category,
                current_value=opt.current_value,
                options=choices,
            )
        )
    return result


def to_capabilities(caps: WireAgentCapabilities) -> AgentCapabilities:
    session_caps = caps.session_capabilities
    prompt_caps = caps.prompt_capabilities
    return AgentCapabilities(
        load_session=bool(caps.load_session),
        mcp_servers=caps.mcp_capabilities is not None,
        fork_session=bool(session_caps and session_caps.fork is not None),
        resume_session=bool(session_caps and session_caps.resume is not None),
        list_sessions=bool(session_caps and session_caps.list is not None),
        prompt_image=bool(prompt_caps and prompt_caps.image),
        prompt_embedded_context=bool(prompt_caps and prompt_caps.embedded_context),
    )


def to_session_listing(result: ListSessionsResponse) -> ListSessionsResult:
    return ListSessionsResult(
        sessions=[
            SessionListing(
                session_id=s.session_id,
                cwd=s.cwd,
                title=s.title,
                last_updated=parse_timestamp(s.updated_at),
            )
            for s in result.sessions
        ],
        next_cursor=result.next_cursor,
    )


def to_commands(commands: Iterable[WireCommand]) -> list[AvailableCommand]:
    return [
        AvailableCommand(
            name=cmd.name,
            description=cmd.description,
            hint=cmd.input.root.hint if cmd.input is not None else None,
        )
        for cmd in commands
    ]


def to_plan(entries: Iterable[WirePlanEntry]) -> list[PlanEntry]:
    return [PlanEntry(content=e.content, status=e.status, priority=e.priority) for e in entries]


def _to_locations(locations: Iterable[WireLocation]) -> list[ToolCallLocation]:
    return [ToolCallLocation(path=loc.path, line=loc.line) for loc in locations]


def _to_content_items(items: Iterable[WireToolContent]) -> list[DiffContent | TerminalContent | TextContent]:
    converted: list[DiffContent | TerminalContent | TextContent] = []
    for item in items:
        if isinstance(item, FileEditToolCallContent):
            converted.append(DiffContent(path=item.path, old_text=item.old_text, new_text=item.new_text))
        elif isinstance(item, TerminalToolCallContent):
            converted.append(TerminalContent(terminal_id=item.terminal_id))
        elif isinstance(item, ContentToolCallContent):
            converted.append(TextContent(block=item.content.model_dump(by_alias=True, exclude_none=True)))
    return converted


def new_tool_call(payload: WireToolCall | ToolCallUpdate) -> ToolCall:
    return ToolCall(
        tool_call_id=payload.tool_call_id,
        title=payload.title or "",
        kind=map_tool_kind(payload.kind),
        status=map_tool_status(payload.status),
        locations=_to_locations(payload.locations or []),
        content=_to_content_items(payload.content or []),
        raw_input=payload.raw_input,
        raw_output=payload.raw_output,
    )


def merge_tool_call(current: ToolCall, payload: WireToolCall | ToolCallUpdate) -> ToolCall:
    """Apply a ``tool_call_update`` on top of the last known state.

    Fields absent from the update keep their previous value. Once the call
    reached ``completed`` or ``failed`` its status no longer changes.
    """
    changes: dict[str, Any] = {}
    if payload.title is not None:
        changes["title"] = payload.title
    if payload.kind is not None:
        changes["kind"] = map_tool_kind(payload.kind)
    if payload.status is not None and not current.is_finished:
        changes["status"] = map_tool_status(payload.status)
    if payload.locations is not None:
        changes["locations"] = _to_locations(payload.locations)
    if payload.content is not None:
        changes["content"] = _to_content_items(payload.content)
    if payload.raw_input is not None:
        changes["raw_input"] = payload.raw_input
    if payload.raw_output is not None:
        changes["raw_output"] = payload.raw_output
    return current.model_copy(update=changes)


def to_permission_request(
    session_id: str,
    tool_call: ToolCallUpdate,
    options: Iterable[WirePermissionOption],
    known: ToolCall | None = None,
) -> PermissionRequest:
    merged = merge_tool_call(known, tool_call) if known else new_tool_call(tool_call)
    return PermissionRequest(
        session_id=session_id,
        tool_call=merged,
        options=[PermissionOption(option_id=opt.option_id, name=opt.name, kind=opt.kind) for opt in options],
    )
