from __future__ import annotations

from datetime import timezone

from acp.schema import (
    AgentCapabilities as WireAgentCapabilities,
)
from acp.schema import (
    AvailableCommand,
    ImageContentBlock,
    ListSessionsResponse,
    PermissionOption,
    ResourceContentBlock,
    TextContentBlock,
    ToolCallUpdate,
)

from conduit.models import ToolCall
from conduit.wire import (
    NewSessionResult,
    block_text,
    map_stop_reason,
    map_tool_kind,
    map_tool_status,
    merge_tool_call,
    parse_timestamp,
    to_capabilities,
    to_commands,
    to_permission_request,
    to_session_listing,
)


def test_unknown_stop_reason_maps_to_end_turn():
    assert map_stop_reason("max_turn_requests") == "max_turn_requests"
    assert map_stop_reason("cancelled") == "cancelled"
    assert map_stop_reason("exploded") == "end_turn"
    assert map_stop_reason(None) == "end_turn"


def test_unknown_tool_status_maps_to_pending():
    assert map_tool_status("failed") == "failed"
    assert map_tool_status("weird") == "pending"


def test_tool_kinds_fold_onto_client_categories():
    assert map_tool_kind("execute") == "bash"
    assert map_tool_kind("fetch") == "web"
    assert map_tool_kind("move") == "write"
    assert map_tool_kind("teleport") == "other"
    assert map_tool_kind(None) == "other"


def test_parse_timestamp():
    parsed = parse_timestamp("2025-01-02T03:04:05Z")
    assert parsed is not None
    assert parsed.tzinfo is not None and parsed.utcoffset() == timezone.utc.utcoffset(None)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_block_text():
    assert block_text(TextContentBlock(type="text", text="hi")) == "hi"
    assert block_text(ResourceContentBlock(type="resource_link", uri="file:///a", name="a")) == "file:///a"
    assert block_text(ImageContentBlock(type="image", data="...", mime_type="image/png")) == "<image>"


def test_capabilities_from_nested_session_capabilities():
    caps = to_capabilities(
        WireAgentCapabilities.model_validate(
            {
                "loadSession": True,
                "mcpCapabilities": {"http": True},
                "promptCapabilities": {"image": True, "embeddedContext": True},
                "sessionCapabilities": {"fork": {}, "list": {}},
                "futureFlag": True,
            }
        )
    )

    assert caps.load_session and caps.mcp_servers and caps.fork_session and caps.list_sessions
    assert caps.prompt_image and caps.prompt_embedded_context
    assert not caps.resume_session


def test_empty_capabilities_leave_optional_session_methods_off():
    caps = to_capabilities(WireAgentCapabilities.model_validate({}))

    assert not caps.load_session
    assert not (caps.fork_session or caps.resume_session or caps.list_sessions)
    assert not caps.prompt_image


def test_session_result_carries_model_state():
    result = NewSessionResult.model_validate(
        {
            "sessionId": "s1",
            "models": {"availableModels": [{"modelId": "opus", "name": "Opus"}], "currentModelId": "opus"},
        }
    )

    assert result.session_id == "s1"
    assert result.models is not None
    assert result.models.current_model_id == "opus"
    assert result.models.available_models[0].model_id == "opus"
    assert result.modes is None


def test_session_listing_tolerates_bad_timestamps():
    result = to_session_listing(
        ListSessionsResponse.model_validate(
            {
                "sessions": [
                    {"sessionId": "a", "cwd": "/x", "updatedAt": "2025-01-02T03:04:05Z", "title": "A"},
                    {"sessionId": "b", "cwd": "/x", "updatedAt": "garbage"},
                ],
                "nextCursor": "next",
            }
        )
    )

    assert [s.session_id for s in result.sessions] == ["a", "b"]
    assert result.sessions[0].last_updated.year == 2025
    assert result.sessions[1].last_updated is None
    assert result.next_cursor == "next"


def test_commands_keep_input_hint():
    commands = to_commands(
        [
            AvailableCommand.model_validate({"name": "review", "description": "Review", "input": {"hint": "path"}}),
            AvailableCommand.model_validate({"name": "help", "description": "Help"}),
        ]
    )

    assert [(c.name, c.hint) for c in commands] == [("review", "path"), ("help", None)]


def test_merge_keeps_absent_fields():
    current = ToolCall(tool_call_id="t1", title="Read", kind="read", status="in_progress")

    merged = merge_tool_call(current, ToolCallUpdate.model_validate({"toolCallId": "t1", "rawOutput": {"n": 1}}))

    assert merged.title == "Read"
    assert merged.kind == "read"
    assert merged.status == "in_progress"
    assert merged.raw_output == {"n": 1}


def test_merge_does_not_reopen_a_finished_call():
    current = ToolCall(tool_call_id="t1", title="Run", kind="bash", status="completed")

    merged = merge_tool_call(current, ToolCallUpdate.model_validate({"toolCallId": "t1", "status": "in_progress"}))

    assert merged.status == "completed"


def test_permission_request_merges_the_known_tool_call():
    known = ToolCall(tool_call_id="t1", title="Run tests", kind="bash", status="in_progress")
    options = [
        PermissionOption.model_validate({"optionId": "a", "name": "Allow", "kind": "allow_once"}),
        PermissionOption.model_validate({"optionId": "r", "name": "Reject", "kind": "reject_always"}),
    ]

    request = to_permission_request(
        "s1", ToolCallUpdate.model_validate({"toolCallId": "t1", "status": "pending"}), options, known
    )

    assert request.session_id == "s1"
    assert request.tool_call.title == "Run tests"
    assert request.tool_call.status == "pending"
    assert [(o.option_id, o.kind) for o in request.options] == [("a", "allow_once"), ("r", "reject_always")]


def test_permission_request_for_an_unseen_tool_call():
    request = to_permission_request(
        "s1",
        ToolCallUpdate.model_validate({"toolCallId": "t9", "title": "Fetch", "kind": "fetch"}),
        [],
    )

    assert request.tool_call.tool_call_id == "t9"
    assert request.tool_call.kind == "web"
    assert request.options == []
