from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace

import pytest
from acp.schema import SessionNotification

from conduit.errors import PromptInProgress
from conduit.events import (
    CommandsUpdate,
    ConfigOptionsChange,
    ErrorEvent,
    MessageComplete,
    MessageStart,
    ModeChange,
    PlanEvent,
    SessionInfoEvent,
    TextDelta,
    ThinkingDelta,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStartEvent,
)
from conduit.session_state import SessionStateManager
from conduit.translator import EventTranslator, PromptCycle
from conduit.wire import LoadSessionResult


def _update(kind: str, /, **fields):
    notification = SessionNotification.model_validate({"sessionId": "s1", "update": {"sessionUpdate": kind, **fields}})
    return notification.update


def _chunk(text: str, kind: str = "agent_message_chunk"):
    return _update(kind, content={"type": "text", "text": text})


def _translator(observed: list | None = None) -> tuple[EventTranslator, SessionStateManager]:
    state = SessionStateManager()
    state.establish(
        "s1",
        "/work",
        LoadSessionResult.model_validate(
            {"modes": {"availableModes": [{"id": "default", "name": "Default"}], "currentModeId": "default"}}
        ),
    )
    return EventTranslator(state, on_event=observed.append if observed is not None else None), state


async def _drain(cycle: PromptCycle) -> list:
    return [event async for event in cycle.events()]


def test_chunks_outside_a_cycle_go_to_the_observer():
    observed: list = []
    translator, _ = _translator(observed)

    translator.handle_update("s1", _chunk("a"))
    translator.handle_update("s1", _chunk("b", "agent_thought_chunk"))
    translator.handle_update("s1", _chunk("c", "user_message_chunk"))

    assert observed == [TextDelta(text="a"), ThinkingDelta(text="b")]


def test_tool_call_lifecycle_and_status_freeze():
    observed: list = []
    translator, _ = _translator(observed)

    translator.handle_update("s1", _update("tool_call", toolCallId="t1", title="Edit", kind="edit", status="pending"))
    translator.handle_update("s1", _update("tool_call_update", toolCallId="t1", status="in_progress"))
    translator.handle_update(
        "s1",
        _update(
            "tool_call_update",
            toolCallId="t1",
            status="completed",
            content=[{"type": "diff", "path": "a.py", "oldText": "x", "newText": "y"}],
        ),
    )
    translator.handle_update("s1", _update("tool_call_update", toolCallId="t1", status="failed", title="Edit a.py"))

    kinds = [type(event) for event in observed]
    assert kinds == [ToolCallStartEvent, ToolCallDelta, ToolCallComplete, ToolCallDelta]
    assert observed[1].tool_call.status == "in_progress"
    assert observed[2].tool_call.content[0].new_text == "y"
    final = translator.tools.get("t1")
    assert final is not None
    assert final.status == "completed"
    assert final.title == "Edit a.py"
    assert final.kind == "edit"


def test_tool_call_update_for_unknown_id_is_dropped(caplog):
    observed: list = []
    translator, _ = _translator(observed)

    with caplog.at_level(logging.WARNING, logger="conduit.translator"):
        events = translator.handle_update("s1", _update("tool_call_update", toolCallId="ghost", status="completed"))

    assert events == []
    assert observed == []
    assert translator.tools.get("ghost") is None
    assert "tool_call.unknown_id" in caplog.text


def test_tool_call_kinds_are_folded():
    translator, _ = _translator([])

    translator.handle_update("s1", _update("tool_call", toolCallId="t1", title="Run", kind="execute"))
    translator.handle_update("s1", _update("tool_call", toolCallId="t2", title="Get", kind="fetch"))
    translator.handle_update("s1", _update("tool_call", toolCallId="t3", title="Rm", kind="delete"))
    translator.handle_update("s1", _update("tool_call", toolCallId="t4", title="Hm", kind="think"))

    assert translator.tools.get("t1").kind == "bash"
    assert translator.tools.get("t2").kind == "web"
    assert translator.tools.get("t3").kind == "write"
    assert translator.tools.get("t4").kind == "other"


def test_session_level_updates_patch_state():
    observed: list = []
    translator, state = _translator(observed)

    translator.handle_update("s1", _update("current_mode_update", currentModeId="plan"))
    translator.handle_update(
        "s1",
        _update(
            "available_commands_update",
            availableCommands=[{"name": "review", "description": "Review", "input": {"hint": "path"}}],
        ),
    )
    translator.handle_update("s1", _update("session_info_update", title="Refactor", updatedAt="2025-01-02T03:04:05Z"))
    translator.handle_update(
        "s1", _update("plan", entries=[{"content": "step", "status": "in_progress", "priority": "high"}])
    )

    session = state.current
    assert session is not None
    assert session.current_mode.mode_id == "plan"
    assert session.available_commands[0].hint == "path"
    assert session.title == "Refactor"
    assert session.last_updated is not None and session.last_updated.year == 2025
    assert [type(event) for event in observed] == [ModeChange, CommandsUpdate, SessionInfoEvent, PlanEvent]


def test_config_option_update_replaces_the_whole_set():
    observed: list = []
    translator, state = _translator(observed)
    state.apply_config_options(None, [])

    translator.handle_update(
        "s1",
        _update(
            "config_option_update",
            configOptions=[
                {
                    "id": "a",
                    "name": "A",
                    "type": "select",
                    "currentValue": "x",
                    "options": [{"value": "x", "name": "X"}],
                },
                {"id": "b", "name": "B", "type": "boolean", "currentValue": True},
            ],
        ),
    )
    translator.handle_update(
        "s1",
        _update("config_option_update", configOptions=[{"id": "b", "name": "B", "type": "boolean", "currentValue": False}]),
    )

    assert [option.id for option in state.current.config_options] == ["b"]
    assert state.current.config_options[0].current_value is False
    assert isinstance(observed[-1], ConfigOptionsChange)


def test_updates_for_another_session_are_dropped():
    observed: list = []
    translator, state = _translator(observed)

    events = translator.handle_update("other", _update("current_mode_update", currentModeId="plan"))

    assert events == []
    assert observed == []
    assert state.current.current_mode.mode_id == "default"


def test_updates_without_a_session_do_not_create_one():
    state = SessionStateManager()
    translator = EventTranslator(state)

    assert translator.handle_update("s1", _update("current_mode_update", currentModeId="plan")) == []
    assert translator.handle_update("s1", _update("session_info_update", title="x")) == []
    assert state.current is None


def test_unhandled_update_kinds_are_ignored(caplog):
    observed: list = []
    translator, _ = _translator(observed)

    with caplog.at_level(logging.DEBUG, logger="conduit.translator"):
        events = translator.handle_update("s1", SimpleNamespace(session_update="usage_update"))

    assert events == []
    assert observed == []
    assert "session_update.ignored" in caplog.text


@pytest.mark.asyncio
async def test_cycle_collects_events_and_ends_once():
    observed: list = []
    translator, _ = _translator(observed)
    cycle = translator.begin_cycle("s1")

    translator.handle_update("s1", _chunk("Hel"))
    translator.handle_update("s1", _chunk("lo"))
    assert cycle.complete("end_turn")
    assert not cycle.complete("max_tokens")
    assert not cycle.fail(RuntimeError("late"))
    assert not cycle.push(TextDelta(text="late"))

    events = await _drain(cycle)
    assert isinstance(events[0], MessageStart)
    assert events[0].session_id == "s1"
    assert events[1:] == [TextDelta(text="Hel"), TextDelta(text="lo"), MessageComplete(stop_reason="end_turn")]
    assert observed == []
    assert translator.active_cycle is None


@pytest.mark.asyncio
async def test_late_updates_of_an_unanswered_turn_are_dropped(caplog):
    observed: list = []
    translator, _ = _translator(observed)
    cycle = translator.begin_cycle("s1")
    cycle.complete("cancelled")
    translator.end_cycle(cycle)

    with caplog.at_level(logging.DEBUG, logger="conduit.translator"):
        events = translator.handle_update("s1", _chunk("stale"))

    assert events == [TextDelta(text="stale")]
    assert observed == []
    assert translator.outstanding_cycle is cycle
    assert "stream.stale_update" in caplog.text

    translator.settle(cycle)
    translator.handle_update("s1", _chunk("idle"))

    assert translator.outstanding_cycle is None
    assert observed == [TextDelta(text="idle")]


@pytest.mark.asyncio
async def test_settling_an_older_cycle_keeps_the_newer_one_outstanding():
    translator, _ = _translator()
    first = translator.begin_cycle("s1")
    first.complete("cancelled")
    translator.end_cycle(first)
    second = translator.begin_cycle("s1")

    translator.settle(first)

    assert translator.outstanding_cycle is second
    second.complete("end_turn")


@pytest.mark.asyncio
async def test_second_cycle_is_refused_while_streaming():
    translator, _ = _translator()
    cycle = translator.begin_cycle("s1")

    with pytest.raises(PromptInProgress):
        translator.begin_cycle("s1")

    cycle.fail(RuntimeError("boom"))
    events = await _drain(cycle)
    assert isinstance(events[-1], ErrorEvent)
    translator.end_cycle(cycle)
    assert translator.begin_cycle("s1") is not cycle


@pytest.mark.asyncio
async def test_cycle_expires_as_cancelled():
    cycle = PromptCycle("s1")
    cycle.start()
    cycle.expire_after(0.01)

    events = await asyncio.wait_for(_drain(cycle), timeout=1)

    assert events[-1] == MessageComplete(stop_reason="cancelled")
    assert cycle.state == "completed"
    assert not cycle.complete("end_turn")


@pytest.mark.asyncio
async def test_completion_disarms_the_expiry():
    cycle = PromptCycle("s1")
    cycle.start()
    cycle.expire_after(0.01)
    cycle.complete("end_turn")
    await asyncio.sleep(0.05)

    events = await _drain(cycle)
    assert events[-1] == MessageComplete(stop_reason="end_turn")
    assert sum(isinstance(event, MessageComplete) for event in events) == 1


@pytest.mark.asyncio
async def test_reset_completes_the_running_cycle_and_forgets_tools():
    translator, _ = _translator()
    translator.handle_update("s1", _update("tool_call", toolCallId="t1", title="Read"))
    cycle = translator.begin_cycle("s1")

    translator.reset()

    assert len(translator.tools) == 0
    events = await _drain(cycle)
    assert events[-1] == MessageComplete(stop_reason="cancelled")
