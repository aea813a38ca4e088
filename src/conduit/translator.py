"""Turn ``session/update`` notifications into stream events.

A prompt cycle moves Idle -> Streaming -> Completed (or Errored) and ends with
exactly one terminal event. Events that arrive while no cycle is streaming go
to the ``on_event`` observer instead, except for a turn whose stream already
ended but whose ``session/prompt`` is still outstanding: its late updates are
dropped so they never reach the next stream.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Literal

from acp.schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    AvailableCommandsUpdate,
    ConfigOptionUpdate,
    CurrentModeUpdate,
    SessionInfoUpdate,
    ToolCallProgress,
    ToolCallStart,
    ToolCallUpdate,
    UserMessageChunk,
)
from acp.schema import ToolCall as WireToolCall

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
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStartEvent,
    is_terminal,
)
from conduit.log_utils import log_event
from conduit.models import ModeRef, StopReason, ToolCall
from conduit.session_state import SessionStateManager
from conduit.wire import (
    block_text,
    merge_tool_call,
    new_tool_call,
    parse_timestamp,
    to_commands,
    to_config_options,
    to_plan,
)

logger = logging.getLogger(__name__)

CycleState = Literal["idle", "streaming", "completed", "errored"]


class ToolCallTracker:
    """Latest state per ``toolCallId`` for the current session."""

    def __init__(self) -> None:
        self._calls: dict[str, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def get(self, tool_call_id: str) -> ToolCall | None:
        return self._calls.get(tool_call_id)

    def start(self, payload: WireToolCall) -> ToolCall:
        existing = self._calls.get(payload.tool_call_id)
        call = merge_tool_call(existing, payload) if existing else new_tool_call(payload)
        self._calls[call.tool_call_id] = call
        return call

    def update(self, payload: ToolCallUpdate) -> tuple[ToolCall, bool] | None:
        """Merge an update; returns ``(state, just_finished)`` or None for an unknown id."""
        current = self._calls.get(payload.tool_call_id)
        if current is None:
            log_event(logger, "tool_call.unknown_id", level=logging.WARNING, tool_call_id=payload.tool_call_id)
            return None
        if current.is_finished and payload.status is not None and payload.status != current.status:
            log_event(
                logger,
                "tool_call.status_frozen",
                level=logging.DEBUG,
                tool_call_id=current.tool_call_id,
                status=current.status,
                ignored=payload.status,
            )
        updated = merge_tool_call(current, payload)
        self._calls[updated.tool_call_id] = updated
        return updated, updated.is_finished and not current.is_finished

    def clear(self) -> None:
        self._calls.clear()


class PromptCycle:
    """Event queue for one ``send_message`` call.

    The read loop pushes without ever waiting on the consumer; the consumer
    drains :meth:`events` exactly once, in order.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.message_id = f"msg-{uuid.uuid4().hex[:12]}"
        self.state: CycleState = "idle"
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._expiry: asyncio.TimerHandle | None = None

    @property
    def finished(self) -> bool:
        return self.state in ("completed", "errored")

    def start(self) -> None:
        if self.state != "idle":
            return
        self.state = "streaming"
        self._queue.put_nowait(MessageStart(session_id=self.session_id, message_id=self.message_id))

    def push(self, event: StreamEvent) -> bool:
        if self.state != "streaming":
            log_event(logger, "stream.event_dropped", level=logging.DEBUG, event=event.type, state=self.state)
            return False
        self._queue.put_nowait(event)
        return True

    def complete(self, stop_reason: StopReason) -> bool:
        if self.state != "streaming":
            log_event(logger, "stream.late_completion", level=logging.DEBUG, stop_reason=stop_reason)
            return False
        self.state = "completed"
        self._disarm()
        self._queue.put_nowait(MessageComplete(stop_reason=stop_reason))
        return True

    def fail(self, error: BaseException) -> bool:
        if self.state != "streaming":
            return False
        self.state = "errored"
        self._disarm()
        self._queue.put_nowait(ErrorEvent(error=error))
        return True

    def expire_after(self, timeout: float) -> None:
        """End the cycle as ``cancelled`` unless the agent settles within ``timeout`` seconds."""
        if self.finished or self._expiry is not None:
            return
        self._expiry = asyncio.get_running_loop().call_later(timeout, self._expire, timeout)

    def _expire(self, timeout: float) -> None:
        self._expiry = None
        if self.complete("cancelled"):
            log_event(logger, "stream.cancel_timeout", level=logging.WARNING, timeout=timeout)

    def _disarm(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if is_terminal(event):
                return


class EventTranslator:
    """Single writer of session state for notifications, and producer of stream events."""

    def __init__(
        self,
        state: SessionStateManager,
        *,
        on_event: Callable[[StreamEvent], None] | None = None,
    ) -> None:
        self._state = state
        self._on_event = on_event
        self.tools = ToolCallTracker()
        self._cycle: PromptCycle | None = None
        self._outstanding: PromptCycle | None = None

    @property
    def active_cycle(self) -> PromptCycle | None:
        if self._cycle is not None and not self._cycle.finished:
            return self._cycle
        return None

    @property
    def outstanding_cycle(self) -> PromptCycle | None:
        """Cycle whose ``session/prompt`` has not answered yet, streaming or not."""
        return self._outstanding

    def begin_cycle(self, session_id: str) -> PromptCycle:
        if self.active_cycle is not None:
            raise PromptInProgress("a prompt is already streaming for this session")
        cycle = PromptCycle(session_id)
        cycle.start()
        self._cycle = cycle
        self._outstanding = cycle
        return cycle

    def end_cycle(self, cycle: PromptCycle) -> None:
        if self._cycle is cycle:
            self._cycle = None

    def settle(self, cycle: PromptCycle) -> None:
        """Mark the agent's answer to ``cycle``'s prompt as received."""
        if self._outstanding is cycle:
            self._outstanding = None

    def reset(self) -> None:
        """Forget tool calls when a different session becomes current."""
        self.tools.clear()
        cycle = self.active_cycle
        if cycle is not None:
            cycle.complete("cancelled")
        self._cycle = None
        self._outstanding = None

    def handle_update(self, session_id: str | None, update: Any) -> list[StreamEvent]:
        current = self._state.current
        if current is not None and session_id is not None and session_id != current.id:
            log_event(logger, "session_update.foreign_session", level=logging.WARNING, session_id=session_id)
            return []
        events = self._translate(session_id, update)
        for event in events:
            self._emit(event)
        return events

    def _emit(self, event: StreamEvent) -> None:
        cycle = self.active_cycle
        if cycle is not None:
            cycle.push(event)
            return
        if self._outstanding is not None:
            log_event(logger, "stream.stale_update", level=logging.DEBUG, event=event.type)
            return
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:  # noqa: BLE001
            logger.exception("on_event observer failed for %s", event.type)

    def _translate(self, session_id: str | None, update: Any) -> list[StreamEvent]:
        match update:
            case AgentMessageChunk(content=content):
                text = block_text(content)
                return [TextDelta(text=text)] if text is not None else []
            case AgentThoughtChunk(content=content):
                text = block_text(content)
                return [ThinkingDelta(text=text)] if text is not None else []
            case UserMessageChunk():
                return []
            case ToolCallStart():
                call = self.tools.start(update)
                events: list[StreamEvent] = [ToolCallStartEvent(tool_call=call)]
                if call.is_finished:
                    events.append(ToolCallComplete(tool_call=call))
                return events
            case ToolCallProgress():
                result = self.tools.update(update)
                if result is None:
                    return []
                call, just_finished = result
                return [ToolCallComplete(tool_call=call) if just_finished else ToolCallDelta(tool_call=call)]
            case AgentPlanUpdate(entries=entries):
                return [PlanEvent(entries=to_plan(entries))]
            case CurrentModeUpdate(current_mode_id=mode_id):
                if not self._state.apply_current_mode(session_id, mode_id):
                    return []
                return [ModeChange(mode=ModeRef(mode_id=mode_id))]
            case AvailableCommandsUpdate(available_commands=available):
                commands = to_commands(available)
                self._state.apply_commands(session_id, commands)
                return [CommandsUpdate(commands=commands)]
            case ConfigOptionUpdate(config_options=config_options):
                options = to_config_options(config_options)
                if not self._state.apply_config_options(session_id, options):
                    return []
                return [ConfigOptionsChange(config_options=options)]
            case SessionInfoUpdate(title=title, updated_at=updated_at):
                last_updated = parse_timestamp(updated_at)
                if not self._state.apply_session_info(session_id, title, last_updated):
                    return []
                return [SessionInfoEvent(title=title, last_updated=last_updated)]
            case _:
                log_event(
                    logger,
                    "session_update.ignored",
                    level=logging.DEBUG,
                    kind=getattr(update, "session_update", type(update).__name__),
                )
                return []
