"""Rich rendering of stream events for the command-line front end."""

from __future__ import annotations

import difflib
from io import StringIO
from threading import Lock
from typing import Any, Iterable

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from conduit.events import (
    CommandsUpdate,
    ConfigOptionsChange,
    ErrorEvent,
    MessageComplete,
    ModeChange,
    PlanEvent,
    SessionInfoEvent,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolCallComplete,
    ToolCallDelta,
    ToolCallStartEvent,
)
from conduit.models import DiffContent, PlanEntry, ToolCall
from conduit.session_state import Session

_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()

_PLAN_STYLES = {"completed": "green", "in_progress": "orange1", "pending": "grey50"}


def render_and_print(*args: Any, **kwargs: Any) -> bool:
    """Render with rich into a buffer, then print through prompt_toolkit so the prompt is not clobbered."""
    kwargs.setdefault("end", "\n")
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        output = _render_buffer.getvalue()
    if output:
        print_formatted_text(ANSI(output), end="")
        return output.endswith("\n")
    return False


def print_agent_text(text: str) -> None:
    render_and_print(Text(text), end="")


def print_thought(text: str) -> None:
    render_and_print(Text(text, style="#aaaaaa"), end="")


def print_info(text: str, style: str = "cyan") -> None:
    render_and_print(Text(text, style=style))


def print_error(text: str) -> None:
    render_and_print(Text(text, style="bold red"))


def tool_style(status: str) -> str:
    if status == "completed":
        return "green"
    if status == "failed":
        return "red"
    return "yellow"


def print_tool(call: ToolCall, label: str | None = None) -> None:
    title = call.title or call.tool_call_id
    where = f" ({call.locations[0].path})" if call.locations else ""
    line = f"🛠️ | Tool[{label or call.status}] {call.kind}: {title}{where}"
    render_and_print(Text(line, style=tool_style(call.status)))


def print_file_edit_diff(path: str, old_text: str | None, new_text: str | None) -> None:
    diff = "".join(
        difflib.unified_diff(
            (old_text or "").splitlines(keepends=True),
            (new_text or "").splitlines(keepends=True),
            fromfile=path or "before",
            tofile=path or "after",
        )
    )
    if not diff:
        print_info(f"No changes for {path or '<file>'}", style="grey50")
        return
    render_and_print(Syntax(diff, "diff", theme="ansi_dark", line_numbers=False))


def print_plan(entries: Iterable[PlanEntry]) -> None:
    table = Table(show_header=False, box=None)
    table.add_column("", width=2)
    table.add_column("Item", style="white")
    for entry in entries:
        table.add_row(Text("•", style=_PLAN_STYLES.get(entry.status, "grey50")), entry.content)
    render_and_print(table)


def print_session_banner(session: Session) -> None:
    table = Table(show_header=False, box=None, title="conduit", title_style="bold cyan")
    table.add_column("key", style="cyan")
    table.add_column("value", style="white")
    table.add_row("session", session.id)
    table.add_row("cwd", session.cwd)
    table.add_row("mode", session.current_mode.mode_id if session.current_mode else "-")
    table.add_row("model", session.current_model.model_id if session.current_model else "-")
    render_and_print(table)


class EventPrinter:
    """Prints a stream of events; keeps track of whether the cursor sits mid-line."""

    def __init__(self, *, show_thinking: bool = False) -> None:
        self.show_thinking = show_thinking
        self.pending_newline = False

    def _break_line(self) -> None:
        if self.pending_newline:
            render_and_print("")
            self.pending_newline = False

    def __call__(self, event: StreamEvent) -> None:
        match event:
            case TextDelta(text=text):
                print_agent_text(text)
                self.pending_newline = True
            case ThinkingDelta(text=text):
                if self.show_thinking:
                    print_thought(text)
                    self.pending_newline = True
            case ToolCallStartEvent(tool_call=call):
                self._break_line()
                print_tool(call, "start")
            case ToolCallDelta(tool_call=call):
                self._break_line()
                print_tool(call)
            case ToolCallComplete(tool_call=call):
                self._break_line()
                print_tool(call)
                for item in call.content:
                    if isinstance(item, DiffContent):
                        print_file_edit_diff(item.path, item.old_text, item.new_text)
            case PlanEvent(entries=entries):
                self._break_line()
                print_plan(entries)
            case ModeChange(mode=mode):
                self._break_line()
                print_info(f"[mode -> {mode.mode_id}]", style="magenta")
            case ConfigOptionsChange(config_options=options):
                self._break_line()
                print_info(f"[config options updated: {len(options)}]", style="grey50")
            case CommandsUpdate():
                pass
            case SessionInfoEvent(title=title):
                if title:
                    self._break_line()
                    print_info(f"[session: {title}]", style="grey50")
            case MessageComplete(stop_reason=stop_reason):
                self._break_line()
                if stop_reason != "end_turn":
                    print_info(f"[stopped: {stop_reason}]", style="grey50")
            case ErrorEvent(error=error):
                self._break_line()
                print_error(f"error: {error}")
