"""Interactive command-line front end: ``conduit [--binary PATH] [--cwd DIR] ...``."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable

from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.key_binding import KeyBindings  # type: ignore

from conduit.client import AcpClient
from conduit.config import ClientOptions, SessionConfig, default_mcp_config_path, load_mcp_config
from conduit.display import EventPrinter, print_error, print_info, print_session_banner, render_and_print
from conduit.errors import ConduitError, ConnectError
from conduit.log_utils import LogSettings, configure_logging
from conduit.models import PermissionDecision, PermissionRequest

CANCEL_TOKEN = "__CANCEL__"


@dataclass
class CliState:
    show_thinking: bool = False
    running: bool = True


SlashHandler = Callable[[AcpClient, CliState, str], Awaitable[None]]


@dataclass
class SlashCommandDef:
    description: str
    hint: str
    handler: SlashHandler


SLASH_HANDLERS: dict[str, SlashCommandDef] = {}


def register_slash_command(name: str, description: str, hint: str) -> Callable[[SlashHandler], SlashHandler]:
    """Decorator to register a slash command."""

    def _decorator(func: SlashHandler) -> SlashHandler:
        SLASH_HANDLERS[name] = SlashCommandDef(description=description, hint=hint, handler=func)
        return func

    return _decorator


@register_slash_command("/help", description="Show available slash commands.", hint="/help")
async def _handle_help(client: AcpClient, _state: CliState, _argument: str) -> None:
    for entry in SLASH_HANDLERS.values():
        print_info(f"{entry.hint:<16} - {entry.description}", style="white")
    session = client.get_session()
    for command in session.available_commands if session else []:
        print_info(f"/{command.name:<15} - {command.description or 'Handled by agent'}", style="grey50")


@register_slash_command("/mode", description="Show modes or switch to the given mode.", hint="/mode [id]")
async def _handle_mode(client: AcpClient, _state: CliState, argument: str) -> None:
    if argument:
        await client.set_mode(argument)
        print_info(f"[mode -> {argument}]", style="magenta")
        return
    current = client.get_current_mode()
    for mode in client.get_available_modes():
        marker = "*" if current and current.mode_id == mode.id else " "
        print_info(f"{marker} {mode.id:<16} {mode.name}", style="white")


@register_slash_command("/model", description="Show models or switch to the given model.", hint="/model [id]")
async def _handle_model(client: AcpClient, _state: CliState, argument: str) -> None:
    if argument:
        await client.set_model(argument)
        print_info(f"[model -> {argument}]", style="magenta")
        return
    current = client.get_current_model()
    for model in client.get_available_models():
        marker = "*" if current and current.model_id == model.id else " "
        print_info(f"{marker} {model.id:<24} {model.name}", style="white")


@register_slash_command("/sessions", description="List sessions the agent knows about.", hint="/sessions")
async def _handle_sessions(client: AcpClient, _state: CliState, _argument: str) -> None:
    result = await client.list_sessions()
    if not result.sessions:
        print_info("No sessions.", style="grey50")
    for listing in result.sessions:
        updated = listing.last_updated.isoformat(timespec="seconds") if listing.last_updated else "-"
        print_info(f"{listing.session_id}  {updated}  {listing.title or ''}", style="white")


@register_slash_command("/cancel", description="Cancel the running turn.", hint="/cancel")
async def _handle_cancel(client: AcpClient, _state: CliState, _argument: str) -> None:
    await client.cancel()
    print_info("[cancelled]", style="grey50")


@register_slash_command("/thinking", description="Toggle display of agent reasoning.", hint="/thinking on|off")
async def _handle_thinking(_client: AcpClient, state: CliState, argument: str) -> None:
    state.show_thinking = argument.strip().lower() not in {"off", "false", "0"}
    print_info("Thinking output enabled." if state.show_thinking else "Thinking output disabled.", style="grey50")


@register_slash_command("/quit", description="Disconnect and exit.", hint="/quit")
async def _handle_quit(_client: AcpClient, state: CliState, _argument: str) -> None:
    state.running = False


async def handle_slash_command(line: str, client: AcpClient, state: CliState) -> bool:
    """Run a local slash command; unknown commands are left for the agent."""
    name, _, argument = line.strip().partition(" ")
    entry = SLASH_HANDLERS.get(name)
    if entry is None:
        return False
    try:
        await entry.handler(client, state, argument.strip())
    except ConduitError as exc:
        print_error(f"{name} failed: {exc}")
    return True


async def ask_permission(request: PermissionRequest) -> PermissionDecision:
    """Prompt on the terminal for a permission choice."""
    call = request.tool_call
    render_and_print("")
    print_info(f"[permission] {call.title or call.tool_call_id} ({call.kind})", style="yellow")
    for idx, option in enumerate(request.options, start=1):
        print_info(f"{idx}) {option.name}", style="white")
    session: PromptSession = PromptSession()
    choice = (await session.prompt_async("Permission choice (number, empty to deny): ")).strip()
    if choice.isdigit() and 1 <= int(choice) <= len(request.options):
        option = request.options[int(choice) - 1]
        return PermissionDecision(granted=option.kind.startswith("allow"), option_id=option.option_id)
    return PermissionDecision(granted=False)


async def allow_everything(_request: PermissionRequest) -> PermissionDecision:
    return PermissionDecision(granted=True)


async def interactive_loop(client: AcpClient, state: CliState) -> None:
    """REPL: each line is a prompt turn; Escape at the prompt cancels."""
    kb = KeyBindings()

    @kb.add("escape")
    def _(event):  # type: ignore
        if not event.app.is_done:
            event.app.exit(result=CANCEL_TOKEN)

    session: PromptSession = PromptSession(key_bindings=kb)
    while state.running and client.is_connected():
        try:
            mode = client.get_current_mode()
            line = await session.prompt_async(f"{mode.mode_id if mode else 'conduit'}> ")
        except EOFError:
            break
        except KeyboardInterrupt:
            continue
        if line == CANCEL_TOKEN:
            await client.cancel()
            continue
        if not line.strip():
            continue
        if line.startswith("/") and await handle_slash_command(line, client, state):
            continue

        printer = EventPrinter(show_thinking=state.show_thinking)
        stream = client.send_message(line)
        try:
            async for event in stream:
                printer(event)
        except KeyboardInterrupt:
            await client.cancel()
        except ConduitError as exc:
            print_error(str(exc))
        finally:
            await stream.aclose()

    if not client.is_connected() and state.running:
        print_error("agent disconnected")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="conduit", description="Chat with an ACP agent over stdio.")
    parser.add_argument("--binary", help="Agent executable (default: claude-code-acp on PATH)")
    parser.add_argument("--cwd", default=os.getcwd(), help="Session working directory")
    parser.add_argument("--mcp-config", help="JSON array of MCP server entries (default: mcp.json in the config dir)")
    parser.add_argument("--mode", choices=["native", "passthrough"], default="native", help="Terminal hosting mode")
    parser.add_argument("--yolo", action="store_true", help="Grant every permission request without asking")
    parser.add_argument("--show-thinking", action="store_true", help="Print agent reasoning as it streams")
    parser.add_argument("agent_args", nargs=argparse.REMAINDER, help="Extra arguments passed to the agent")
    return parser


def _mcp_servers(explicit: str | None) -> list:
    if explicit:
        return load_mcp_config(explicit)
    default = default_mcp_config_path()
    return load_mcp_config(str(default)) if default.is_file() else []


async def main(argv: list[str]) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(LogSettings.from_env())
    agent_args = args.agent_args[1:] if args.agent_args[:1] == ["--"] else list(args.agent_args)

    options = ClientOptions(
        mode=args.mode,
        permission_handler=allow_everything if args.yolo else ask_permission,
    )
    config = SessionConfig(
        cwd=os.path.abspath(args.cwd),
        binary_path=args.binary,
        args=agent_args,
        mcp_servers=_mcp_servers(args.mcp_config),
    )
    state = CliState(show_thinking=args.show_thinking)

    async with AcpClient(options) as client:
        try:
            session = await client.connect(config)
        except ConnectError as exc:
            print(f"conduit: {exc}", file=sys.stderr)
            return 1
        print_session_banner(session)
        await interactive_loop(client, state)
    return 0


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main(sys.argv[1:])))
    except KeyboardInterrupt:
        raise SystemExit(130)
