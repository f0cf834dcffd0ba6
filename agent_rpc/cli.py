"""
agent-rpc command line.

    agent-rpc serve [--api API --model ID] [--no-session]   run the agent over stdio
    agent-rpc ask "question" [--api API --model ID]         spawn `serve`, print the reply
    agent-rpc models                                         list the model catalog
"""

import argparse
import asyncio
import sys

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agent_rpc.core.rpc.agent_process import build_parser, create_session, serve
from agent_rpc.core.rpc.client import RpcClient
from agent_rpc.core.rpc.exceptions import RpcError
from agent_rpc.infra.config import Config
from agent_rpc.infra.provider_registry import ProviderRegistry
from agent_rpc.utils.logger import Logger

console = Console()
err_console = Console(stderr=True)


def _serve(args) -> int:
    try:
        session = create_session(args)
    except (OSError, ValueError) as e:
        err_console.print(f"[red]Failed to create session:[/red] {escape(str(e))}")
        return 1
    try:
        asyncio.run(serve(session))
    except KeyboardInterrupt:
        pass
    return 0


def _render_event(event: dict, show_thinking: bool) -> None:
    event_type = event.get("type")
    if event_type == "message_update":
        delta = event.get("assistantMessageEvent", {})
        if delta.get("type") == "text_delta":
            console.print(delta.get("delta", ""), end="", markup=False, highlight=False)
        elif delta.get("type") == "thinking_delta" and show_thinking:
            console.print(f"[dim]{escape(delta.get('delta', ''))}[/dim]", end="")
    elif event_type == "tool_execution_start":
        console.print(f"\n[cyan]⚙ {escape(str(event.get('toolName', 'tool')))}[/cyan]")
    elif event_type == "response" and not event.get("success"):
        # Asynchronous prompt failure
        console.print(f"\n[red]Error:[/red] {escape(str(event.get('error', '')))}")
    elif event_type == "agent_end":
        console.print()
        if event.get("aborted"):
            console.print("[yellow]Aborted[/yellow]")


async def _ask(args) -> int:
    client_args = []
    if args.no_session:
        client_args.append("--no-session")
    client = RpcClient(
        api=args.api,
        model=args.model,
        args=client_args,
        request_timeout=args.timeout,
    )
    prompt_failed = asyncio.Event()

    def watch(event):
        _render_event(event, args.thinking)
        if event.get("type") == "response" and event.get("command") == "prompt" and not event.get("success"):
            prompt_failed.set()

    async with client:
        client.on_event(watch)
        try:
            if args.api and args.model:
                await client.set_model(args.api, args.model)
            turn = asyncio.ensure_future(client.prompt_and_wait(args.message, timeout=args.idle_timeout))
            failure = asyncio.ensure_future(prompt_failed.wait())
            try:
                await asyncio.wait({turn, failure}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                failure.cancel()
            if prompt_failed.is_set():
                # No agent_end follows a failed prompt
                turn.cancel()
                try:
                    await turn
                except (asyncio.CancelledError, RpcError):
                    pass
                return 1
            await turn
            if args.stats:
                stats = await client.get_session_stats()
                console.print(
                    f"[dim]{stats.total_messages} messages, "
                    f"{stats.tokens.total} tokens, ${stats.cost:.4f}[/dim]"
                )
        except RpcError as e:
            err_console.print(f"[red]{escape(str(e))}[/red]")
            stderr = client.get_stderr().strip()
            if stderr:
                err_console.print(f"[dim]{escape(stderr)}[/dim]")
            return 1
    return 0


def _models(args) -> int:
    table = Table(title="Available models")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Context", justify="right")
    table.add_column("Reasoning", justify="center")
    for model in ProviderRegistry.discover_available_models():
        table.add_row(model.api, model.id, f"{model.context_window:,}", "✓" if model.reasoning else "")
    console.print(table)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="agent-rpc", description="Headless agent RPC")
    parser.add_argument("--settings", type=str, default=None, help="Path to settings.json")
    sub = parser.add_subparsers(dest="command", required=True)

    build_parser(sub.add_parser("serve", help="Run the agent process over stdio"))

    ask = sub.add_parser("ask", help="Send one prompt to a fresh agent and print the reply")
    ask.add_argument("message", help="Prompt text")
    ask.add_argument("--api", type=str, default=None)
    ask.add_argument("--model", type=str, default=None)
    ask.add_argument("--no-session", action="store_true", help="Do not persist the session")
    ask.add_argument("--thinking", action="store_true", help="Show thinking output")
    ask.add_argument("--stats", action="store_true", help="Print session stats afterwards")
    ask.add_argument("--timeout", type=float, default=None, help="Per-request timeout (seconds)")
    ask.add_argument("--idle-timeout", type=float, default=None, help="Max wait for the turn (seconds)")

    sub.add_parser("models", help="List the model catalog")

    args = parser.parse_args(argv)
    if args.settings:
        Config.initialize(args.settings)
    Logger.debug(f"[CLI] agent-rpc {args.command}")

    if args.command == "serve":
        return _serve(args)
    if args.command == "ask":
        try:
            return asyncio.run(_ask(args))
        except KeyboardInterrupt:
            return 130
    return _models(args)


if __name__ == "__main__":
    sys.exit(main())
