"""
RPC Agent Process: the server side of the headless RPC protocol.

Entry point for the agent subprocess. It:
1. Reads one JSON command per line from stdin
2. Runs each command against the AgentSession in its own asyncio task
3. Writes exactly one response line per command to stdout
4. Forwards every session event to stdout as it happens

Usage:
    python -m agent_rpc.core.rpc.agent_process [--api API --model ID] [--no-session]

Or programmatically:
    dispatcher = RpcDispatcher(session)
    await dispatcher.run()   # until stdin closes
"""

import asyncio
import os
import sys
from typing import Any, Callable, Dict, Optional, Set, TextIO

from agent_rpc.infra.config import Config
from agent_rpc.infra.provider_registry import ProviderRegistry
from agent_rpc.utils.logger import Logger

from .exceptions import CommandParseError, InvalidCommandError, UnknownCommandError
from .protocol import (
    PARSE_COMMAND,
    AbortCommand,
    BranchAndSwitchCommand,
    CompactCommand,
    CreateBranchCommand,
    CreateCheckpointCommand,
    ExportHtmlCommand,
    GetAvailableModelsCommand,
    GetMessagesCommand,
    GetSessionStatsCommand,
    GetStateCommand,
    ListBranchesCommand,
    ListSessionsCommand,
    MergeBranchCommand,
    ModelInfo,
    ModelRef,
    PromptCommand,
    QueueMessageCommand,
    ResetCommand,
    RpcCommand,
    RpcResponse,
    RpcSessionState,
    SetModelCommand,
    SetQueueModeCommand,
    SetThinkingLevelCommand,
    SwitchBranchCommand,
    SwitchSessionCommand,
    emit_message,
    error_response,
    parse_command,
    success_response,
)

DEFAULT_KEEP_RECENT = 10

# Large attachments arrive base64-encoded on a single line
STDIN_LINE_LIMIT = 64 * 1024 * 1024


class RpcDispatcher:
    """
    Translates RPC commands into AgentSession operations.

    Lifecycle:
        1. __init__: subscribe to session events (forwarded for the process lifetime)
        2. run(): read stdin until EOF, one task per line
        3. close(): cancel outstanding work, unsubscribe
    """

    def __init__(self, session, output: Optional[TextIO] = None):
        self.session = session
        self._output = output
        self._tasks: Set[asyncio.Task] = set()
        self._prompt_tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = session.subscribe(self._forward_event)

    # -- Output --------------------------------------------------------------

    def _write(self, message) -> None:
        # Synchronous on purpose: one whole line per call, never interleaved.
        # A parent that stops reading stdout stalls the loop here.
        try:
            emit_message(message, self._output or sys.stdout)
        except (BrokenPipeError, OSError) as e:
            Logger.error(f"[RpcServer] Failed to write output: {e}")

    def _forward_event(self, event: Dict[str, Any]) -> None:
        self._write(event)

    # -- Dispatch ------------------------------------------------------------

    async def handle_line(self, line: str) -> Optional[RpcResponse]:
        """Decode, execute and answer one input line. Blank lines are ignored."""
        if not line.strip():
            return None

        try:
            command = parse_command(line)
        except UnknownCommandError as e:
            response = error_response(None, e.command_type, str(e))
        except InvalidCommandError as e:
            response = error_response(e.request_id, e.command_type, str(e))
        except CommandParseError as e:
            response = error_response(None, PARSE_COMMAND, str(e))
        else:
            response = await self.handle_command(command)

        if response.success is False:
            Logger.warning(f"[RpcServer] {response.command} failed: {response.error}")
        self._write(response)
        return response

    async def handle_command(self, command: RpcCommand) -> RpcResponse:
        """Execute one command. Handler exceptions become failed responses."""
        Logger.debug(f"[RpcServer] Handling {command.type} (id={command.id})")
        try:
            return await self._execute(command)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            Logger.exception(f"[RpcServer] Handler for {command.type} failed: {e}")
            return error_response(command.id, command.type, str(e))

    async def _execute(self, command: RpcCommand) -> RpcResponse:
        session = self.session
        rid = command.id

        match command:
            # Prompting
            case PromptCommand(message=message, attachments=attachments):
                task = asyncio.create_task(session.prompt(message, attachments=attachments))
                self._track(task, self._prompt_tasks)
                task.add_done_callback(self._prompt_done)
                return success_response(rid, command.type)

            case QueueMessageCommand(message=message):
                await session.queue_message(message)
                return success_response(rid, command.type)

            case AbortCommand():
                await session.abort()
                return success_response(rid, command.type)

            case ResetCommand():
                await session.reset()
                return success_response(rid, command.type)

            # State
            case GetStateCommand():
                return success_response(rid, command.type, self._session_state())

            case GetMessagesCommand():
                return success_response(rid, command.type, {"messages": session.messages})

            # Model
            case SetModelCommand(api=api, model_id=model_id):
                model = ProviderRegistry.find_model(api, model_id)
                if model is None:
                    return error_response(rid, command.type, f"Model not found: {api}/{model_id}")
                await session.change_model(model)
                return success_response(rid, command.type, {"api": model.api, "modelId": model.id})

            case GetAvailableModelsCommand():
                models = [
                    ModelInfo(api=m.api, id=m.id, context_window=m.context_window,
                              reasoning=m.reasoning).to_wire()
                    for m in ProviderRegistry.discover_available_models()
                ]
                return success_response(rid, command.type, {"models": models})

            case SetThinkingLevelCommand(level=level):
                await session.update_thinking_level(level)
                return success_response(rid, command.type)

            case SetQueueModeCommand(mode=mode):
                session.set_queue_mode(mode)
                return success_response(rid, command.type)

            case CompactCommand(keep_recent=keep_recent):
                await session.compact_history(
                    DEFAULT_KEEP_RECENT if keep_recent is None else keep_recent
                )
                return success_response(rid, command.type)

            # Session
            case GetSessionStatsCommand():
                return success_response(rid, command.type, session.get_session_stats())

            case ExportHtmlCommand(output_path=output_path):
                path = session.export_to_html(output_path)
                return success_response(rid, command.type, {"path": path})

            case SwitchSessionCommand(session_path=session_path):
                await session.switch_session(session_path)
                return success_response(rid, command.type)

            case ListSessionsCommand():
                sessions = [s.to_wire() for s in session.list_sessions()]
                return success_response(rid, command.type, {"sessions": sessions})

            # Branches
            case CreateBranchCommand(name=name, from_node_id=from_node_id):
                session.create_branch(name, from_node_id)
                return success_response(rid, command.type)

            case SwitchBranchCommand(name=name):
                await session.switch_branch(name)
                return success_response(rid, command.type)

            case BranchAndSwitchCommand(name=name, from_node_id=from_node_id):
                info = await session.branch_and_switch(name, from_node_id)
                return success_response(rid, command.type, info)

            case ListBranchesCommand():
                branches = [b.to_wire() for b in session.list_branches()]
                return success_response(rid, command.type, {"branches": branches})

            case MergeBranchCommand(from_branch=from_branch):
                await session.smart_merge_branch(from_branch)
                return success_response(rid, command.type)

            # Checkpoints
            case CreateCheckpointCommand(name=name, metadata=metadata):
                session.create_checkpoint(name, metadata)
                return success_response(rid, command.type)

            case _:
                command_type = getattr(command, "type", "unknown")
                return error_response(rid, command_type, f"Unknown command: {command_type}")

    def _session_state(self) -> RpcSessionState:
        session = self.session
        model = session.model
        return RpcSessionState(
            model=ModelRef(api=model.api, model_id=model.id,
                           provider_options=session.provider_options) if model else None,
            is_streaming=session.is_streaming,
            queue_mode=session.queue_mode,
            session_file=session.session_file,
            session_id=session.session_id,
            active_branch=session.active_branch,
            branches=session.branches,
            message_count=len(session.messages),
            queued_message_count=session.queued_message_count,
        )

    def _prompt_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # No id: the prompt was already acknowledged
            Logger.error(f"[RpcServer] Prompt failed: {error}")
            self._write(error_response(None, "prompt", str(error)))

    def _track(self, task: asyncio.Task, tasks: Optional[Set[asyncio.Task]] = None) -> None:
        tasks = self._tasks if tasks is None else tasks
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    # -- Main loop -----------------------------------------------------------

    async def run(self, reader: Optional[asyncio.StreamReader] = None) -> None:
        """Serve commands until the input stream closes."""
        if reader is None:
            reader = await _stdin_reader()
        Logger.info(f"[RpcServer] Serving session {self.session.session_id}")

        try:
            while True:
                try:
                    raw = await reader.readline()
                except ValueError as e:
                    # Line over the stream limit; the rest of it has been discarded
                    self._write(error_response(None, PARSE_COMMAND, f"Failed to parse command: {e}"))
                    continue
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace")
                self._track(asyncio.create_task(self.handle_line(line)))
        finally:
            await self._finish_commands()
            await self.close()
        Logger.info("[RpcServer] Input closed, shutting down")

    async def _finish_commands(self) -> None:
        # Commands already read still get their response
        commands = [t for t in self._tasks if not t.done()]
        if commands:
            await asyncio.wait(commands, timeout=Config.STOP_GRACE)

    async def close(self) -> None:
        """Cancel outstanding work and stop forwarding events."""
        pending = [t for t in self._tasks | self._prompt_tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STDIN_LINE_LIMIT)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def build_parser(parser=None):
    """Arguments shared by `python -m agent_rpc.core.rpc.agent_process` and `agent-rpc serve`."""
    import argparse

    parser = parser or argparse.ArgumentParser(description="Headless RPC agent process")
    parser.add_argument("--api", type=str, default=None, help="Model provider, e.g. openai")
    parser.add_argument("--model", type=str, default=None,
                        help="Model id, or provider/model when --api is omitted")
    parser.add_argument("--session", type=str, default=None, help="Open this session file")
    parser.add_argument("--continue", dest="continue_recent", action="store_true",
                        help="Continue the most recent session")
    parser.add_argument("--no-session", action="store_true", help="Keep the session in memory only")
    parser.add_argument("--sessions-dir", type=str, default=None, help="Directory for session files")
    parser.add_argument("--cwd", type=str, default=None, help="Working directory recorded in the session")
    parser.add_argument("--chunk-delay", type=float, default=0.005,
                        help="Seconds between streamed reply chunks")
    return parser


def create_session(args):
    """Build the LocalAgentSession described by parsed CLI arguments."""
    from agent_rpc.core.session import LocalAgentSession
    from agent_rpc.core.session_tree import SessionTree

    Config.ensure_dirs()
    cwd = args.cwd or os.getcwd()
    sessions_dir = None if args.no_session else (args.sessions_dir or Config.SESSIONS_DIR)
    if sessions_dir:
        os.makedirs(sessions_dir, exist_ok=True)

    if args.session:
        tree = SessionTree.open(args.session)
    elif args.continue_recent and sessions_dir:
        tree = SessionTree.continue_recent(cwd, sessions_dir)
    else:
        tree = SessionTree.create(cwd, sessions_dir)

    model = None
    if args.api and args.model:
        model = ProviderRegistry.find_model(args.api, args.model)
    elif args.model or Config.DEFAULT_MODEL:
        model = ProviderRegistry.resolve_model(args.model or Config.DEFAULT_MODEL)
    if model is None and (args.api or args.model):
        Logger.warning(f"[RpcServer] Requested model not found: {args.api or ''}/{args.model or ''}")

    session = LocalAgentSession(tree, model=model, sessions_dir=sessions_dir,
                                chunk_delay=args.chunk_delay)
    if model is not None and tree.get_last_provider() is None:
        tree.append_provider(model.api, model.id)
    return session


async def serve(session) -> None:
    dispatcher = RpcDispatcher(session)
    await dispatcher.run()


def main(argv=None) -> int:
    """Entry point when run as `python -m agent_rpc.core.rpc.agent_process`."""
    args = build_parser().parse_args(argv)
    try:
        session = create_session(args)
    except (OSError, ValueError) as e:
        Logger.error(f"[RpcServer] Failed to create session: {e}")
        print(f"Failed to create session: {e}", file=sys.stderr)
        return 1

    try:
        asyncio.run(serve(session))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
