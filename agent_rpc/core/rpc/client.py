"""
RPC Client: parent-side interface for driving an agent subprocess.

Spawns the agent as a child process, writes commands to its stdin and reads
responses and events from its stdout. Responses are matched to requests by
id; everything else is delivered to event listeners.

Usage:
    async with RpcClient(api="openai", model="gpt-4o-mini") as client:
        events = await client.prompt_and_wait("Refactor this function")
        state = await client.get_state()
"""

import asyncio
import json
import os
import signal
import sys
from typing import Any, Callable, Dict, List, Optional

from agent_rpc.infra.config import Config
from agent_rpc.utils.logger import Logger

from .exceptions import (
    AgentProcessError,
    ClientNotStartedError,
    RpcCommandError,
    RpcTimeoutError,
)
from .protocol import (
    BranchInfo,
    ModelInfo,
    RpcResponse,
    RpcSessionState,
    SessionInfo,
    SessionStats,
    encode_line,
    is_response,
)

EventListener = Callable[[Dict[str, Any]], None]

STDOUT_LINE_LIMIT = 64 * 1024 * 1024


class RpcClient:
    """
    Parent-side RPC client. Manages the agent subprocess lifecycle.

    `command` replaces the default child invocation
    (`python -m agent_rpc.core.rpc.agent_process`); `args` are appended either
    way. Timing arguments fall back to Config.
    """

    def __init__(
        self,
        command: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        api: Optional[str] = None,
        model: Optional[str] = None,
        args: Optional[List[str]] = None,
        request_timeout: Optional[float] = None,
        startup_grace: Optional[float] = None,
        stop_grace: Optional[float] = None,
        fail_fast: bool = False,
    ):
        self.command = command or [sys.executable, "-m", "agent_rpc.core.rpc.agent_process"]
        self.cwd = cwd
        self.env = env
        self.api = api
        self.model = model
        self.args = list(args or [])
        self.request_timeout = Config.REQUEST_TIMEOUT if request_timeout is None else request_timeout
        self.startup_grace = Config.STARTUP_GRACE if startup_grace is None else startup_grace
        self.stop_grace = Config.STOP_GRACE if stop_grace is None else stop_grace
        self.fail_fast = fail_fast

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr = ""
        self._listeners: List[EventListener] = []
        self._pending: Dict[str, asyncio.Future] = {}
        self._request_counter = 0

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Spawn the agent subprocess. Raises AgentProcessError if it dies on startup."""
        if self._proc is not None:
            raise RuntimeError("Client already started")

        argv = list(self.command)
        if self.api:
            argv.extend(["--api", self.api])
        if self.model:
            argv.extend(["--model", self.model])
        argv.extend(self.args)

        env = dict(os.environ)
        if self.env:
            env.update(self.env)

        self._stderr = ""
        self._proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
            limit=STDOUT_LINE_LIMIT,
        )
        Logger.info(f"[RpcClient] Started agent pid={self._proc.pid}: {' '.join(argv)}")

        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._reader_task = asyncio.create_task(self._read_stdout())

        await asyncio.sleep(self.startup_grace)
        if self._proc.returncode is not None:
            exit_code = self._proc.returncode
            await self._drain_stderr()
            await self._cancel_tasks()
            self._proc = None
            raise AgentProcessError(
                f"Agent process exited immediately with code {exit_code}. Stderr: {self._stderr}",
                exit_code=exit_code,
                stderr=self._stderr,
            )

    async def stop(self) -> None:
        """Terminate the agent: SIGTERM, then SIGKILL after the grace period."""
        proc = self._proc
        if proc is None:
            return

        await self._cancel_tasks(stderr=False)
        if proc.returncode is None:
            try:
                proc.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                Logger.warning(f"[RpcClient] Agent pid={proc.pid} ignored SIGTERM, killing")
                proc.kill()
                await proc.wait()
        await self._drain_stderr()
        await self._cancel_tasks()

        # Abandoned, not rejected: each caller still times out at its own deadline
        self._pending.clear()
        self._proc = None
        Logger.info(f"[RpcClient] Agent pid={proc.pid} stopped (code {proc.returncode})")

    async def __aenter__(self) -> "RpcClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def get_stderr(self) -> str:
        """Everything the agent has written to stderr so far."""
        return self._stderr

    async def _cancel_tasks(self, stderr: bool = True) -> None:
        tasks = [self._reader_task]
        if stderr:
            tasks.append(self._stderr_task)
        for task in tasks:
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        if stderr:
            self._stderr_task = None

    async def _drain_stderr(self) -> None:
        if self._stderr_task and not self._stderr_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=0.5)
            except asyncio.TimeoutError:
                pass

    # -- Reading ------------------------------------------------------------

    async def _read_stderr(self) -> None:
        while True:
            chunk = await self._proc.stderr.read(4096)
            if not chunk:
                return
            self._stderr += chunk.decode("utf-8", errors="replace")

    async def _read_stdout(self) -> None:
        """Reader task: parse JSON lines, route responses, fan out events."""
        stream = self._proc.stdout
        while True:
            try:
                raw = await stream.readline()
            except ValueError as e:
                Logger.warning(f"[RpcClient] Dropped oversized line: {e}")
                continue
            if not raw:
                break
            self._handle_line(raw.decode("utf-8", errors="replace"))

        # stdout closes slightly before the exit status is reaped
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=self.stop_grace)
        except asyncio.TimeoutError:
            pass
        await self._drain_stderr()
        self._on_exit()

    def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            Logger.debug(f"[RpcClient] Ignoring non-JSON line: {line[:200]}")
            return

        if is_response(message):
            request_id = message.get("id")
            future = self._pending.pop(request_id, None) if isinstance(request_id, str) else None
            if future is not None:
                if not future.done():
                    future.set_result(RpcResponse.from_dict(message))
                return

        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                Logger.error(f"[RpcClient] Event listener failed: {e}")

    def _on_exit(self) -> None:
        code = self._proc.returncode if self._proc else None
        Logger.info(f"[RpcClient] Agent stdout closed (code {code})")
        if not self.fail_fast:
            return
        error = AgentProcessError(
            f"Agent process exited with code {code}. Stderr: {self._stderr}",
            exit_code=code,
            stderr=self._stderr,
        )
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # -- Sending ------------------------------------------------------------

    async def send(self, command: Dict[str, Any]) -> RpcResponse:
        """
        Send one command and wait for its response.

        Raises:
            ClientNotStartedError: no running agent
            RpcTimeoutError: no response within request_timeout
        """
        if self._proc is None or self._proc.stdin is None:
            raise ClientNotStartedError()
        if self.fail_fast and not self.is_alive:
            raise AgentProcessError(
                f"Agent process exited with code {self._proc.returncode}. Stderr: {self._stderr}",
                exit_code=self._proc.returncode,
                stderr=self._stderr,
            )

        self._request_counter += 1
        request_id = f"req_{self._request_counter}"
        command_type = command.get("type", "")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            self._proc.stdin.write(encode_line({**command, "id": request_id}).encode("utf-8"))
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The child is gone; the pending entry stays and times out unless fail_fast
            Logger.warning(f"[RpcClient] Write for {command_type} failed: {e}")
            if self.fail_fast:
                self._pending.pop(request_id, None)
                raise AgentProcessError(
                    f"Agent process is not accepting input. Stderr: {self._stderr}",
                    exit_code=self._proc.returncode,
                    stderr=self._stderr,
                ) from e

        try:
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            Logger.warning(f"[RpcClient] Timeout waiting for {command_type} ({request_id})")
            raise RpcTimeoutError(
                f"Timeout waiting for response to {command_type}. Stderr: {self._stderr}"
            ) from None
        finally:
            self._pending.pop(request_id, None)

    async def _call(self, command: Dict[str, Any]) -> Any:
        response = await self.send(command)
        return self._get_data(response)

    @staticmethod
    def _get_data(response: RpcResponse) -> Any:
        if not response.success:
            raise RpcCommandError(response.command, response.error or "")
        return response.data

    # -- Events -------------------------------------------------------------

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to agent events; returns the unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    async def wait_for_idle(self, timeout: Optional[float] = None) -> None:
        """Resolve on the next agent_end event."""
        await self.collect_events(timeout)

    async def collect_events(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Buffer every event up to and including the next agent_end."""
        timeout = Config.IDLE_TIMEOUT if timeout is None else timeout
        events: List[Dict[str, Any]] = []
        done = asyncio.get_running_loop().create_future()

        def listener(event):
            events.append(event)
            if event.get("type") == "agent_end" and not done.done():
                done.set_result(None)

        unsubscribe = self.on_event(listener)
        try:
            await asyncio.wait_for(done, timeout=timeout)
        except asyncio.TimeoutError:
            raise RpcTimeoutError(
                f"Timeout waiting for agent to become idle. Stderr: {self._stderr}"
            ) from None
        finally:
            unsubscribe()
        return events

    async def prompt_and_wait(self, message: str, attachments: Optional[List[Dict[str, Any]]] = None,
                              timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Send a prompt and return its events through agent_end."""
        collector = asyncio.ensure_future(self.collect_events(timeout))
        # Let the collector subscribe before any event can arrive
        await asyncio.sleep(0)
        try:
            await self.prompt(message, attachments)
        except BaseException:
            collector.cancel()
            raise
        return await collector

    # -- Prompting ----------------------------------------------------------

    async def prompt(self, message: str, attachments: Optional[List[Dict[str, Any]]] = None) -> None:
        """Start a turn. Returns once accepted; events follow."""
        command: Dict[str, Any] = {"type": "prompt", "message": message}
        if attachments:
            command["attachments"] = attachments
        await self._call(command)

    async def queue_message(self, message: str) -> None:
        await self._call({"type": "queue_message", "message": message})

    async def abort(self) -> None:
        await self._call({"type": "abort"})

    async def reset(self) -> None:
        await self._call({"type": "reset"})

    # -- State --------------------------------------------------------------

    async def get_state(self) -> RpcSessionState:
        return RpcSessionState.model_validate(await self._call({"type": "get_state"}))

    async def get_messages(self) -> List[Dict[str, Any]]:
        data = await self._call({"type": "get_messages"})
        return data["messages"]

    # -- Model --------------------------------------------------------------

    async def set_model(self, api: str, model_id: str) -> Dict[str, str]:
        """Returns {api, modelId} of the selected model."""
        return await self._call({"type": "set_model", "api": api, "modelId": model_id})

    async def get_available_models(self) -> List[ModelInfo]:
        data = await self._call({"type": "get_available_models"})
        return [ModelInfo.model_validate(m) for m in data["models"]]

    async def set_thinking_level(self, level: str) -> None:
        await self._call({"type": "set_thinking_level", "level": level})

    async def set_queue_mode(self, mode: str) -> None:
        await self._call({"type": "set_queue_mode", "mode": mode})

    async def compact(self, keep_recent: Optional[int] = None) -> None:
        command: Dict[str, Any] = {"type": "compact"}
        if keep_recent is not None:
            command["keepRecent"] = keep_recent
        await self._call(command)

    # -- Session ------------------------------------------------------------

    async def get_session_stats(self) -> SessionStats:
        return SessionStats.model_validate(await self._call({"type": "get_session_stats"}))

    async def export_html(self, output_path: Optional[str] = None) -> str:
        """Returns the path of the written file."""
        command: Dict[str, Any] = {"type": "export_html"}
        if output_path:
            command["outputPath"] = output_path
        data = await self._call(command)
        return data["path"]

    async def switch_session(self, session_path: str) -> None:
        await self._call({"type": "switch_session", "sessionPath": session_path})

    async def list_sessions(self) -> List[SessionInfo]:
        data = await self._call({"type": "list_sessions"})
        return [SessionInfo.model_validate(s) for s in data["sessions"]]

    # -- Branches -----------------------------------------------------------

    async def create_branch(self, name: str, from_node_id: Optional[str] = None) -> None:
        command: Dict[str, Any] = {"type": "create_branch", "name": name}
        if from_node_id:
            command["fromNodeId"] = from_node_id
        await self._call(command)

    async def switch_branch(self, name: str) -> None:
        await self._call({"type": "switch_branch", "name": name})

    async def branch_and_switch(self, name: str, from_node_id: Optional[str] = None) -> BranchInfo:
        command: Dict[str, Any] = {"type": "branch_and_switch", "name": name}
        if from_node_id:
            command["fromNodeId"] = from_node_id
        return BranchInfo.model_validate(await self._call(command))

    async def list_branches(self) -> List[BranchInfo]:
        data = await self._call({"type": "list_branches"})
        return [BranchInfo.model_validate(b) for b in data["branches"]]

    async def merge_branch(self, from_branch: str) -> None:
        await self._call({"type": "merge_branch", "fromBranch": from_branch})

    # -- Checkpoints --------------------------------------------------------

    async def create_checkpoint(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        command: Dict[str, Any] = {"type": "create_checkpoint", "name": name}
        if metadata is not None:
            command["metadata"] = metadata
        await self._call(command)
