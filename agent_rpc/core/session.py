"""
Agent session interface consumed by the RPC dispatcher, and the offline
LocalAgentSession used when the server runs without an external agent.

The dispatcher only ever talks to a session through AgentSession; whatever
actually executes prompts (LLM engine, tools) lives behind it.
"""

import asyncio
import os
import re
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from agent_rpc.core.export_html import export_session_html
from agent_rpc.core.rpc.protocol import BranchInfo, SessionInfo, SessionStats, TokenStats
from agent_rpc.core.session_tree import SessionTree, message_text
from agent_rpc.infra.provider_registry import ModelSpec, ProviderRegistry
from agent_rpc.utils.logger import Logger

EventListener = Callable[[Dict[str, Any]], None]


class AgentSession(ABC):
    """
    Narrow contract between the RPC layer and the agent.

    Coroutines may suspend (model calls, tool execution); plain methods and
    properties must return immediately.
    """

    # -- Prompting -----------------------------------------------------------

    @abstractmethod
    async def prompt(self, text: str, attachments: Optional[List[Dict[str, Any]]] = None) -> None:
        """Run a full agent turn. Completes when the agent is idle again."""

    @abstractmethod
    async def queue_message(self, text: str) -> None:
        """Queue a message for after the current turn."""

    @abstractmethod
    async def abort(self) -> None:
        """Stop the current turn and wait for idle. No-op when idle."""

    @abstractmethod
    async def reset(self) -> None:
        """Start a fresh session. No-op on an empty one."""

    # -- State ---------------------------------------------------------------

    @property
    @abstractmethod
    def model(self) -> Optional[ModelSpec]: ...

    @property
    @abstractmethod
    def provider_options(self) -> Dict[str, Any]: ...

    @property
    @abstractmethod
    def is_streaming(self) -> bool: ...

    @property
    @abstractmethod
    def queue_mode(self) -> str: ...

    @property
    @abstractmethod
    def session_file(self) -> Optional[str]: ...

    @property
    @abstractmethod
    def session_id(self) -> str: ...

    @property
    @abstractmethod
    def active_branch(self) -> str: ...

    @property
    @abstractmethod
    def branches(self) -> List[str]: ...

    @property
    @abstractmethod
    def messages(self) -> List[Dict[str, Any]]: ...

    @property
    @abstractmethod
    def queued_message_count(self) -> int: ...

    # -- Model / settings ----------------------------------------------------

    @abstractmethod
    async def change_model(self, model: ModelSpec) -> None: ...

    @abstractmethod
    async def update_thinking_level(self, level: str) -> None: ...

    @abstractmethod
    def set_queue_mode(self, mode: str) -> None: ...

    @abstractmethod
    async def compact_history(self, keep_recent: int = 10) -> None: ...

    # -- Session -------------------------------------------------------------

    @abstractmethod
    def get_session_stats(self) -> SessionStats: ...

    @abstractmethod
    def export_to_html(self, path: Optional[str] = None) -> str: ...

    @abstractmethod
    async def switch_session(self, path: str) -> None: ...

    @abstractmethod
    def list_sessions(self) -> List[SessionInfo]: ...

    # -- Branches / checkpoints ----------------------------------------------

    @abstractmethod
    def create_branch(self, name: str, from_node_id: Optional[str] = None) -> None: ...

    @abstractmethod
    async def switch_branch(self, name: str) -> None: ...

    @abstractmethod
    async def branch_and_switch(self, name: str, from_node_id: Optional[str] = None) -> BranchInfo: ...

    @abstractmethod
    def list_branches(self) -> List[BranchInfo]: ...

    @abstractmethod
    async def smart_merge_branch(self, from_branch: str) -> None: ...

    @abstractmethod
    def create_checkpoint(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> None: ...

    # -- Events --------------------------------------------------------------

    @abstractmethod
    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register an event listener; returns its unsubscribe function."""


def echo_responder(user_texts: List[str]) -> str:
    """Default LocalAgentSession reply: echo the user input back."""
    return "Echo: " + "\n".join(user_texts)


class LocalAgentSession(AgentSession):
    """
    Offline agent session.

    Replies come from a pluggable `responder` (echo by default) and are
    streamed word by word as message_update events, so the full event
    lifecycle can be exercised without a model provider. Conversation state
    lives in a SessionTree.
    """

    def __init__(
        self,
        tree: SessionTree,
        model: Optional[ModelSpec] = None,
        sessions_dir: Optional[str] = None,
        responder: Callable[[List[str]], str] = echo_responder,
        chunk_delay: float = 0.005,
    ):
        self._tree = tree
        self._model = model
        self._sessions_dir = sessions_dir
        self._responder = responder
        self._chunk_delay = chunk_delay

        self._provider_options: Dict[str, Any] = {}
        self._queue_mode = "one-at-a-time"
        self._queued: List[str] = []
        self._listeners: List[EventListener] = []

        self._streaming = False
        self._abort_requested = False
        self._idle = asyncio.Event()
        self._idle.set()

        if self._model is None:
            last = tree.get_last_provider()
            if last:
                self._model = ProviderRegistry.find_model(last["api"], last["modelId"])
                self._provider_options = dict(last.get("providerOptions") or {})

    # -- Events --------------------------------------------------------------

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _emit(self, event: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                Logger.error(f"[Session] Event listener failed on {event.get('type')}: {e}")

    # -- State ---------------------------------------------------------------

    @property
    def model(self) -> Optional[ModelSpec]:
        return self._model

    @property
    def provider_options(self) -> Dict[str, Any]:
        return dict(self._provider_options)

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def queue_mode(self) -> str:
        return self._queue_mode

    @property
    def session_file(self) -> Optional[str]:
        return self._tree.file if self._tree.is_persisted() else None

    @property
    def session_id(self) -> str:
        return self._tree.id

    @property
    def session_tree(self) -> SessionTree:
        return self._tree

    @property
    def active_branch(self) -> str:
        return self._tree.active_branch

    @property
    def branches(self) -> List[str]:
        return self._tree.get_branches()

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return self._tree.build_context()

    @property
    def queued_message_count(self) -> int:
        return len(self._queued)

    # -- Prompting -----------------------------------------------------------

    async def prompt(self, text: str, attachments: Optional[List[Dict[str, Any]]] = None) -> None:
        if self._model is None:
            raise RuntimeError("No model selected. Use set_model to select a model first.")
        if self._streaming:
            raise RuntimeError("Agent is already processing. Use queue_message or abort first.")

        self._streaming = True
        self._abort_requested = False
        self._idle.clear()
        produced: List[Dict[str, Any]] = []
        self._emit({"type": "agent_start"})
        try:
            produced += await self._run_turn([self._user_message(text, attachments)])
            while self._queued and not self._abort_requested:
                batch = self._queued[:] if self._queue_mode == "all" else self._queued[:1]
                produced += await self._run_turn([self._user_message(t) for t in batch], from_queue=True)
        finally:
            self._streaming = False
            self._emit({"type": "agent_end", "messages": produced, "aborted": self._abort_requested})
            self._idle.set()

    async def _run_turn(self, user_messages: List[Dict[str, Any]], from_queue: bool = False) -> List[Dict[str, Any]]:
        produced = []
        self._emit({"type": "turn_start"})
        for message in user_messages:
            if from_queue:
                # Leaves the queue the moment it starts being processed
                text = message_text(message)
                if text in self._queued:
                    self._queued.remove(text)
            self._emit({"type": "message_start", "message": message})
            self._tree.append_message(message)
            self._emit({"type": "message_end", "message": message})
            produced.append(message)

        user_texts = [message_text(m) for m in user_messages]
        reply = self._responder(user_texts)
        assistant = {
            "id": str(uuid.uuid4()),
            "role": "assistant",
            "content": [{"type": "text", "content": ""}],
            "api": self._model.api,
            "model": self._model.id,
            "timestamp": int(time.time() * 1000),
            "stopReason": "stop",
        }
        self._emit({"type": "message_start", "message": _copy_message(assistant)})

        for chunk in re.findall(r"\S+\s*", reply) or [reply]:
            if self._abort_requested:
                assistant["stopReason"] = "aborted"
                break
            assistant["content"][0]["content"] += chunk
            self._emit({
                "type": "message_update",
                "message": _copy_message(assistant),
                "assistantMessageEvent": {"type": "text_delta", "delta": chunk},
            })
            await asyncio.sleep(self._chunk_delay)

        input_tokens = sum(len(t.split()) for t in user_texts)
        output_tokens = len(message_text(assistant).split())
        assistant["usage"] = {
            "input": input_tokens,
            "output": output_tokens,
            "cacheRead": 0,
            "cacheWrite": 0,
            "totalTokens": input_tokens + output_tokens,
            "cost": 0.0,
        }
        self._tree.append_message(assistant)
        self._emit({"type": "message_end", "message": assistant})
        self._emit({"type": "turn_end", "message": assistant})
        produced.append(assistant)
        return produced

    def _user_message(self, text: str, attachments: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [{"type": "text", "content": text}]
        for attachment in attachments or []:
            content.append({"type": "attachment", **attachment})
        return {
            "id": str(uuid.uuid4()),
            "role": "user",
            "content": content,
            "timestamp": int(time.time() * 1000),
        }

    async def queue_message(self, text: str) -> None:
        self._queued.append(text)

    async def abort(self) -> None:
        if not self._streaming:
            return
        self._abort_requested = True
        await self._idle.wait()

    async def reset(self) -> None:
        await self.abort()
        self._queued.clear()
        if self._tree.get_head_node() is None and not self._tree.get_branches()[1:]:
            return
        self._tree = self._tree.reset()

    # -- Model / settings ----------------------------------------------------

    async def change_model(self, model: ModelSpec) -> None:
        self._model = model
        self._tree.append_provider(model.api, model.id, dict(self._provider_options))
        Logger.info(f"[Session] Model changed to {model.api}/{model.id}")

    async def update_thinking_level(self, level: str) -> None:
        if level not in ("low", "high"):
            raise ValueError(f"Invalid thinking level: {level}")
        self._provider_options["thinkingLevel"] = level
        if self._model is not None:
            self._tree.append_provider(self._model.api, self._model.id, dict(self._provider_options))

    def set_queue_mode(self, mode: str) -> None:
        if mode not in ("all", "one-at-a-time"):
            raise ValueError(f"Invalid queue mode: {mode}")
        self._queue_mode = mode

    async def compact_history(self, keep_recent: int = 10) -> None:
        if self._streaming:
            raise RuntimeError("Cannot compact while the agent is streaming.")
        ids = self._tree.message_node_ids()
        keep_recent = max(0, keep_recent)
        older = ids[:-keep_recent] if keep_recent else ids
        if not older:
            return

        lines = []
        for node_id in older:
            message = self._tree.get_node(node_id)["message"]
            text = message_text(message).strip().replace("\n", " ")
            lines.append(f"{message.get('role', '?')}: {text[:200]}")
        summary = f"{len(older)} earlier messages.\n" + "\n".join(lines)
        self._tree.append_summary(summary, older)

    # -- Session -------------------------------------------------------------

    def get_session_stats(self) -> SessionStats:
        messages = self.messages
        tokens = TokenStats()
        cost = 0.0
        counts = {"user": 0, "assistant": 0, "tool": 0}
        tool_calls = 0
        for message in messages:
            role = message.get("role")
            if role in counts:
                counts[role] += 1
            content = message.get("content")
            if isinstance(content, list):
                tool_calls += sum(1 for c in content if isinstance(c, dict) and c.get("type") == "toolCall")
            usage = message.get("usage") or {}
            tokens.input += usage.get("input", 0)
            tokens.output += usage.get("output", 0)
            tokens.cache_read += usage.get("cacheRead", 0)
            tokens.cache_write += usage.get("cacheWrite", 0)
            cost += usage.get("cost", 0.0)
        tokens.total = tokens.input + tokens.output + tokens.cache_read + tokens.cache_write

        return SessionStats(
            session_file=self.session_file,
            session_id=self.session_id,
            active_branch=self.active_branch,
            branch_count=len(self.branches),
            user_messages=counts["user"],
            assistant_messages=counts["assistant"],
            tool_calls=tool_calls,
            tool_results=counts["tool"],
            total_messages=len(messages),
            tokens=tokens,
            cost=cost,
        )

    def export_to_html(self, path: Optional[str] = None) -> str:
        meta = {"branch": self.active_branch}
        if self._model:
            meta["model"] = f"{self._model.api}/{self._model.id}"
        return export_session_html(self.messages, self.session_id, path, cwd=self._tree.cwd, meta=meta)

    async def switch_session(self, path: str) -> None:
        await self.abort()
        tree = SessionTree.open(path)
        self._queued.clear()
        self._tree = tree
        last = tree.get_last_provider()
        if last:
            model = ProviderRegistry.find_model(last["api"], last["modelId"])
            if model:
                self._model = model
                self._provider_options = dict(last.get("providerOptions") or {})
        Logger.info(f"[Session] Switched to session {tree.id}")

    def list_sessions(self) -> List[SessionInfo]:
        sessions_dir = self._sessions_dir
        if not sessions_dir and self._tree.file:
            sessions_dir = os.path.dirname(self._tree.file)
        return SessionTree.list_sessions(sessions_dir)

    # -- Branches / checkpoints ----------------------------------------------

    def create_branch(self, name: str, from_node_id: Optional[str] = None) -> None:
        self._tree.create_branch(name, from_node_id)

    async def switch_branch(self, name: str) -> None:
        if self._streaming:
            raise RuntimeError("Cannot switch branch while the agent is streaming.")
        self._tree.switch_branch(name)

    async def branch_and_switch(self, name: str, from_node_id: Optional[str] = None) -> BranchInfo:
        if self._streaming:
            raise RuntimeError("Cannot switch branch while the agent is streaming.")
        self._tree.create_branch(name, from_node_id)
        self._tree.switch_branch(name)
        return self._tree.get_branch_info(name)

    def list_branches(self) -> List[BranchInfo]:
        return self._tree.list_branches()

    async def smart_merge_branch(self, from_branch: str) -> None:
        if from_branch == self.active_branch:
            raise ValueError("Cannot merge a branch into itself.")
        if from_branch not in self.branches:
            raise ValueError(f"Branch '{from_branch}' does not exist.")

        current = {m.get("id") for m in self.messages}
        diverged = [m for m in self._tree.build_context(from_branch) if m.get("id") not in current]
        last_reply = next(
            (message_text(m) for m in reversed(diverged) if m.get("role") == "assistant"), ""
        )
        summary = f"{len(diverged)} messages from '{from_branch}'."
        if last_reply:
            summary += f" Last reply: {last_reply[:500]}"
        self._tree.merge(from_branch, summary)

    def create_checkpoint(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._tree.append_checkpoint(name, metadata)


def _copy_message(message: Dict[str, Any]) -> Dict[str, Any]:
    copied = dict(message)
    copied["content"] = [dict(block) for block in message["content"]]
    return copied
