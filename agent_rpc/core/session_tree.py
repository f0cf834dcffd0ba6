"""
Session Tree

Append-only store of conversation nodes with named branches, persisted as a
JSONL file (one entry per line). Entry kinds:

    tree        header, first line of the file
    message     a user / assistant / tool message
    provider    model switch
    summary     compaction summary, covers older node ids
    merge       summary of another branch merged into this one
    checkpoint  named marker
    active      active-branch pointer

Nodes link to their parent through `parentId`; a branch is the set of nodes
tagged with its name, and its context is the lineage of its head node.
"""

import json
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agent_rpc.core.rpc.protocol import BranchInfo, SessionInfo

NODE_TYPES = ("message", "provider", "summary", "merge", "checkpoint")
DEFAULT_BRANCH = "main"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_node(entry: Dict[str, Any]) -> bool:
    return entry.get("type") in NODE_TYPES


def message_text(message: Dict[str, Any]) -> str:
    """Concatenate the text blocks of a message."""
    content = message.get("content", "")
    if isinstance(content, str):
        return content
    return "".join(
        block.get("content", "") for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )


def _synthetic_message(node: Dict[str, Any], text: str) -> Dict[str, Any]:
    return {
        "id": node["id"],
        "role": "assistant",
        "content": [{"type": "text", "content": text}],
        "timestamp": node["timestamp"],
    }


class SessionTree:
    """
    Branching conversation store backing one agent session.
    """

    def __init__(self, file: str, header: Dict[str, Any], entries: List[Dict[str, Any]], persist: bool):
        self._file = os.path.abspath(file) if file else ""
        self._header = header
        self._entries = entries
        self._persist = persist
        self._flushed = persist and bool(file) and os.path.exists(file)
        self._node_map: Dict[str, Dict[str, Any]] = {}
        # Branch name -> parent node id for branches with no nodes yet
        self._pending_branches: Dict[str, str] = {}

        self._active_branch = header["defaultBranch"]
        for entry in entries:
            if _is_node(entry):
                self._node_map[entry["id"]] = entry
            elif entry.get("type") == "active":
                self._active_branch = entry["branch"]

    # -- Properties ----------------------------------------------------------

    @property
    def id(self) -> str:
        return self._header["id"]

    @property
    def cwd(self) -> str:
        return self._header["cwd"]

    @property
    def file(self) -> str:
        return self._file

    @property
    def created(self) -> str:
        return self._header["created"]

    @property
    def active_branch(self) -> str:
        return self._active_branch

    @property
    def default_branch(self) -> str:
        return self._header["defaultBranch"]

    def is_persisted(self) -> bool:
        return self._persist

    @property
    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)

    # -- Node operations -----------------------------------------------------

    def _new_node(self, node_type: str, branch: Optional[str], **fields) -> Dict[str, Any]:
        target = branch or self._active_branch
        node = {
            "type": node_type,
            "id": fields.pop("id", None) or str(uuid.uuid4()),
            "parentId": self._parent_id_for_branch(target),
            "branch": target,
            "timestamp": _now_iso(),
        }
        node.update(fields)
        self._append_node(node)
        return node

    def append_message(self, message: Dict[str, Any], branch: Optional[str] = None) -> Dict[str, Any]:
        return self._new_node("message", branch, id=message.get("id"), message=message)

    def append_provider(self, api: str, model_id: str, provider_options: Dict[str, Any] = None,
                        branch: Optional[str] = None) -> Dict[str, Any]:
        return self._new_node("provider", branch, api=api, modelId=model_id,
                              providerOptions=provider_options or {})

    def append_summary(self, content: str, summarizes: List[str], branch: Optional[str] = None) -> Dict[str, Any]:
        return self._new_node("summary", branch, content=content, summarizes=list(summarizes))

    def append_checkpoint(self, name: str, metadata: Optional[Dict[str, Any]] = None,
                          branch: Optional[str] = None) -> Dict[str, Any]:
        return self._new_node("checkpoint", branch, name=name, metadata=metadata)

    def merge(self, from_branch: str, summary_content: str, into_branch: Optional[str] = None) -> Dict[str, Any]:
        """Record `from_branch` merged into the active (or given) branch."""
        from_head = next(
            (n for n in reversed(self._entries) if _is_node(n) and n["branch"] == from_branch), None
        )
        if not from_head:
            raise ValueError(f"Branch '{from_branch}' has no nodes to merge.")
        return self._new_node("merge", into_branch, content=summary_content,
                              fromBranch=from_branch, fromNodeId=from_head["id"])

    def _parent_id_for_branch(self, branch: str) -> Optional[str]:
        pending = self._pending_branches.pop(branch, None)
        if pending:
            return pending
        head = self.get_head_node(branch)
        return head["id"] if head else None

    def _append_node(self, node: Dict[str, Any]) -> None:
        self._entries.append(node)
        self._node_map[node["id"]] = node
        self._persist_entry(node)

    def _persist_entry(self, entry: Dict[str, Any]) -> None:
        if not self._persist or not self._file:
            return

        # Nothing is written until the first assistant reply exists
        has_assistant = any(
            n["type"] == "message" and n["message"].get("role") == "assistant"
            for n in self._node_map.values()
        )
        if not has_assistant:
            return

        os.makedirs(os.path.dirname(self._file), exist_ok=True)
        with open(self._file, 'a', encoding='utf-8') as f:
            if not self._flushed:
                f.write(json.dumps(self._header, ensure_ascii=False) + "\n")
                for e in self._entries:
                    f.write(json.dumps(e, ensure_ascii=False) + "\n")
                self._flushed = True
            else:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    # -- Branches ------------------------------------------------------------

    def get_branches(self) -> List[str]:
        branches = [self.default_branch]
        for entry in self._entries:
            if _is_node(entry) and entry["branch"] not in branches:
                branches.append(entry["branch"])
        return branches

    def get_branch_info(self, name: str) -> Optional[BranchInfo]:
        nodes = sorted(
            (n for n in self._node_map.values() if n["branch"] == name),
            key=lambda n: n["timestamp"],
        )
        if not nodes:
            if name == self.default_branch or name in self._pending_branches:
                return BranchInfo(
                    name=name,
                    head_node_id=self._pending_branches.get(name) or None,
                    message_count=0,
                    created=self.created,
                    last_modified=self.created,
                )
            return None

        return BranchInfo(
            name=name,
            head_node_id=nodes[-1]["id"],
            message_count=sum(1 for n in nodes if n["type"] == "message"),
            created=nodes[0]["timestamp"],
            last_modified=nodes[-1]["timestamp"],
        )

    def list_branches(self) -> List[BranchInfo]:
        names = self.get_branches() + [b for b in self._pending_branches if b not in self.get_branches()]
        infos = [info for info in (self.get_branch_info(n) for n in names) if info]
        return sorted(infos, key=lambda b: b.last_modified, reverse=True)

    def create_branch(self, name: str, from_node_id: Optional[str] = None) -> None:
        """Create a branch from a node (default: current head). Does not switch to it."""
        if name in self.get_branches() or name in self._pending_branches:
            raise ValueError(f"Branch '{name}' already exists.")

        if from_node_id:
            if from_node_id not in self._node_map:
                raise ValueError(f"Node '{from_node_id}' does not exist.")
            parent_id = from_node_id
        else:
            head = self.get_head_node()
            parent_id = head["id"] if head else None

        # An empty parent still registers the branch so it can be switched to
        self._pending_branches[name] = parent_id or ""

    def switch_branch(self, name: str) -> None:
        if name not in self.get_branches() and name not in self._pending_branches:
            raise ValueError(f"Branch '{name}' does not exist.")

        self._active_branch = name
        entry = {"type": "active", "branch": name, "timestamp": _now_iso()}
        self._entries.append(entry)
        self._persist_entry(entry)

    # -- Navigation ----------------------------------------------------------

    def get_head_node(self, branch: Optional[str] = None) -> Optional[Dict[str, Any]]:
        target = branch or self._active_branch
        head = None
        for entry in self._entries:
            if _is_node(entry) and entry["branch"] == target:
                head = entry
        if head is None and self._pending_branches.get(target):
            return self._node_map.get(self._pending_branches[target])
        return head

    def get_node(self, node_id: str) -> Optional[Dict[str, Any]]:
        return self._node_map.get(node_id)

    def get_lineage(self, node_id: str) -> List[Dict[str, Any]]:
        """Nodes from the root down to `node_id`."""
        lineage = []
        current = self._node_map.get(node_id)
        while current:
            lineage.append(current)
            parent = current.get("parentId")
            current = self._node_map.get(parent) if parent else None
        lineage.reverse()
        return lineage

    def build_context(self, branch: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Messages visible on a branch. Nodes covered by a summary are replaced
        by the summary; merges and summaries appear as assistant messages.
        """
        head = self.get_head_node(branch)
        if not head:
            return []

        lineage = self.get_lineage(head["id"])
        summarized = set()
        # A summary takes the place of the oldest node it covers
        summary_at: Dict[str, Dict[str, Any]] = {}
        for node in lineage:
            if node["type"] == "summary" and node["summarizes"]:
                summarized.update(node["summarizes"])
                summary_at.setdefault(node["summarizes"][0], node)

        messages = []
        for node in lineage:
            if node["id"] in summary_at:
                summary = summary_at[node["id"]]
                messages.append(_synthetic_message(summary, f"[Summary]: {summary['content']}"))
            if node["id"] in summarized:
                continue
            if node["type"] == "summary" and node["summarizes"]:
                continue
            if node["type"] == "message":
                messages.append(node["message"])
            elif node["type"] == "summary":
                messages.append(_synthetic_message(node, f"[Summary]: {node['content']}"))
            elif node["type"] == "merge":
                messages.append(_synthetic_message(node, f"[Merged from {node['fromBranch']}]: {node['content']}"))
        return messages

    def message_node_ids(self, branch: Optional[str] = None) -> List[str]:
        """Ids of the still-visible message nodes on a branch, oldest first."""
        head = self.get_head_node(branch)
        if not head:
            return []
        lineage = self.get_lineage(head["id"])
        summarized = set()
        for node in lineage:
            if node["type"] == "summary":
                summarized.update(node["summarizes"])
        return [n["id"] for n in lineage if n["type"] == "message" and n["id"] not in summarized]

    def get_last_provider(self, branch: Optional[str] = None) -> Optional[Dict[str, Any]]:
        head = self.get_head_node(branch)
        if head:
            for node in reversed(self.get_lineage(head["id"])):
                if node["type"] == "provider":
                    return {"api": node["api"], "modelId": node["modelId"],
                            "providerOptions": node.get("providerOptions", {})}
        if self._header.get("api") and self._header.get("modelId"):
            return {"api": self._header["api"], "modelId": self._header["modelId"],
                    "providerOptions": self._header.get("providerOptions", {})}
        return None

    # -- Lifecycle -----------------------------------------------------------

    @classmethod
    def create(cls, cwd: str, sessions_dir: Optional[str] = None,
               initial_provider: Optional[Dict[str, Any]] = None) -> "SessionTree":
        """New tree. Persisted under `sessions_dir` when given, in memory otherwise."""
        session_id = str(uuid.uuid4())
        created = _now_iso()
        header = {
            "type": "tree",
            "id": session_id,
            "cwd": os.path.abspath(cwd),
            "created": created,
            "defaultBranch": DEFAULT_BRANCH,
        }
        if initial_provider:
            header.update({
                "api": initial_provider["api"],
                "modelId": initial_provider["modelId"],
                "providerOptions": initial_provider.get("providerOptions", {}),
            })

        if not sessions_dir:
            return cls("", header, [], persist=False)

        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        file = os.path.join(sessions_dir, f"{stamp}_{session_id}.jsonl")
        return cls(file, header, [], persist=True)

    @classmethod
    def in_memory(cls, cwd: str) -> "SessionTree":
        return cls.create(cwd, sessions_dir=None)

    @classmethod
    def open(cls, file: str) -> "SessionTree":
        """Replay a session file. Raises FileNotFoundError / ValueError."""
        entries = _read_entries(file)
        header = next((e for e in entries if e.get("type") == "tree"), None)
        if header is None:
            raise ValueError(f"Not a session file: {file}")
        body = [e for e in entries if e is not header]
        return cls(file, header, body, persist=True)

    @classmethod
    def continue_recent(cls, cwd: str, sessions_dir: str) -> "SessionTree":
        sessions = cls.list_sessions(sessions_dir)
        if sessions:
            return cls.open(sessions[0].file)
        return cls.create(cwd, sessions_dir)

    def reset(self) -> "SessionTree":
        """Fresh tree with the same persistence settings; this one is untouched."""
        sessions_dir = os.path.dirname(self._file) if self._persist and self._file else None
        return SessionTree.create(self.cwd, sessions_dir, self.get_last_provider())

    @staticmethod
    def list_sessions(sessions_dir: str) -> List[SessionInfo]:
        """Summaries of every readable session file, most recently modified first."""
        if not sessions_dir or not os.path.isdir(sessions_dir):
            return []

        found = []
        for name in os.listdir(sessions_dir):
            if not name.endswith(".jsonl"):
                continue
            path = os.path.join(sessions_dir, name)
            try:
                entries = _read_entries(path)
                mtime = os.path.getmtime(path)
            except (OSError, ValueError):
                continue

            header = next((e for e in entries if e.get("type") == "tree"), None)
            if header is None:
                continue

            message_count = 0
            first_message = ""
            for entry in entries:
                if entry.get("type") != "message":
                    continue
                message_count += 1
                if not first_message and entry["message"].get("role") == "user":
                    first_message = message_text(entry["message"])

            found.append((mtime, SessionInfo(
                file=os.path.abspath(path),
                id=header["id"],
                created=header["created"],
                modified=datetime.fromtimestamp(mtime, timezone.utc).isoformat(),
                message_count=message_count,
                first_message=first_message or "(no messages)",
            )))

        found.sort(key=lambda item: item[0], reverse=True)
        return [info for _, info in found]


def _read_entries(file: str) -> List[Dict[str, Any]]:
    entries = []
    with open(file, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise ValueError(f"Corrupt session file {file}: {e}") from e
    return entries
