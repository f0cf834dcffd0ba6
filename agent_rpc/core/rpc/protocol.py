"""
RPC Protocol: command, response and state types plus serialization helpers.

Transport: newline-delimited JSON over the child process stdio.
- Parent stdin → Agent: commands (`type` discriminator, optional `id`)
- Agent stdout → Parent: responses (`type: "response"`) and raw session events

Payload strings may contain newlines (code, base64 attachments). They are
JSON-escaped, so a bare \\n as message delimiter is safe.
"""

import json
import sys
from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .exceptions import CommandParseError, InvalidCommandError, UnknownCommandError

RESPONSE_TYPE = "response"
PARSE_COMMAND = "parse"

QueueMode = Literal["all", "one-at-a-time"]
ThinkingLevel = Literal["low", "high"]


class WireModel(BaseModel):
    """Snake_case attributes in Python, camelCase keys on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Parent → Agent: Commands
# ---------------------------------------------------------------------------

class _Command(WireModel):
    id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# Prompting

class PromptCommand(_Command):
    type: Literal["prompt"] = "prompt"
    message: str
    attachments: Optional[List[Dict[str, Any]]] = None


class QueueMessageCommand(_Command):
    type: Literal["queue_message"] = "queue_message"
    message: str


class AbortCommand(_Command):
    type: Literal["abort"] = "abort"


class ResetCommand(_Command):
    type: Literal["reset"] = "reset"


# State

class GetStateCommand(_Command):
    type: Literal["get_state"] = "get_state"


class GetMessagesCommand(_Command):
    type: Literal["get_messages"] = "get_messages"


# Model

class SetModelCommand(_Command):
    type: Literal["set_model"] = "set_model"
    api: str
    model_id: str


class GetAvailableModelsCommand(_Command):
    type: Literal["get_available_models"] = "get_available_models"


class SetThinkingLevelCommand(_Command):
    type: Literal["set_thinking_level"] = "set_thinking_level"
    level: ThinkingLevel


class SetQueueModeCommand(_Command):
    type: Literal["set_queue_mode"] = "set_queue_mode"
    mode: QueueMode


class CompactCommand(_Command):
    type: Literal["compact"] = "compact"
    keep_recent: Optional[int] = None


# Session

class GetSessionStatsCommand(_Command):
    type: Literal["get_session_stats"] = "get_session_stats"


class ExportHtmlCommand(_Command):
    type: Literal["export_html"] = "export_html"
    output_path: Optional[str] = None


class SwitchSessionCommand(_Command):
    type: Literal["switch_session"] = "switch_session"
    session_path: str


class ListSessionsCommand(_Command):
    type: Literal["list_sessions"] = "list_sessions"


# Branches

class CreateBranchCommand(_Command):
    type: Literal["create_branch"] = "create_branch"
    name: str
    from_node_id: Optional[str] = None


class SwitchBranchCommand(_Command):
    type: Literal["switch_branch"] = "switch_branch"
    name: str


class BranchAndSwitchCommand(_Command):
    type: Literal["branch_and_switch"] = "branch_and_switch"
    name: str
    from_node_id: Optional[str] = None


class ListBranchesCommand(_Command):
    type: Literal["list_branches"] = "list_branches"


class MergeBranchCommand(_Command):
    type: Literal["merge_branch"] = "merge_branch"
    from_branch: str


# Checkpoints

class CreateCheckpointCommand(_Command):
    type: Literal["create_checkpoint"] = "create_checkpoint"
    name: str
    metadata: Optional[Dict[str, Any]] = None


RpcCommand = Annotated[
    Union[
        PromptCommand,
        QueueMessageCommand,
        AbortCommand,
        ResetCommand,
        GetStateCommand,
        GetMessagesCommand,
        SetModelCommand,
        GetAvailableModelsCommand,
        SetThinkingLevelCommand,
        SetQueueModeCommand,
        CompactCommand,
        GetSessionStatsCommand,
        ExportHtmlCommand,
        SwitchSessionCommand,
        ListSessionsCommand,
        CreateBranchCommand,
        SwitchBranchCommand,
        BranchAndSwitchCommand,
        ListBranchesCommand,
        MergeBranchCommand,
        CreateCheckpointCommand,
    ],
    Field(discriminator="type"),
]

_command_adapter: TypeAdapter = TypeAdapter(RpcCommand)

COMMAND_TYPES = frozenset(
    cls.model_fields["type"].default
    for cls in get_args(get_args(RpcCommand)[0])
)


def parse_command(line: str) -> RpcCommand:
    """
    Decode one input line into a typed command.

    Raises:
        CommandParseError: not JSON, or not an object with a string `type`
        UnknownCommandError: `type` is not a known command
        InvalidCommandError: known command with a bad payload
    """
    try:
        raw = json.loads(line)
    except json.JSONDecodeError as e:
        raise CommandParseError(f"Failed to parse command: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
        raise CommandParseError(
            "Failed to parse command: expected a JSON object with a string 'type'"
        )

    command_type = raw["type"]
    if command_type not in COMMAND_TYPES:
        raise UnknownCommandError(command_type)

    try:
        return _command_adapter.validate_python(raw)
    except ValidationError as e:
        request_id = raw.get("id") if isinstance(raw.get("id"), str) else None
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'command'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidCommandError(command_type, request_id, details) from e


# ---------------------------------------------------------------------------
# Agent → Parent: Responses
# ---------------------------------------------------------------------------

@dataclass
class RpcResponse:
    """
    Correlated reply to a command.

    `id` is omitted from the wire when the command carried none (and for
    parse errors, where it could not be recovered). `data` is omitted when the
    command has no payload; `error` is only present on failure.
    """
    command: str
    success: bool
    id: Optional[str] = None
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {}
        if self.id is not None:
            d["id"] = self.id
        d["type"] = RESPONSE_TYPE
        d["command"] = self.command
        d["success"] = self.success
        if self.success:
            if self.data is not None:
                d["data"] = self.data
        else:
            d["error"] = self.error or ""
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "RpcResponse":
        return cls(
            command=d.get("command", ""),
            success=bool(d.get("success")),
            id=d.get("id"),
            data=d.get("data"),
            error=d.get("error"),
        )


def success_response(request_id: Optional[str], command: str, data: Any = None) -> RpcResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    return RpcResponse(command=command, success=True, id=request_id, data=data)


def error_response(request_id: Optional[str], command: str, message: str) -> RpcResponse:
    return RpcResponse(command=command, success=False, id=request_id, error=message)


def is_response(message: Any) -> bool:
    """Responses carry `type: "response"`; events never do."""
    return isinstance(message, dict) and message.get("type") == RESPONSE_TYPE


def encode_line(message: Union[dict, RpcResponse, BaseModel]) -> str:
    """Serialize one message as a single JSON line (trailing newline included)."""
    if isinstance(message, RpcResponse):
        message = message.to_dict()
    elif isinstance(message, _Command):
        message = message.to_wire()
    elif isinstance(message, BaseModel):
        message = message.model_dump(by_alias=True, mode="json")
    return json.dumps(message, ensure_ascii=False, default=str) + "\n"


def emit_message(message: Union[dict, RpcResponse], file=None) -> None:
    """Write a JSON line to stdout (or given file) and flush."""
    out = file or sys.stdout
    out.write(encode_line(message))
    out.flush()


# ---------------------------------------------------------------------------
# Response payloads
# ---------------------------------------------------------------------------

class ModelRef(WireModel):
    api: str
    model_id: str
    provider_options: Dict[str, Any] = Field(default_factory=dict)


class RpcSessionState(WireModel):
    """Point-in-time projection of the session, answered by get_state."""
    model: Optional[ModelRef] = None
    is_streaming: bool = False
    queue_mode: QueueMode = "one-at-a-time"
    session_file: Optional[str] = None
    session_id: str
    active_branch: str
    branches: List[str] = Field(default_factory=list)
    message_count: int = 0
    queued_message_count: int = 0


class ModelInfo(WireModel):
    api: str
    id: str
    context_window: int
    reasoning: bool


class TokenStats(WireModel):
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    total: int = 0


class SessionStats(WireModel):
    session_file: Optional[str] = None
    session_id: str
    active_branch: str
    branch_count: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    tool_calls: int = 0
    tool_results: int = 0
    total_messages: int = 0
    tokens: TokenStats = Field(default_factory=TokenStats)
    cost: float = 0.0


class BranchInfo(WireModel):
    name: str
    head_node_id: Optional[str] = None
    message_count: int = 0
    created: str
    last_modified: str


class SessionInfo(WireModel):
    file: str
    id: str
    created: str
    modified: str
    message_count: int = 0
    first_message: str = ""
