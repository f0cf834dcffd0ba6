"""
Headless RPC: drive an agent subprocess over stdio.

Parent → Agent (stdin): newline-delimited JSON commands with optional `id`
Agent → Parent (stdout): `type: "response"` replies and raw session events
"""

from .protocol import (
    RpcCommand,
    RpcResponse,
    RpcSessionState,
    emit_message,
    parse_command,
)
from .exceptions import (
    AgentProcessError,
    ClientNotStartedError,
    RpcCommandError,
    RpcError,
    RpcTimeoutError,
)
from .agent_process import RpcDispatcher
from .client import RpcClient
