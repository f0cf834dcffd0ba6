"""
RPC Exceptions
"""

from typing import Optional


class RpcError(Exception):
    """Base class for every error raised by the RPC layer."""
    pass


# ---------------------------------------------------------------------------
# Server side: command decoding
# ---------------------------------------------------------------------------

class CommandParseError(RpcError):
    """Input line is not a JSON object with a string `type`."""
    pass


class UnknownCommandError(CommandParseError):
    """Input line names a command type the dispatcher does not know."""

    def __init__(self, command_type: str):
        super().__init__(f"Unknown command: {command_type}")
        self.command_type = command_type


class InvalidCommandError(CommandParseError):
    """Known command type whose payload failed validation."""

    def __init__(self, command_type: str, request_id: Optional[str], detail: str):
        super().__init__(f"Invalid {command_type} command: {detail}")
        self.command_type = command_type
        self.request_id = request_id


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------

class ClientNotStartedError(RpcError):
    """A command was sent before start() or after stop()."""

    def __init__(self, message: str = "Client not started"):
        super().__init__(message)


class AgentProcessError(RpcError):
    """The agent child process failed to start or exited underneath the client."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class RpcTimeoutError(RpcError, TimeoutError):
    """No matching response (or agent_end event) arrived in time."""
    pass


class RpcCommandError(RpcError):
    """The server answered a command with success: false."""

    def __init__(self, command: str, error: str):
        super().__init__(error)
        self.command = command
        self.error = error
