"""
Logger Utility Module

File-only logging. In RPC mode the agent's stdout carries the JSON-lines
protocol and its stderr is buffered by the parent for error reports, so
neither may receive log output. Parent and child append to the same file;
every line carries the writing process id.
"""

import datetime
import os
import traceback

from agent_rpc.infra.config import Config


class Logger:
    """
    Static logger writing to Config.LOG_PATH.

    Line format: {timestamp} [{pid}] - {LEVEL: }{message}
    """

    @staticmethod
    def log(message: str) -> None:
        try:
            log_dir = os.path.dirname(Config.LOG_PATH)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            with open(Config.LOG_PATH, 'a', encoding='utf-8') as f:
                f.write(f"{datetime.datetime.now()} [{os.getpid()}] - {message}\n")
        except Exception:
            # Nowhere left to report it
            pass

    @staticmethod
    def info(message: str) -> None:
        Logger.log(message)

    @staticmethod
    def error(message: str) -> None:
        """
        Log error message with "ERROR: " prefix.

        Example:
            >>> Logger.error("[RpcServer] Handler for get_state failed: boom")
        """
        Logger.log(f"ERROR: {message}")

    @staticmethod
    def exception(message: str) -> None:
        """Like error(), followed by the traceback being handled."""
        Logger.log(f"ERROR: {message}\n{traceback.format_exc().rstrip()}")

    @staticmethod
    def warning(message: str) -> None:
        Logger.log(f"WARNING: {message}")

    @staticmethod
    def debug(message: str) -> None:
        """Only written when Config.DEBUG is set (AGENT_RPC_DEBUG=1)."""
        if Config.DEBUG:
            Logger.log(f"DEBUG: {message}")
