"""
Global Configuration Management

Settings for the headless RPC layer: protocol timeouts, session storage,
log location and the default model. Values come from class defaults,
then settings.json in the home directory, then environment variables.
"""

import os
import json
import sys
from typing import Dict, Any, Optional


class Config:
    """
    Global Configuration Class
    """
    # Home directory (settings.json, models.yaml, logs/, sessions/)
    HOME_DIR = os.path.expanduser("~/.agent_rpc")

    _settings_path = os.path.join(HOME_DIR, "settings.json")
    _data: Dict[str, Any] = {}

    # Path configuration
    LOG_DIR = os.path.join(HOME_DIR, "logs")
    LOG_PATH = os.path.join(LOG_DIR, "agent_rpc.log")
    SESSIONS_DIR = os.path.join(HOME_DIR, "sessions")
    MODELS_PATH = os.path.join(HOME_DIR, "models.yaml")

    # RPC timing (seconds)
    REQUEST_TIMEOUT = 30.0
    IDLE_TIMEOUT = 60.0
    STARTUP_GRACE = 0.1
    STOP_GRACE = 1.0

    # Default model for new sessions ("provider/model")
    DEFAULT_MODEL: Optional[str] = None

    DEBUG = False

    @classmethod
    def _reset(cls):
        """Pick the home directory and restore every default derived from it."""
        cls.HOME_DIR = os.path.abspath(
            os.path.expanduser(os.environ.get("AGENT_RPC_HOME", "~/.agent_rpc"))
        )
        cls._settings_path = os.path.join(cls.HOME_DIR, "settings.json")
        cls.LOG_DIR = os.path.join(cls.HOME_DIR, "logs")
        cls.LOG_PATH = os.path.join(cls.LOG_DIR, "agent_rpc.log")
        cls.SESSIONS_DIR = os.path.join(cls.HOME_DIR, "sessions")
        cls.MODELS_PATH = os.path.join(cls.HOME_DIR, "models.yaml")
        cls.REQUEST_TIMEOUT = 30.0
        cls.IDLE_TIMEOUT = 60.0
        cls.STARTUP_GRACE = 0.1
        cls.STOP_GRACE = 1.0
        cls.DEFAULT_MODEL = None
        cls.DEBUG = False

    @classmethod
    def load_settings(cls, settings_path: str = None):
        """Load settings.json"""
        path = settings_path or cls._settings_path
        cls._data = {}
        try:
            if os.path.exists(path):
                with open(path, 'r', encoding='utf-8') as f:
                    cls._data = json.load(f)
        except Exception as e:
            # stdout belongs to the protocol, report on stderr
            print(f"[Config] Error loading settings: {e}", file=sys.stderr)
            cls._data = {}

        rpc = cls._data.get("rpc", {})
        cls.REQUEST_TIMEOUT = float(rpc.get("request_timeout", cls.REQUEST_TIMEOUT))
        cls.IDLE_TIMEOUT = float(rpc.get("idle_timeout", cls.IDLE_TIMEOUT))
        cls.STARTUP_GRACE = float(rpc.get("startup_grace", cls.STARTUP_GRACE))
        cls.STOP_GRACE = float(rpc.get("stop_grace", cls.STOP_GRACE))

        if cls._data.get("sessions_dir"):
            cls.SESSIONS_DIR = os.path.expanduser(cls._data["sessions_dir"])
        if cls._data.get("log_path"):
            cls.LOG_PATH = os.path.expanduser(cls._data["log_path"])
            cls.LOG_DIR = os.path.dirname(cls.LOG_PATH)
        if cls._data.get("models_path"):
            cls.MODELS_PATH = os.path.expanduser(cls._data["models_path"])
        cls.DEFAULT_MODEL = cls._data.get("default_model", cls.DEFAULT_MODEL)
        cls.DEBUG = bool(cls._data.get("debug", cls.DEBUG))

    @classmethod
    def _apply_env_overrides(cls):
        """Environment variable overrides"""
        if os.environ.get("AGENT_RPC_REQUEST_TIMEOUT"):
            cls.REQUEST_TIMEOUT = float(os.environ["AGENT_RPC_REQUEST_TIMEOUT"])
        if os.environ.get("AGENT_RPC_IDLE_TIMEOUT"):
            cls.IDLE_TIMEOUT = float(os.environ["AGENT_RPC_IDLE_TIMEOUT"])
        if os.environ.get("AGENT_RPC_LOG_PATH"):
            cls.LOG_PATH = os.environ["AGENT_RPC_LOG_PATH"]
            cls.LOG_DIR = os.path.dirname(cls.LOG_PATH)
        if os.environ.get("AGENT_RPC_SESSIONS_DIR"):
            cls.SESSIONS_DIR = os.environ["AGENT_RPC_SESSIONS_DIR"]
        if os.environ.get("AGENT_RPC_DEFAULT_MODEL"):
            cls.DEFAULT_MODEL = os.environ["AGENT_RPC_DEFAULT_MODEL"]
        if os.environ.get("AGENT_RPC_DEBUG"):
            cls.DEBUG = os.environ["AGENT_RPC_DEBUG"].lower() in ("1", "true", "yes")

    @classmethod
    def initialize(cls, settings_path: str = None):
        """Initialize configuration"""
        cls._reset()
        cls.load_settings(settings_path)
        cls._apply_env_overrides()

    @classmethod
    def ensure_dirs(cls):
        for path in (cls.LOG_DIR, cls.SESSIONS_DIR):
            if path and not os.path.exists(path):
                os.makedirs(path, exist_ok=True)

    @classmethod
    def split_model_key(cls, model_key: Optional[str]):
        """Split "provider/model" into (provider, model); (None, None) if unset."""
        if not model_key or "/" not in model_key:
            return None, None
        api, model_id = model_key.split("/", 1)
        return api, model_id


# Default initialization
Config.initialize()
