import json
import os

import pytest

from agent_rpc.infra.config import Config
from agent_rpc.utils.logger import Logger


@pytest.fixture(autouse=True)
def restore_config():
    yield
    Config.initialize()


def test_defaults_follow_home(home_dir):
    Config.initialize()
    assert Config.HOME_DIR == os.path.abspath(home_dir)
    assert Config.SESSIONS_DIR == os.path.join(Config.HOME_DIR, "sessions")
    assert Config.LOG_PATH == os.path.join(Config.HOME_DIR, "logs", "agent_rpc.log")
    assert Config.REQUEST_TIMEOUT == 30.0
    assert Config.IDLE_TIMEOUT == 60.0
    assert Config.DEFAULT_MODEL is None


def test_settings_file(tmp_path):
    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({
        "rpc": {"request_timeout": 5, "stop_grace": 0.5},
        "sessions_dir": str(tmp_path / "s"),
        "default_model": "google/model-x",
    }), encoding="utf-8")

    Config.initialize(str(settings))
    assert Config.REQUEST_TIMEOUT == 5.0
    assert Config.STOP_GRACE == 0.5
    assert Config.IDLE_TIMEOUT == 60.0
    assert Config.SESSIONS_DIR == str(tmp_path / "s")
    assert Config.DEFAULT_MODEL == "google/model-x"


def test_broken_settings_fall_back_to_defaults(tmp_path, capsys):
    settings = tmp_path / "settings.json"
    settings.write_text("{not json", encoding="utf-8")
    Config.initialize(str(settings))
    assert Config.REQUEST_TIMEOUT == 30.0
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Error loading settings" in captured.err


def test_env_overrides_settings(tmp_path, monkeypatch):
    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({"rpc": {"request_timeout": 5}}), encoding="utf-8")
    monkeypatch.setenv("AGENT_RPC_REQUEST_TIMEOUT", "2.5")
    monkeypatch.setenv("AGENT_RPC_LOG_PATH", str(tmp_path / "x" / "rpc.log"))
    monkeypatch.setenv("AGENT_RPC_DEFAULT_MODEL", "openai/gpt-4o")
    monkeypatch.setenv("AGENT_RPC_DEBUG", "true")

    Config.initialize(str(settings))
    assert Config.REQUEST_TIMEOUT == 2.5
    assert Config.LOG_DIR == str(tmp_path / "x")
    assert Config.DEFAULT_MODEL == "openai/gpt-4o"
    assert Config.DEBUG is True


def test_split_model_key():
    assert Config.split_model_key("openai/gpt-4o") == ("openai", "gpt-4o")
    assert Config.split_model_key("openrouter/meta/llama") == ("openrouter", "meta/llama")
    assert Config.split_model_key("gpt-4o") == (None, None)
    assert Config.split_model_key(None) == (None, None)


def test_logger_writes_to_file_only(tmp_path, monkeypatch, capsys):
    log_path = tmp_path / "logs" / "test.log"
    monkeypatch.setattr(Config, "LOG_PATH", str(log_path))
    monkeypatch.setattr(Config, "DEBUG", False)

    Logger.info("[RpcServer] started")
    Logger.error("[RpcServer] broke")
    Logger.warning("[RpcClient] slow")
    Logger.debug("hidden")

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert lines[0].endswith(" - [RpcServer] started")
    assert lines[1].endswith(" - ERROR: [RpcServer] broke")
    assert lines[2].endswith(" - WARNING: [RpcClient] slow")
    assert capsys.readouterr() == ("", "")


def test_logger_ignores_unwritable_path(tmp_path, monkeypatch):
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    monkeypatch.setattr(Config, "LOG_PATH", str(blocker / "sub" / "x.log"))
    Logger.info("goes nowhere")


def test_logger_exception_appends_traceback(tmp_path, monkeypatch):
    log_path = tmp_path / "rpc.log"
    monkeypatch.setattr(Config, "LOG_PATH", str(log_path))
    try:
        raise KeyError("missing-key")
    except KeyError:
        Logger.exception("[RpcServer] Handler for get_state failed")

    text = log_path.read_text(encoding="utf-8")
    assert f"[{os.getpid()}] - ERROR: [RpcServer] Handler for get_state failed" in text
    assert "Traceback" in text
    assert "missing-key" in text
