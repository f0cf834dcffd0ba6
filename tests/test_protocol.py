import io
import json

import pytest

from agent_rpc.core.rpc.exceptions import CommandParseError, InvalidCommandError, UnknownCommandError
from agent_rpc.core.rpc.protocol import (
    COMMAND_TYPES,
    BranchInfo,
    CompactCommand,
    PromptCommand,
    RpcResponse,
    RpcSessionState,
    SetModelCommand,
    emit_message,
    encode_line,
    error_response,
    is_response,
    parse_command,
    success_response,
)


def test_all_command_types_are_known():
    assert len(COMMAND_TYPES) == 21
    assert {"prompt", "abort", "set_model", "merge_branch", "create_checkpoint"} <= COMMAND_TYPES


def test_parse_prompt_command():
    cmd = parse_command('{"type":"prompt","id":"r1","message":"hi"}')
    assert isinstance(cmd, PromptCommand)
    assert cmd.id == "r1"
    assert cmd.message == "hi"
    assert cmd.attachments is None


def test_parse_camel_case_payload():
    cmd = parse_command('{"type":"set_model","api":"google","modelId":"model-x"}')
    assert isinstance(cmd, SetModelCommand)
    assert cmd.model_id == "model-x"
    assert cmd.id is None


def test_compact_keep_recent_is_optional():
    assert parse_command('{"type":"compact"}').keep_recent is None
    cmd = parse_command('{"type":"compact","keepRecent":3}')
    assert isinstance(cmd, CompactCommand)
    assert cmd.keep_recent == 3


@pytest.mark.parametrize("line", ["not json", "[1, 2]", '{"id": "x"}', '{"type": 5}'])
def test_parse_errors(line):
    with pytest.raises(CommandParseError) as excinfo:
        parse_command(line)
    assert not isinstance(excinfo.value, (UnknownCommandError, InvalidCommandError))


def test_unknown_command():
    with pytest.raises(UnknownCommandError) as excinfo:
        parse_command('{"type":"launch_rockets","id":"r9"}')
    assert excinfo.value.command_type == "launch_rockets"
    assert str(excinfo.value) == "Unknown command: launch_rockets"


def test_invalid_payload_keeps_id():
    with pytest.raises(InvalidCommandError) as excinfo:
        parse_command('{"type":"set_thinking_level","id":"r2","level":"extreme"}')
    assert excinfo.value.request_id == "r2"
    assert excinfo.value.command_type == "set_thinking_level"
    assert "level" in str(excinfo.value)


def test_response_wire_shape_omits_absent_fields():
    ack = success_response("r1", "prompt").to_dict()
    assert ack == {"id": "r1", "type": "response", "command": "prompt", "success": True}
    assert list(ack) == ["id", "type", "command", "success"]

    failure = error_response(None, "parse", "bad").to_dict()
    assert failure == {"type": "response", "command": "parse", "success": False, "error": "bad"}


def test_success_response_dumps_models_by_alias():
    state = RpcSessionState(session_id="s1", active_branch="main", message_count=2)
    data = success_response("r1", "get_state", state).data
    assert data["sessionId"] == "s1"
    assert data["activeBranch"] == "main"
    assert data["messageCount"] == 2
    assert data["model"] is None


def test_response_from_dict():
    resp = RpcResponse.from_dict({"id": "r3", "type": "response", "command": "get_state",
                                  "success": False, "error": "boom"})
    assert resp.id == "r3"
    assert not resp.success
    assert resp.error == "boom"


def test_is_response():
    assert is_response({"type": "response", "command": "x", "success": True})
    assert not is_response({"type": "agent_end"})
    assert not is_response("response")


def test_encode_line_is_single_line():
    line = encode_line(PromptCommand(id="r1", message="line one\nline two"))
    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert json.loads(line) == {"id": "r1", "type": "prompt", "message": "line one\nline two"}


def test_emit_message_writes_and_flushes():
    out = io.StringIO()
    emit_message({"type": "agent_start"}, out)
    emit_message(success_response("r1", "abort"), out)
    lines = out.getvalue().splitlines()
    assert json.loads(lines[0]) == {"type": "agent_start"}
    assert json.loads(lines[1])["command"] == "abort"


def test_branch_info_aliases():
    info = BranchInfo(name="b", head_node_id=None, created="t0", last_modified="t1")
    assert info.to_wire() == {"name": "b", "headNodeId": None, "messageCount": 0,
                              "created": "t0", "lastModified": "t1"}
