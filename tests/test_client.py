import asyncio
import signal
import sys
import textwrap
import time

import pytest

from agent_rpc.core.rpc.client import RpcClient
from agent_rpc.core.rpc.exceptions import (
    AgentProcessError,
    ClientNotStartedError,
    RpcCommandError,
    RpcTimeoutError,
)

ECHO_AGENT = textwrap.dedent("""
    import json, sys
    for line in sys.stdin:
        try:
            cmd = json.loads(line)
        except ValueError:
            continue
        if cmd["type"] == "prompt":
            print(json.dumps({"id": cmd["id"], "type": "response", "command": "prompt", "success": True}), flush=True)
            print("this line is not json", flush=True)
            for event in ("agent_start", "message_update", "agent_end"):
                print(json.dumps({"type": event}), flush=True)
        elif cmd["type"] == "get_state":
            print(json.dumps({"id": cmd["id"], "type": "response", "command": "get_state", "success": True,
                              "data": {"sessionId": "s1", "activeBranch": "main", "isStreaming": False}}),
                  flush=True)
        elif cmd["type"] == "set_model":
            print(json.dumps({"id": cmd["id"], "type": "response", "command": "set_model", "success": False,
                              "error": "Model not found: " + cmd["api"] + "/" + cmd["modelId"]}), flush=True)
        else:
            print(json.dumps({"id": cmd["id"], "type": "response", "command": cmd["type"], "success": True}),
                  flush=True)
""")

SILENT_AGENT = textwrap.dedent("""
    import sys
    sys.stderr.write("agent is thinking\\n")
    sys.stderr.flush()
    for line in sys.stdin:
        pass
""")

REVERSED_AGENT = textwrap.dedent("""
    import json, sys
    first = json.loads(sys.stdin.readline())
    second = json.loads(sys.stdin.readline())
    for cmd in (second, first):
        data = {"messages": []} if cmd["type"] == "get_messages" else {"sessionId": "s1", "activeBranch": "main"}
        print(json.dumps({"id": cmd["id"], "type": "response", "command": cmd["type"], "success": True,
                          "data": data}), flush=True)
    for line in sys.stdin:
        pass
""")

CRASHING_AGENT = textwrap.dedent("""
    import sys
    sys.stderr.write("fatal: cannot load model\\n")
    sys.exit(3)
""")

DYING_AGENT = textwrap.dedent("""
    import sys, time
    sys.stdin.readline()
    sys.stderr.write("segfault-ish\\n")
    sys.exit(7)
""")

STRAY_ID_AGENT = textwrap.dedent("""
    import json, sys
    for line in sys.stdin:
        cmd = json.loads(line)
        if cmd["type"] == "abort":
            print(json.dumps({"type": "response", "id": {"x": 1}, "command": "abort", "success": True}), flush=True)
            print(json.dumps({"type": "response", "id": ["req_1"], "command": "abort", "success": True}), flush=True)
        print(json.dumps({"id": cmd["id"], "type": "response", "command": cmd["type"], "success": True}), flush=True)
""")

STUBBORN_AGENT = textwrap.dedent("""
    import signal, sys
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    for line in sys.stdin:
        pass
""")


def _client(script, **kwargs):
    kwargs.setdefault("request_timeout", 5.0)
    kwargs.setdefault("startup_grace", 0.2)
    return RpcClient(command=[sys.executable, "-c", script], **kwargs)


def test_prompt_then_events_in_order():
    async def _go():
        async with _client(ECHO_AGENT) as client:
            events = await client.prompt_and_wait("hi", timeout=5.0)
            return [e["type"] for e in events]

    assert asyncio.run(_go()) == ["agent_start", "message_update", "agent_end"]


def test_request_ids_are_sequential():
    async def _go():
        async with _client(ECHO_AGENT) as client:
            first = await client.send({"type": "abort"})
            second = await client.send({"type": "reset"})
            return first, second

    first, second = asyncio.run(_go())
    assert (first.id, first.command) == ("req_1", "abort")
    assert (second.id, second.command) == ("req_2", "reset")


def test_failed_response_raises_command_error():
    async def _go():
        async with _client(ECHO_AGENT) as client:
            with pytest.raises(RpcCommandError) as excinfo:
                await client.set_model("google", "nope")
            return excinfo.value

    error = asyncio.run(_go())
    assert error.command == "set_model"
    assert "Model not found" in str(error)


def test_get_state_is_typed():
    async def _go():
        async with _client(ECHO_AGENT) as client:
            return await client.get_state()

    state = asyncio.run(_go())
    assert state.session_id == "s1"
    assert state.active_branch == "main"
    assert state.model is None


def test_listener_errors_do_not_kill_reader():
    async def _go():
        async with _client(ECHO_AGENT) as client:
            def broken(event):
                raise RuntimeError("listener bug")
            client.on_event(broken)
            events = await client.prompt_and_wait("hi", timeout=5.0)
            # Reader still alive
            await client.abort()
            return events

    assert asyncio.run(_go())[-1]["type"] == "agent_end"


def test_unsubscribe_stops_delivery():
    async def _go():
        async with _client(ECHO_AGENT) as client:
            seen = []
            unsubscribe = client.on_event(seen.append)
            unsubscribe()
            await client.prompt_and_wait("hi", timeout=5.0)
            return seen

    assert asyncio.run(_go()) == []


def test_silent_agent_times_out_with_stderr():
    async def _go():
        async with _client(SILENT_AGENT, request_timeout=0.3) as client:
            with pytest.raises(RpcTimeoutError) as excinfo:
                await client.get_state()
            assert not client._pending
            return excinfo.value

    error = asyncio.run(_go())
    assert "Timeout" in str(error)
    assert "agent is thinking" in str(error)
    assert isinstance(error, TimeoutError)


def test_concurrent_requests_answered_in_reverse_order():
    async def _go():
        async with _client(REVERSED_AGENT) as client:
            return await asyncio.gather(client.get_state(), client.get_messages())

    state, messages = asyncio.run(_go())
    assert state.session_id == "s1"
    assert messages == []


def test_crashing_agent_fails_start():
    async def _go():
        client = _client(CRASHING_AGENT, startup_grace=0.5)
        with pytest.raises(AgentProcessError) as excinfo:
            await client.start()
        return excinfo.value

    error = asyncio.run(_go())
    assert error.exit_code == 3
    assert "cannot load model" in error.stderr
    assert "cannot load model" in str(error)


def test_child_death_surfaces_as_timeout_by_default():
    async def _go():
        async with _client(DYING_AGENT, request_timeout=0.5) as client:
            with pytest.raises(RpcTimeoutError):
                await client.get_state()

    asyncio.run(_go())


def test_child_death_fails_fast_when_enabled():
    async def _go():
        async with _client(DYING_AGENT, request_timeout=5.0, fail_fast=True) as client:
            with pytest.raises(AgentProcessError) as excinfo:
                await client.get_state()
            return excinfo.value

    error = asyncio.run(_go())
    assert error.exit_code == 7


def test_send_before_start_raises():
    async def _go():
        with pytest.raises(ClientNotStartedError):
            await _client(ECHO_AGENT).get_state()

    asyncio.run(_go())


def test_start_twice_raises():
    async def _go():
        async with _client(ECHO_AGENT) as client:
            with pytest.raises(RuntimeError):
                await client.start()

    asyncio.run(_go())


def test_stop_abandons_pending_requests():
    async def _go():
        client = _client(SILENT_AGENT, request_timeout=1.0)
        await client.start()
        request = asyncio.ensure_future(client.get_state())
        await asyncio.sleep(0.1)
        assert len(client._pending) == 1
        await client.stop()
        assert client._pending == {}
        assert not client.is_alive
        assert "agent is thinking" in client.get_stderr()
        assert not request.done()
        with pytest.raises(RpcTimeoutError):
            await request

    asyncio.run(_go())


def test_stop_kills_agent_ignoring_sigterm():
    async def _go():
        client = _client(STUBBORN_AGENT, stop_grace=0.5, startup_grace=0.5)
        await client.start()
        proc = client._proc
        started = time.monotonic()
        await client.stop()
        return proc.returncode, time.monotonic() - started

    returncode, elapsed = asyncio.run(_go())
    assert returncode == -signal.SIGKILL
    assert 0.4 <= elapsed < 3.0


def test_response_with_non_string_id_goes_to_listeners():
    async def _go():
        async with _client(STRAY_ID_AGENT) as client:
            stray = []
            client.on_event(stray.append)
            await client.abort()
            await client.reset()
            return stray

    stray = asyncio.run(_go())
    assert [e["id"] for e in stray] == [{"x": 1}, ["req_1"]]


def test_wait_for_idle_times_out():
    async def _go():
        async with _client(SILENT_AGENT) as client:
            with pytest.raises(RpcTimeoutError):
                await client.wait_for_idle(timeout=0.2)

    asyncio.run(_go())
