"""Tests for framing, id allocation and the stdio/HTTP transports."""

import json
import sys
import textwrap

import httpx
import pytest

from mcp_orchestrator.errors import SpawnFailure, TransportFailure
from mcp_orchestrator.transport import (
    HttpTransport,
    JsonRpcRequest,
    JsonRpcResponse,
    LineBuffer,
    StdioTransport,
    Transport,
)


class _ScriptedTransport(Transport):
    """Transport whose replies come from a callable, for id bookkeeping tests."""

    def __init__(self, reply):
        super().__init__(name="scripted")
        self.reply = reply
        self.sent = []

    def start(self):
        pass

    def stop(self):
        pass

    def is_alive(self):
        return True

    def notify(self, method, params=None):
        pass

    def _exchange(self, call, timeout):
        self.sent.append(call.id)
        return self.reply(call)


class TestLineBuffer:
    """Test newline framing across arbitrary read boundaries."""

    def test_message_split_across_reads(self):
        buffer = LineBuffer()

        assert buffer.feed(b'{"id": 1, "res') == []
        assert buffer.feed(b'ult": 2}\n{"id"') == ['{"id": 1, "result": 2}']
        assert buffer.pending == b'{"id"'
        assert buffer.feed(b": 2}\n") == ['{"id": 2}']

    def test_multibyte_character_split_between_reads(self):
        buffer = LineBuffer()
        data = '{"m": "héllo"}\n'.encode("utf-8")
        cut = data.index(b"\xc3") + 1

        assert buffer.feed(data[:cut]) == []
        assert buffer.feed(data[cut:]) == ['{"m": "héllo"}']

    def test_blank_lines_and_crlf(self):
        buffer = LineBuffer()

        assert buffer.feed(b"\n\r\n  \na\r\nb\n") == ["a", "b"]

    def test_flush_returns_partial_line(self):
        buffer = LineBuffer()
        buffer.feed(b"tail")

        assert buffer.flush() == "tail"
        assert buffer.flush() is None


class TestJsonRpcMessages:
    def test_request_without_params(self):
        message = JsonRpcRequest(method="ping", params=None, id=7).to_message()

        assert message == {"jsonrpc": "2.0", "id": 7, "method": "ping"}

    def test_response_error_message(self):
        response = JsonRpcResponse.from_message({"id": 1, "error": "bad"})

        assert response.is_error
        assert response.error_message == "bad"

    def test_response_result(self):
        response = JsonRpcResponse.from_json('{"jsonrpc": "2.0", "id": 3, "result": {"ok": true}}')

        assert not response.is_error
        assert response.id == 3
        assert response.result == {"ok": True}


class TestRequestIds:
    """Test id allocation and release in the pending-call table."""

    def test_ids_are_monotonic(self):
        transport = _ScriptedTransport(lambda call: JsonRpcResponse(id=call.id, result=None))

        transport.request("a")
        transport.request("b")

        assert transport.sent == [1, 2]
        assert transport.pending_ids == []

    def test_counter_skips_pending_ids(self):
        transport = _ScriptedTransport(lambda call: JsonRpcResponse(id=call.id))
        transport._register("held", None, 2)

        assert transport.next_id() == 1
        assert transport.next_id() == 3

    def test_explicit_id_rejected_while_pending(self):
        transport = _ScriptedTransport(lambda call: JsonRpcResponse(id=call.id))
        transport._register("held", None, 5)

        with pytest.raises(ValueError):
            transport.request("again", request_id=5)

    def test_id_released_after_timeout(self):
        def reply(call):
            raise TimeoutError("slow")

        transport = _ScriptedTransport(reply)

        with pytest.raises(TimeoutError):
            transport.request("slow", request_id=9)

        assert 9 not in transport.pending_ids
        transport.reply = lambda call: JsonRpcResponse(id=call.id, result="ok")
        assert transport.request("fast", request_id=9).result == "ok"


def _script_command(source):
    return [sys.executable, "-c", textwrap.dedent(source)]


class TestStdioTransport:
    """Test the subprocess transport against small inline scripts."""

    def test_skips_noise_and_unmatched_ids(self):
        transport = StdioTransport(_script_command("""
            import json, sys
            request = json.loads(sys.stdin.readline())
            print("starting up...", flush=True)
            print(json.dumps({"jsonrpc": "2.0", "id": 999, "result": "stale"}), flush=True)
            print(json.dumps({"jsonrpc": "2.0", "method": "notifications/progress"}), flush=True)
            print(json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": {"ok": True}}), flush=True)
            sys.stdin.readline()
        """), name="noisy")
        transport.start()
        try:
            response = transport.request("ping", timeout=5)
        finally:
            transport.stop()

        assert response.result == {"ok": True}
        assert not transport.is_alive()

    def test_process_exit_fails_pending_call(self):
        transport = StdioTransport(_script_command("""
            import sys
            sys.stdin.readline()
        """), name="quitter")
        transport.start()
        try:
            with pytest.raises(TransportFailure) as exc_info:
                transport.request("ping", timeout=5)
        finally:
            transport.stop()

        assert exc_info.value.server_name == "quitter"

    def test_spawn_failure(self):
        transport = StdioTransport(["/nonexistent/tool-server-binary"], name="ghost")

        with pytest.raises(SpawnFailure):
            transport.start()

    def test_timeout_leaves_transport_usable(self):
        transport = StdioTransport(_script_command("""
            import json, sys
            sys.stdin.readline()
            request = json.loads(sys.stdin.readline())
            print(json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": "second"}), flush=True)
            sys.stdin.readline()
        """), name="slowpoke")
        transport.start()
        try:
            with pytest.raises(TimeoutError):
                transport.request("ignored", timeout=0.3, request_id=1)
            response = transport.request("answered", timeout=5, request_id=1)
        finally:
            transport.stop()

        assert response.result == "second"

    def test_drain_sends_exit_after_prompt_shutdown(self):
        """A server that leaves right after shutdown still gets the exit notification."""
        transport = StdioTransport(["unused"], name="prompt")
        process = _PromptExitProcess()
        transport._process = process

        transport.drain(grace=1.0, force_kill=1.0)

        assert [m["method"] for m in process.stdin.messages] == ["shutdown", "exit"]
        assert process.stdin.closed
        assert not process.killed
        assert transport.process is None


class _RecordingPipe:
    """Child stdin that keeps every message written to it."""

    def __init__(self):
        self.messages = []
        self.closed = False

    def write(self, data):
        if self.closed:
            raise ValueError("write to closed file")
        self.messages.append(json.loads(data))

    def flush(self):
        pass

    def close(self):
        self.closed = True


class _PromptExitProcess:
    """Popen stand-in for a child that exits as soon as it is waited on."""

    pid = 4242
    stdout = None

    def __init__(self):
        self.stdin = _RecordingPipe()
        self.returncode = None
        self.killed = False

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self.returncode = 0
        return 0

    def kill(self):
        self.killed = True


def _http_transport(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    transport = HttpTransport("http://remote.test/mcp", client=client, name="remote", **kwargs)
    transport.start()
    return transport


class TestHttpTransport:
    """Test the HTTP transport against httpx.MockTransport."""

    def test_request_round_trip(self):
        seen = []

        def handler(request):
            body = json.loads(request.content)
            seen.append((request.headers["content-type"], body))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"tools": []}})

        transport = _http_transport(handler)
        response = transport.request("tools/list", {})

        assert response.result == {"tools": []}
        assert seen[0][0] == "application/json"
        assert seen[0][1]["method"] == "tools/list"
        assert transport.pending_ids == []

    def test_notification_has_no_id(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(202)

        transport = _http_transport(handler)
        transport.notify("notifications/initialized")

        assert seen == [{"jsonrpc": "2.0", "method": "notifications/initialized"}]

    def test_non_2xx_is_transport_failure(self):
        transport = _http_transport(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(TransportFailure) as exc_info:
            transport.request("tools/list")

        assert "503" in str(exc_info.value)

    def test_malformed_body_is_transport_failure(self):
        transport = _http_transport(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(TransportFailure):
            transport.request("tools/list")

    def test_mismatched_id_is_transport_failure(self):
        transport = _http_transport(
            lambda request: httpx.Response(200, json={"jsonrpc": "2.0", "id": 12345, "result": 1})
        )

        with pytest.raises(TransportFailure):
            transport.request("tools/list")

    def test_http_timeout_becomes_timeout_error(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        transport = _http_transport(handler)

        with pytest.raises(TimeoutError):
            transport.request("tools/call", {"name": "x"}, timeout=0.1)

    def test_not_started(self):
        transport = HttpTransport("http://remote.test/mcp", name="remote")

        with pytest.raises(TransportFailure):
            transport.request("ping")
