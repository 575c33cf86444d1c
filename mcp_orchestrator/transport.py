"""
Transport layer for downstream tool servers.

Implements:
  - StdioTransport: newline-delimited JSON-RPC over a child's stdin/stdout
  - HttpTransport: one JSON-RPC message per HTTP POST

Both correlate requests and responses by id. A transport knows nothing about
the handshake or the orchestrator's lifecycle states; that lives in
connection.py and manager.py.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any

import httpx

from mcp_orchestrator.config import ServerDescriptor, Timeouts
from mcp_orchestrator.errors import SpawnFailure, TransportFailure

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any] | None
    id: int | str

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": self.id, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_message())


@dataclass
class JsonRpcNotification:
    """JSON-RPC 2.0 notification (no id, never answered)."""
    method: str
    params: dict[str, Any] | None = None

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_message())


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_message(cls, parsed: dict[str, Any]) -> "JsonRpcResponse":
        error = parsed.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        return cls(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=error,
        )

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        return cls.from_message(json.loads(data))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        return str(self.error.get("message") or self.error)


class LineBuffer:
    """
    Incremental newline splitter.

    Keeps the trailing partial fragment between feeds, so a message split
    across any number of reads comes out whole. Splitting happens on bytes
    before decoding, which keeps multi-byte UTF-8 characters intact.
    """

    def __init__(self):
        self._fragment = b""

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return the complete, non-blank lines it finished."""
        data = self._fragment + chunk
        *complete, self._fragment = data.split(b"\n")
        lines = []
        for raw in complete:
            line = raw.rstrip(b"\r").decode("utf-8", errors="replace")
            if line.strip():
                lines.append(line)
        return lines

    @property
    def pending(self) -> bytes:
        return self._fragment

    def flush(self) -> str | None:
        """Return whatever partial line is left (used at EOF)."""
        rest, self._fragment = self._fragment, b""
        text = rest.decode("utf-8", errors="replace").strip()
        return text or None


@dataclass
class PendingCall:
    """A request waiting for the response carrying the same id."""
    id: int | str
    method: str
    params: dict[str, Any] | None
    future: Future = field(default_factory=Future)
    started_at: float = field(default_factory=time.monotonic)

    def to_request(self) -> JsonRpcRequest:
        return JsonRpcRequest(method=self.method, params=self.params, id=self.id)


class Transport(ABC):
    """
    Abstract transport for JSON-RPC traffic with one downstream server.

    Owns the pending-call table: ids come from a counter that skips ids
    still in flight, and an entry leaves the table when its call completes,
    times out, or the transport is torn down.
    """

    def __init__(self, name: str = "server"):
        self.name = name
        self._pending: dict[int | str, PendingCall] = {}
        self._pending_lock = threading.Lock()
        self._request_id = 0

    @abstractmethod
    def start(self) -> None:
        """Start the transport (e.g., launch subprocess)."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop the transport (e.g., terminate subprocess)."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...

    @abstractmethod
    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification. No reply is expected."""
        ...

    @abstractmethod
    def _exchange(self, call: PendingCall, timeout: float) -> JsonRpcResponse:
        """Send a registered call and return its response."""
        ...

    def drain(self, grace: float, force_kill: float) -> None:
        """Shut the server down politely. Default: just stop."""
        self.stop()

    def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
        request_id: int | str | None = None,
    ) -> JsonRpcResponse:
        """
        Send a request and wait for its response.

        Raises:
            TimeoutError: no matching response within `timeout` seconds.
                The id is released either way.
            TransportFailure: the channel broke.
            ValueError: `request_id` is already pending.
        """
        call = self._register(method, params, request_id)
        try:
            return self._exchange(call, timeout)
        finally:
            self._release(call.id)

    def next_id(self) -> int:
        """Generate the next request ID not currently pending."""
        with self._pending_lock:
            return self._next_free_id()

    @property
    def pending_ids(self) -> list[int | str]:
        with self._pending_lock:
            return list(self._pending)

    def _next_free_id(self) -> int:
        while True:
            self._request_id += 1
            if self._request_id not in self._pending:
                return self._request_id

    def _register(
        self,
        method: str,
        params: dict[str, Any] | None,
        request_id: int | str | None,
    ) -> PendingCall:
        with self._pending_lock:
            if request_id is None:
                request_id = self._next_free_id()
            elif request_id in self._pending:
                raise ValueError(f"Request id {request_id!r} is already pending on {self.name}")
            call = PendingCall(id=request_id, method=method, params=params)
            self._pending[request_id] = call
            return call

    def _release(self, request_id: int | str) -> None:
        with self._pending_lock:
            self._pending.pop(request_id, None)

    def _resolve(self, response: JsonRpcResponse) -> bool:
        """Hand a response to the call waiting on its id. Unknown ids are ignored."""
        with self._pending_lock:
            call = self._pending.get(response.id) if response.id is not None else None
            if call is None or call.future.done():
                return False
            call.future.set_result(response)
            return True

    def _fail_pending(self, error: Exception) -> None:
        with self._pending_lock:
            for call in self._pending.values():
                if not call.future.done():
                    call.future.set_exception(error)
            self._pending.clear()


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    We write one JSON message per line to the child's stdin. A reader thread
    scans its stdout for complete lines and hands each response to the call
    waiting on that id, so several calls can be in flight at once and finish
    in any order. stderr stays attached to ours for diagnostics.
    """

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        name: str = "server",
    ):
        """
        Args:
            command: Command to launch the tool server process.
                     e.g., ["python", "-m", "mcp_orchestrator.servers.echo"]
            env: Environment overrides, merged over os.environ.
            cwd: Working directory for the child.
            name: Server name used in errors and logs.
        """
        super().__init__(name=name)
        self.command = command
        self.env = env
        self.cwd = cwd
        self._process: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None
        self._write_lock = threading.Lock()
        self._eof = threading.Event()

    @property
    def process(self) -> subprocess.Popen | None:
        return self._process

    def start(self) -> None:
        """Launch the tool server subprocess and its stdout reader."""
        if self._process and self._process.poll() is None:
            logger.warning(f"Transport for {self.name} already running, stopping first")
            self.stop()

        logger.info(f"Starting stdio transport for {self.name}: {' '.join(self.command)}")
        env = {**os.environ, **self.env} if self.env else None
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=None,  # inherit: diagnostics only, never protocol
                env=env,
                cwd=self.cwd,
                bufsize=0,
            )
        except (OSError, ValueError) as e:
            raise SpawnFailure(
                f"Failed to spawn {self.name}: {e}", server_name=self.name
            ) from e

        self._eof.clear()
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(self._process,),
            name=f"stdio-reader-{self.name}",
            daemon=True,
        )
        self._reader.start()

    def stop(self) -> None:
        """Terminate the tool server subprocess."""
        process = self._process
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        self._finish(process)
        logger.info(f"Stdio transport for {self.name} stopped")

    def drain(self, grace: float, force_kill: float) -> None:
        """
        shutdown request, wait `grace`, exit notification, wait `force_kill`,
        then kill whatever is still running.
        """
        process = self._process
        if process is None:
            return

        if process.poll() is None:
            self._write_quietly(JsonRpcRequest(method="shutdown", params=None, id=self.next_id()))
            try:
                process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                pass
            # exit goes out even if the server already left after shutdown
            self._write_quietly(JsonRpcNotification(method="exit"))
            self._close_stdin(process)
            if process.poll() is None:
                try:
                    process.wait(timeout=force_kill)
                except subprocess.TimeoutExpired:
                    logger.warning(f"{self.name} (pid={process.pid}) ignored exit, killing")
                    process.kill()
                    process.wait()

        self._finish(process)
        logger.info(f"Drained {self.name} (exit code {process.returncode})")

    def is_alive(self) -> bool:
        """Check if the subprocess is running and its stdout is open."""
        return (
            self._process is not None
            and self._process.poll() is None
            and not self._eof.is_set()
        )

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._write(JsonRpcNotification(method=method, params=params))

    def _exchange(self, call: PendingCall, timeout: float) -> JsonRpcResponse:
        if not self.is_alive():
            raise TransportFailure(
                f"Tool server {self.name} is not running", server_name=self.name
            )

        logger.debug(f"Sending {call.method} to {self.name} (id={call.id})")
        self._write(call.to_request())

        try:
            return call.future.result(timeout=timeout)
        except FutureTimeoutError:
            raise TimeoutError(
                f"Timeout waiting for {call.method} response from {self.name} "
                f"(id={call.id}, {timeout}s)"
            ) from None

    def _write(self, message: JsonRpcRequest | JsonRpcNotification) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise TransportFailure(
                f"Tool server {self.name} is not running", server_name=self.name
            )
        data = (message.to_json() + "\n").encode("utf-8")
        try:
            with self._write_lock:
                process.stdin.write(data)
                process.stdin.flush()
        except (OSError, ValueError) as e:
            raise TransportFailure(
                f"Failed writing to {self.name}: {e}", server_name=self.name
            ) from e

    def _write_quietly(self, message: JsonRpcRequest | JsonRpcNotification) -> None:
        try:
            self._write(message)
        except TransportFailure as e:
            logger.debug(f"Ignoring write failure during drain of {self.name}: {e}")

    def _read_loop(self, process: subprocess.Popen) -> None:
        buffer = LineBuffer()
        stdout = process.stdout
        try:
            while True:
                chunk = stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    self._handle_line(line)
            tail = buffer.flush()
            if tail:
                self._handle_line(tail)
        except (OSError, ValueError) as e:
            logger.debug(f"Reader for {self.name} stopped: {e}")
        finally:
            self._eof.set()
            code = process.poll()
            self._fail_pending(TransportFailure(
                f"Tool server {self.name} closed its output (exit code {code})",
                server_name=self.name,
            ))

    def _handle_line(self, line: str) -> None:
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring non-JSON line from {self.name}: {line[:200]}")
            return
        if not isinstance(message, dict):
            return
        if "id" not in message or ("result" not in message and "error" not in message):
            # server-initiated request or notification
            logger.debug(f"Ignoring message from {self.name}: {message.get('method')}")
            return
        if not self._resolve(JsonRpcResponse.from_message(message)):
            logger.debug(f"Ignoring response with unmatched id {message.get('id')!r} from {self.name}")

    def _close_stdin(self, process: subprocess.Popen) -> None:
        if process.stdin is None:
            return
        with self._write_lock:
            try:
                process.stdin.close()
            except OSError:
                pass

    def _finish(self, process: subprocess.Popen) -> None:
        self._close_stdin(process)
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=1)
        if process.stdout is not None:
            process.stdout.close()
        self._fail_pending(TransportFailure(
            f"Tool server {self.name} was stopped", server_name=self.name
        ))
        self._process = None
        self._reader = None


class HttpTransport(Transport):
    """
    JSON-RPC over HTTP: each message is a single POST and the response body
    carries the reply. Nothing runs locally, so there is nothing to drain.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        name: str = "server",
        client: httpx.Client | None = None,
    ):
        super().__init__(name=name)
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._started = False

    def start(self) -> None:
        if self._client is None:
            self._client = httpx.Client(headers=self.headers, timeout=self.timeout)
            self._owns_client = True
        self._started = True
        logger.info(f"Connected to {self.name} via HTTP: {self.url}")

    def stop(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        self._started = False
        self._fail_pending(TransportFailure(
            f"HTTP transport for {self.name} closed", server_name=self.name
        ))

    def is_alive(self) -> bool:
        return self._started and self._client is not None

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._post(JsonRpcNotification(method=method, params=params).to_message(), self.timeout)

    def _exchange(self, call: PendingCall, timeout: float) -> JsonRpcResponse:
        response = self._post(call.to_request().to_message(), timeout)
        try:
            body = response.json()
        except ValueError as e:
            raise TransportFailure(
                f"HTTP {self.name} returned a malformed body for {call.method}: {response.text[:200]}",
                server_name=self.name,
            ) from e
        if not isinstance(body, dict):
            raise TransportFailure(
                f"HTTP {self.name} returned a non-object body for {call.method}",
                server_name=self.name,
            )

        reply = JsonRpcResponse.from_message(body)
        if reply.id is not None and reply.id != call.id:
            raise TransportFailure(
                f"HTTP {self.name} answered id {reply.id!r} to request id {call.id!r}",
                server_name=self.name,
            )
        return reply

    def _post(self, payload: dict[str, Any], timeout: float) -> httpx.Response:
        if not self.is_alive():
            raise TransportFailure(
                f"HTTP transport for {self.name} not started", server_name=self.name
            )
        try:
            response = self._client.post(
                self.url,
                json=payload,
                headers={"content-type": "application/json"},
                timeout=timeout,
            )
        except httpx.TimeoutException:
            raise TimeoutError(
                f"Timeout waiting for HTTP {self.name} ({payload.get('method')}, {timeout}s)"
            ) from None
        except httpx.HTTPError as e:
            raise TransportFailure(
                f"HTTP {self.name} request failed: {e}", server_name=self.name
            ) from e

        if not response.is_success:
            raise TransportFailure(
                f"HTTP {self.name} request failed ({response.status_code}): {response.text[:500]}",
                server_name=self.name,
            )
        return response


def build_transport(
    descriptor: ServerDescriptor,
    timeouts: Timeouts,
    cwd: str | None = None,
) -> Transport:
    """Create the transport a descriptor asks for (not started yet)."""
    if descriptor.is_subprocess:
        return StdioTransport(
            [descriptor.command, *descriptor.args],
            env=descriptor.env or None,
            cwd=descriptor.cwd or cwd,
            name=descriptor.name,
        )
    return HttpTransport(
        descriptor.url,
        headers=descriptor.headers,
        timeout=timeouts.http_request,
        name=descriptor.name,
    )
