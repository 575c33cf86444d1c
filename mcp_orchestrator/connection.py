"""
A live channel to one downstream server.

Connection.open() runs the handshake:

    initialize ──▶ (self-reference check) ──▶ notifications/initialized ──▶ tools/list

and leaves behind a ready Connection holding the server's tool catalog.
Transport differences (subprocess pipes vs HTTP POST) stay in transport.py.

A Connection does not retry and does not know about the orchestrator's
load states; ServerPool decides what to do with its failures.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_orchestrator.config import ServerDescriptor, Timeouts
from mcp_orchestrator.errors import (
    CallError,
    CallTimeout,
    HandshakeFailure,
    HandshakeTimeout,
    SelfReferenceDetected,
    ToolNotFound,
    ToolsListFailure,
    TransportFailure,
)
from mcp_orchestrator.identity import DEFAULT_IDENTITY, PROTOCOL_VERSION, Identity, is_self_reference
from mcp_orchestrator.transport import Transport, build_transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    """One entry of a server's tool catalog. The schema is passed through untouched."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolDescriptor":
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=data.get("inputSchema") or data.get("parameters") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


TransportFactory = Callable[[ServerDescriptor, Timeouts, "str | None"], Transport]


class Connection:
    """
    A handshaken connection to one server: the transport plus its tool catalog.

    Usage:
        conn = Connection.open(descriptor)
        conn.list_tools()
        conn.call("echo", {"message": "hi"})
        conn.close()
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        transport: Transport,
        identity: Identity = DEFAULT_IDENTITY,
        timeouts: Timeouts | None = None,
    ):
        self.descriptor = descriptor
        self.transport = transport
        self.identity = identity
        self.timeouts = timeouts or Timeouts()
        self.tools: list[ToolDescriptor] = []
        self.server_info: dict[str, Any] = {}
        self.instructions: str | None = None
        self.connected_at: float | None = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @classmethod
    def open(
        cls,
        descriptor: ServerDescriptor,
        identity: Identity = DEFAULT_IDENTITY,
        timeouts: Timeouts | None = None,
        cwd: str | None = None,
        transport_factory: TransportFactory = build_transport,
    ) -> "Connection":
        """
        Start the server's transport and run the handshake.

        Raises:
            SpawnFailure, HandshakeTimeout, HandshakeFailure,
            SelfReferenceDetected, ToolsListFailure, TransportFailure.
        """
        timeouts = timeouts or Timeouts()
        transport = transport_factory(descriptor, timeouts, cwd)
        connection = cls(descriptor, transport, identity=identity, timeouts=timeouts)
        connection.handshake()
        return connection

    def handshake(self) -> None:
        """Start the transport, then initialize, initialized, tools/list."""
        start = time.monotonic()
        logger.info(f"Starting {self.name}...")

        self.transport.start()
        try:
            self._initialize()
            self.transport.notify("notifications/initialized")
            self.tools = self._list_tools()
        except BaseException:
            self.transport.stop()
            raise

        self.connected_at = time.monotonic()
        duration_ms = int((self.connected_at - start) * 1000)
        logger.info(f"Connected to {self.name} in {duration_ms}ms ({len(self.tools)} tools)")

    def _initialize(self) -> None:
        params = {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": self.identity.client_info(),
        }
        try:
            response = self.transport.request(
                "initialize", params, timeout=self._budget(self.timeouts.handshake)
            )
        except TimeoutError as e:
            raise HandshakeTimeout(
                f"Timeout during initialize handshake for {self.name}: {e}",
                server_name=self.name,
            ) from e
        except TransportFailure as e:
            raise HandshakeFailure(
                f"Initialize failed for {self.name}: {e.message}", server_name=self.name
            ) from e

        if response.is_error:
            raise HandshakeFailure(
                f"Initialize rejected by {self.name}: {response.error_message}",
                server_name=self.name,
            )

        result = response.result if isinstance(response.result, dict) else {}
        info = result.get("serverInfo") or result.get("clientInfo") or result
        for declared in (result.get("serverInfo"), result.get("clientInfo")):
            if is_self_reference(declared, self.identity):
                logger.error(f"Refusing to connect {self.name}: it reports itself as this orchestrator")
                raise SelfReferenceDetected(self.name, declared)

        self.server_info = info if isinstance(info, dict) else {}
        self.instructions = result.get("instructions")
        logger.debug(f"{self.name} initialized: {self.server_info}")

    def _list_tools(self) -> list[ToolDescriptor]:
        try:
            response = self.transport.request(
                "tools/list", {}, timeout=self._budget(self.timeouts.tools_list)
            )
        except TimeoutError as e:
            raise ToolsListFailure(
                f"Timeout listing tools for {self.name}: {e}", server_name=self.name
            ) from e
        except TransportFailure as e:
            raise ToolsListFailure(
                f"tools/list failed for {self.name}: {e.message}", server_name=self.name
            ) from e

        if response.is_error:
            raise ToolsListFailure(
                f"tools/list failed for {self.name}: {response.error_message}",
                server_name=self.name,
            )

        result = response.result
        raw_tools = result.get("tools") if isinstance(result, dict) else result
        if not isinstance(raw_tools, list):
            raise ToolsListFailure(
                f"tools/list for {self.name} returned no tool list", server_name=self.name
            )

        try:
            return [ToolDescriptor.from_dict(t) for t in raw_tools]
        except (KeyError, TypeError, AttributeError) as e:
            raise ToolsListFailure(
                f"tools/list for {self.name} returned a malformed tool: {e}",
                server_name=self.name,
            ) from e

    def list_tools(self) -> list[ToolDescriptor]:
        return list(self.tools)

    def get_tool(self, tool_name: str) -> ToolDescriptor | None:
        return next((t for t in self.tools if t.name == tool_name), None)

    def call(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
        request_id: int | None = None,
    ) -> Any:
        """
        Call a tool on this server.

        A timeout fails only this call; the connection stays usable.

        Raises:
            ToolNotFound: the catalog has no such tool.
            CallTimeout: no matching response in time.
            CallError: the server answered with an error.
            TransportFailure: the server is gone.
        """
        if self.get_tool(tool_name) is None:
            raise ToolNotFound(
                f"Unknown tool: '{tool_name}' on {self.name}. "
                f"Available: {[t.name for t in self.tools]}",
                server_name=self.name,
                tool_name=tool_name,
            )

        budget = self._budget(timeout if timeout is not None else self.timeouts.tool_call)
        params = {"name": tool_name, "arguments": arguments or {}}
        try:
            response = self.transport.request(
                "tools/call", params, timeout=budget, request_id=request_id
            )
        except TimeoutError as e:
            raise CallTimeout(
                f"Tool timeout: {self.name}/{tool_name} after {budget}s",
                server_name=self.name,
                tool_name=tool_name,
            ) from e
        except TransportFailure as e:
            raise TransportFailure(
                f"Tool call {self.name}/{tool_name} failed: {e.message}",
                server_name=self.name,
                tool_name=tool_name,
            ) from e

        if response.is_error:
            error = response.error or {}
            raise CallError(
                f"Tool call failed ({self.name}/{tool_name}): {response.error_message}",
                server_name=self.name,
                tool_name=tool_name,
                code=error.get("code"),
                data=error.get("data"),
            )
        return response.result

    def is_alive(self) -> bool:
        return self.transport.is_alive()

    def close(self) -> None:
        self.transport.stop()

    def drain(self, grace: float | None = None, force_kill: float | None = None) -> None:
        """Polite shutdown; see Transport.drain."""
        self.transport.drain(
            self.timeouts.shutdown_grace if grace is None else grace,
            self.timeouts.force_kill if force_kill is None else force_kill,
        )

    def _budget(self, seconds: float) -> float:
        # HTTP servers get at most the per-request ceiling
        if self.descriptor.is_subprocess:
            return seconds
        return min(seconds, self.timeouts.http_request)

    def __repr__(self) -> str:
        return f"<Connection {self.name} tools={len(self.tools)} alive={self.is_alive()}>"


__all__ = ["Connection", "ToolDescriptor", "TransportFactory"]
