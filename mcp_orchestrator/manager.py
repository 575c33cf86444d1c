"""
Server Pool — decides when downstream servers start and hands out ready connections.

The pool is the bridge between callers (CLI, LangChain tools) and the
Connections to actual running tool servers.

Usage:
    pool = ServerPool(load_config("mcp-servers.json"))

    # Start every non-lazy server in the background
    pool.load_eager_servers()

    # Get a ready connection (starts a lazy server on first demand)
    conn = pool.ensure_loaded("filesystem")

    # Call a tool
    result = pool.call("filesystem", "read_file", {"path": "README.md"})

    # Stop everything
    pool.shutdown()

Per-server lifecycle:

    UNLOADED ──▶ LOADING ──▶ READY ──(process died)──┐
                    │                                 ▼
                    └──────▶ FAILED ──(retry, below the cap)──▶ LOADING

Concurrent ensure_loaded() calls for a server that is LOADING all wait on
the same future, so one server never has two handshakes in flight.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mcp_orchestrator.codec import encode
from mcp_orchestrator.config import OrchestratorConfig, ServerDescriptor
from mcp_orchestrator.connection import Connection, ToolDescriptor, TransportFactory
from mcp_orchestrator.errors import (
    AlreadyAtRetryLimit,
    OrchestratorError,
    SelfReferenceDetected,
    ServerNotFound,
    TransportFailure,
)
from mcp_orchestrator.identity import DEFAULT_IDENTITY, Identity
from mcp_orchestrator.shutdown import ShutdownCoordinator
from mcp_orchestrator.transport import build_transport

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class _Entry:
    """Registry record for one server. Only touched under ServerPool._lock."""
    descriptor: ServerDescriptor
    state: ServerState = ServerState.UNLOADED
    connection: Connection | None = None
    loading: Future | None = None
    failures: int = 0
    last_error: Exception | None = None
    terminal_error: Exception | None = None


@dataclass(frozen=True)
class ServerStatus:
    name: str
    state: ServerState
    lazy: bool
    disabled: bool
    failures: int
    tool_count: int
    transport: str
    last_error: str | None = None


class ServerPool:
    """
    Owns the registry of known servers and their connections.

    Responsibilities:
    - Start non-lazy servers concurrently at boot, lazy ones on first demand
    - Collapse concurrent loads of one server into a single attempt
    - Refuse further attempts after repeated failures, until reset()
    - Route tool calls to the right connection
    - Drain every connection on shutdown
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        identity: Identity = DEFAULT_IDENTITY,
        transport_factory: TransportFactory = build_transport,
        max_workers: int = 8,
    ):
        self.config = config
        self.identity = identity
        self.transport_factory = transport_factory
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {
            name: _Entry(descriptor=d) for name, d in config.servers.items()
        }
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="server-load")
        self._closed = False
        self.coordinator = ShutdownCoordinator(self)

    # ── Loading ────────────────────────────────────────────

    def ensure_loaded(self, name: str) -> Connection:
        """
        Return a ready Connection for `name`, starting the server if needed.

        Raises:
            ServerNotFound: unknown or disabled name.
            AlreadyAtRetryLimit: too many failed attempts.
            SelfReferenceDetected: the server is another orchestrator instance.
            ConnectionFailure: this attempt (or the one we joined) failed.
        """
        dead = None
        try:
            with self._lock:
                if self._closed:
                    raise OrchestratorError("Server pool is shut down", server_name=name)
                entry = self._entries.get(name)
                if entry is None or entry.descriptor.disabled:
                    raise ServerNotFound(f'Server "{name}" not found.', server_name=name)

                if entry.state is ServerState.READY and entry.connection is not None:
                    if entry.connection.is_alive():
                        return entry.connection
                    dead = entry.connection
                    self._retire(entry, dead)

                if entry.state is ServerState.LOADING and entry.loading is not None:
                    future = entry.loading
                    owner = False
                else:
                    if entry.terminal_error is not None:
                        raise entry.terminal_error
                    if entry.state is ServerState.FAILED:
                        if entry.failures >= self.config.max_load_attempts:
                            raise AlreadyAtRetryLimit(name, entry.failures)
                        # below the cap: clear the marker and try again
                        entry.state = ServerState.UNLOADED
                    future = Future()
                    entry.loading = future
                    entry.state = ServerState.LOADING
                    owner = True
        finally:
            if dead is not None:
                dead.close()

        if not owner:
            logger.debug(f"Joining in-flight load of {name}")
            return future.result()

        self._load(entry, future)
        return future.result()

    def _load(self, entry: _Entry, future: Future) -> None:
        name = entry.descriptor.name
        try:
            connection = Connection.open(
                entry.descriptor,
                identity=self.identity,
                timeouts=self.config.timeouts,
                cwd=self.config.project_root,
                transport_factory=self.transport_factory,
            )
        except BaseException as e:
            with self._lock:
                entry.state = ServerState.FAILED
                entry.failures += 1
                entry.last_error = e
                if isinstance(e, SelfReferenceDetected):
                    entry.terminal_error = e
                entry.loading = None
                attempts = entry.failures
            logger.error(f"Failed to load {name} (attempt {attempts}): {e}")
            future.set_exception(e)
            if not isinstance(e, Exception):
                raise
            return

        with self._lock:
            if self._closed:
                entry.loading = None
                entry.state = ServerState.UNLOADED
                closed = True
            else:
                entry.connection = connection
                entry.state = ServerState.READY
                entry.failures = 0
                entry.last_error = None
                entry.loading = None
                closed = False

        if closed:
            connection.drain()
            future.set_exception(OrchestratorError(
                f"Server pool shut down while loading {name}", server_name=name
            ))
            return

        lazy = " on-demand" if entry.descriptor.lazy else ""
        logger.info(f"Loaded {name}{lazy} ({len(connection.tools)} tools)")
        future.set_result(connection)

    def _retire(self, entry: _Entry, connection: Connection) -> bool:
        """
        Move a READY entry whose transport died to FAILED. Caller holds the lock.

        Returns False if the entry has already moved on to another connection.
        """
        if entry.connection is not connection:
            return False
        name = entry.descriptor.name
        entry.connection = None
        entry.state = ServerState.FAILED
        entry.failures += 1
        entry.last_error = TransportFailure(f"{name} is no longer running", server_name=name)
        logger.warning(f"{name} died after loading (failure {entry.failures}); it will be restarted on demand")
        return True

    def load_eager_servers(self) -> Future:
        """
        Start every non-lazy, non-disabled server concurrently and return at once.

        Completion is logged in the background. The returned future resolves
        to {name: error or None} when all eager loads have settled; callers
        are free to ignore it.
        """
        eager = [
            name for name, e in self._entries.items()
            if not e.descriptor.lazy and not e.descriptor.disabled
        ]
        lazy = [name for name, e in self._entries.items() if e.descriptor.lazy and not e.descriptor.disabled]
        for name in lazy:
            logger.info(f"Deferred {name} for lazy loading")

        logger.info(f"Loading MCP servers... ({len(eager)} eager, {len(lazy)} lazy)")
        start = time.monotonic()
        loads = {name: self._executor.submit(self.ensure_loaded, name) for name in eager}

        done: Future = Future()

        def _report() -> None:
            wait(list(loads.values()))
            results = {name: f.exception() for name, f in loads.items()}
            duration_ms = int((time.monotonic() - start) * 1000)
            failed = sum(1 for err in results.values() if err is not None)
            statuses = self.list_servers().values()
            ready = sum(1 for s in statuses if s.state is ServerState.READY)
            tools = sum(s.tool_count for s in statuses)
            logger.info(
                f"Background load complete after {duration_ms}ms. "
                f"Ready: {ready}, Failed: {failed}, Tools: {tools}, Lazy: {len(self.lazy_servers())}."
            )
            done.set_result(results)

        if loads:
            threading.Thread(target=_report, name="eager-load-report", daemon=True).start()
        else:
            done.set_result({})
        return done

    def hydrate(self, limit: int | None = None) -> dict[str, Exception | None]:
        """
        Force-start servers that are still lazy and unloaded.

        Args:
            limit: Start at most this many (in config order). None means all.

        Returns:
            {name: error or None} for every server that was attempted.
        """
        pending = self.lazy_servers()
        targets = pending if limit is None else pending[:limit]
        if not targets:
            return {}

        logger.info(f"Hydrating {len(targets)} lazy server(s): {', '.join(targets)}")
        loads = {name: self._executor.submit(self.ensure_loaded, name) for name in targets}
        wait(list(loads.values()))
        return {name: f.exception() for name, f in loads.items()}

    def reset(self, name: str) -> None:
        """Clear failure history (including self-reference) so `name` may be tried again."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                raise ServerNotFound(f'Server "{name}" not found.', server_name=name)
            if entry.state is ServerState.FAILED:
                entry.state = ServerState.UNLOADED
            entry.failures = 0
            entry.last_error = None
            entry.terminal_error = None
        logger.info(f"Reset failure state for {name}")

    # ── Calls ──────────────────────────────────────────────

    def call(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Call a tool on a server, loading the server first if needed.

        Args:
            server_name: Which server to call
            tool_name: Which tool on that server
            arguments: Tool parameters
            timeout: Per-call budget in seconds (default from config)

        Returns:
            The tool result.

        A call that fails because the server process died marks the server
        FAILED; the next call starts it again (subject to the retry cap).
        """
        connection = self.ensure_loaded(server_name)
        try:
            return connection.call(tool_name, arguments or {}, timeout=timeout)
        except TransportFailure:
            if not connection.is_alive():
                with self._lock:
                    retired = self._retire(self._entries[server_name], connection)
                if retired:
                    connection.close()
            raise

    def call_encoded(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Like call(), but returns the result as TOON text."""
        return encode(self.call(server_name, tool_name, arguments, timeout=timeout))

    # ── Introspection ──────────────────────────────────────

    def list_tools(self, server_name: str) -> list[ToolDescriptor]:
        """List a server's tools, loading it if needed."""
        return self.ensure_loaded(server_name).list_tools()

    def search_tools(
        self,
        query: str,
        hydrate_lazy: bool = False,
        max_lazy_servers: int | None = None,
    ) -> list[tuple[str, ToolDescriptor]]:
        """
        Case-insensitive keyword search over loaded servers' tool names and descriptions.

        With hydrate_lazy, lazy servers are started first (up to max_lazy_servers).
        """
        if hydrate_lazy:
            self.hydrate(max_lazy_servers)

        needle = query.lower().strip()
        matches = []
        for name, connection in self.loaded_servers().items():
            for tool in connection.tools:
                haystack = f"{tool.name} {tool.description}".lower()
                if not needle or needle in haystack:
                    matches.append((name, tool))
        return matches

    def get(self, name: str) -> Connection | None:
        """Return the ready connection for `name` without loading anything."""
        with self._lock:
            entry = self._entries.get(name)
            if entry and entry.state is ServerState.READY:
                return entry.connection
            return None

    def state(self, name: str) -> ServerState:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                raise ServerNotFound(f'Server "{name}" not found.', server_name=name)
            return entry.state

    def loaded_servers(self) -> dict[str, Connection]:
        with self._lock:
            return {
                name: e.connection for name, e in self._entries.items()
                if e.state is ServerState.READY and e.connection is not None
            }

    def lazy_servers(self) -> list[str]:
        """Lazy servers that have not been loaded yet."""
        with self._lock:
            return [
                name for name, e in self._entries.items()
                if e.descriptor.lazy and not e.descriptor.disabled and e.state is ServerState.UNLOADED
            ]

    def disabled_servers(self) -> list[str]:
        return self.config.disabled_servers()

    def list_servers(self) -> dict[str, ServerStatus]:
        """All servers and their lifecycle state."""
        with self._lock:
            return {
                name: ServerStatus(
                    name=name,
                    state=e.state,
                    lazy=e.descriptor.lazy,
                    disabled=e.descriptor.disabled,
                    failures=e.failures,
                    tool_count=len(e.connection.tools) if e.connection else 0,
                    transport=e.descriptor.transport.value,
                    last_error=str(e.last_error) if e.last_error else None,
                )
                for name, e in self._entries.items()
            }

    def live_connections(self) -> list[Connection]:
        """Connections that still own a running transport."""
        with self._lock:
            return [
                e.connection for e in self._entries.values()
                if e.connection is not None and e.state is ServerState.READY
            ]

    # ── Shutdown ───────────────────────────────────────────

    def shutdown(self) -> None:
        """Drain every live connection and stop accepting loads."""
        self.coordinator.drain_all()

    def _detach_all(self) -> list[Connection]:
        """Mark the pool closed and hand over every live connection for draining."""
        with self._lock:
            self._closed = True
            connections = []
            for entry in self._entries.values():
                if entry.connection is not None:
                    connections.append(entry.connection)
                    entry.connection = None
                    entry.state = ServerState.UNLOADED
        self._executor.shutdown(wait=False)
        return connections

    def __enter__(self) -> "ServerPool":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
