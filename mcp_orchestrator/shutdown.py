"""
Shutdown coordination: drain every live connection before the process exits.

Subprocess connections get `shutdown`, a short grace period, `exit`, then a
kill if the child is still around. HTTP connections only close their client.
All drains run concurrently and drain_all() returns once every one is done.

Signals never drain in the handler's own frame: the interrupted code may be
holding the pool lock, or may itself be inside drain_all(). The handler
hands the drain to a non-daemon thread and raises SystemExit; the
interpreter waits for that thread before it exits.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcp_orchestrator.connection import Connection
    from mcp_orchestrator.manager import ServerPool

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Drains a ServerPool's connections. Safe to trigger more than once."""

    def __init__(self, pool: "ServerPool"):
        self.pool = pool
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._started = False

    def drain_all(self) -> None:
        with self._lock:
            if self._started:
                already = True
            else:
                self._started = True
                already = False
        if already:
            self._done.wait()
            return

        try:
            connections = self.pool._detach_all()
            if not connections:
                return
            logger.info(f"Initiating graceful shutdown of {len(connections)} server(s)...")
            start = time.monotonic()
            # plain threads: executors refuse new work once the interpreter is exiting
            drains = [
                threading.Thread(target=self._drain_one, args=(c,), name=f"drain-{c.name}")
                for c in connections
            ]
            for thread in drains:
                thread.start()
            for thread in drains:
                thread.join()
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(f"Shutdown complete in {duration_ms}ms.")
        finally:
            self._done.set()

    def _drain_one(self, connection: "Connection") -> None:
        try:
            connection.drain()
        except Exception as e:
            logger.warning(f"Error draining {connection.name}: {e}")

    def install_signal_handlers(self, exit_code: int = 0) -> None:
        """Drain on SIGINT/SIGTERM, then exit. Main thread only."""

        def _handler(signum, frame):
            if self._started:
                logger.info(f"Received {signal.Signals(signum).name} while already shutting down")
            else:
                logger.info(f"Received {signal.Signals(signum).name}, shutting down MCP servers...")
                threading.Thread(target=self.drain_all, name="signal-drain").start()
            sys.exit(exit_code)

        signal.signal(signal.SIGINT, _handler)
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, _handler)
