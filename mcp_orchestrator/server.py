"""
Reference downstream tool server.

A downstream server is any process that speaks newline-delimited JSON-RPC
on stdin/stdout and answers the handshake:

    initialize ──▶ notifications/initialized ──▶ tools/list ──▶ tools/call ...
                                                             ──▶ shutdown, exit

Writing one:

    from mcp_orchestrator.server import StdioToolServer, ToolHandler

    class WordCount(ToolHandler):
        name = "word_count"
        description = "Counts words in a text"
        parameters = {"text": {"type": "string", "description": "Text to count"}}
        required = ["text"]

        def handle(self, params: dict) -> dict:
            return {"words": len(params["text"].split())}

    if __name__ == "__main__":
        server = StdioToolServer(server_info={"name": "words", "version": "0.1.0"})
        server.register(WordCount())
        server.run()

Logs go to stderr; stdout carries protocol traffic only.
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, Callable, TextIO

from mcp_orchestrator.identity import PROTOCOL_VERSION

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
INTERNAL_ERROR = -32603


class ToolHandler(ABC):
    """
    One tool. Subclasses set the class attributes and implement handle();
    the server owns framing and dispatch.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Run the tool.

        Args:
            params: The "arguments" object of the tools/call request

        Returns:
            Any JSON-serializable value; it becomes the response "result".
        """
        ...

    def descriptor(self) -> dict[str, Any]:
        """This tool's entry in the tools/list catalog."""
        input_schema: dict[str, Any] = {"type": "object", "properties": self.parameters}
        if self.required:
            input_schema["required"] = list(self.required)
        return {"name": self.name, "description": self.description, "inputSchema": input_schema}


class StdioToolServer:
    """
    Line-oriented JSON-RPC server over stdin/stdout.

    Methods:
        initialize                 serverInfo + capabilities
        notifications/initialized  marks the session ready (no reply)
        tools/list                 {"tools": [descriptor, ...]}
        tools/call                 runs a registered ToolHandler
        ping                       liveness check
        shutdown                   replies null, keeps reading
        exit                       ends the read loop

    Messages without an id are notifications and never get a reply,
    not even an error.
    """

    def __init__(
        self,
        server_info: dict[str, Any] | None = None,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ):
        self.server_info = server_info or {"name": "tool-server", "version": "0.1.0"}
        self.tools: dict[str, ToolHandler] = {}
        self.initialized = False
        self._stdin = stdin
        self._stdout = stdout
        self._running = False
        self._methods: dict[str, Callable[[dict], Any]] = {
            "initialize": self._initialize,
            "notifications/initialized": self._initialized,
            "ping": self._ping,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "shutdown": self._shutdown,
            "exit": self._exit,
        }

    def register(self, handler: ToolHandler) -> None:
        if not handler.name:
            raise ValueError(f"{handler.__class__.__name__} must set a tool name")
        self.tools[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def run(self) -> None:
        """Serve until stdin closes or an exit notification arrives."""
        logger.info(f"{self.server_info.get('name')} serving {len(self.tools)} tools: {sorted(self.tools)}")
        self._running = True
        for raw in self._stdin or sys.stdin:
            if raw.strip():
                self.handle_line(raw.strip())
            if not self._running:
                break
        logger.info(f"{self.server_info.get('name')} stopped")

    def handle_line(self, line: str) -> None:
        """Dispatch one message and write its reply, if it gets one."""
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            self._write_error(None, PARSE_ERROR, f"Parse error: {e}")
            return
        if not isinstance(message, dict):
            self._write_error(None, INVALID_REQUEST, "Invalid request")
            return

        expects_reply = "id" in message
        method = message.get("method", "")
        handler = self._methods.get(method)
        try:
            if handler is None:
                raise ValueError(f"Unknown method: '{method}'")
            result = handler(message.get("params") or {})
        except Exception as e:
            if expects_reply:
                self._write_error(message.get("id"), INTERNAL_ERROR, str(e))
            else:
                logger.warning(f"Notification {method} failed: {e}")
            return

        if expects_reply:
            self._write_result(message.get("id"), result)

    # ── Methods ────────────────────────────────────────────

    def _initialize(self, params: dict) -> dict:
        client = params.get("clientInfo") or {}
        logger.info(f"initialize from {client.get('name', 'unknown client')}")
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": self.server_info,
        }

    def _initialized(self, params: dict) -> None:
        self.initialized = True

    def _ping(self, params: dict) -> dict:
        return {"status": "ok", "tools": list(self.tools)}

    def _tools_list(self, params: dict) -> dict:
        return {"tools": [tool.descriptor() for tool in self.tools.values()]}

    def _tools_call(self, params: dict) -> Any:
        name = params.get("name", "")
        tool = self.tools.get(name)
        if tool is None:
            raise ValueError(f"Unknown tool: '{name}'. Available: {list(self.tools)}")
        return tool.handle(params.get("arguments") or {})

    def _shutdown(self, params: dict) -> None:
        logger.info("shutdown requested")

    def _exit(self, params: dict) -> None:
        self._running = False

    # ── Output ─────────────────────────────────────────────

    def _send(self, message: dict) -> None:
        out = self._stdout or sys.stdout
        out.write(json.dumps(message) + "\n")
        out.flush()

    def _write_result(self, request_id: Any, result: Any) -> None:
        self._send({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        self._send({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})
