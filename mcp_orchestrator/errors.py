"""
Error taxonomy for the orchestrator.

Every error carries the server name, and the tool name where one applies,
so callers can tell "this server doesn't exist" from "this server is broken"
from "this specific call failed" without looking at internals.

    OrchestratorError (RuntimeError)
    ├── ServerNotFound (also LookupError)
    ├── AlreadyAtRetryLimit
    ├── ConnectionFailure            load-time failures
    │   ├── SpawnFailure
    │   ├── HandshakeFailure
    │   │   ├── HandshakeTimeout
    │   │   └── SelfReferenceDetected
    │   ├── ToolsListFailure
    │   └── TransportFailure
    └── ToolCallFailure              post-handshake failures
        ├── ToolNotFound (also LookupError)
        ├── CallTimeout
        └── CallError
"""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for every error raised by the orchestrator."""

    def __init__(
        self,
        message: str,
        server_name: str | None = None,
        tool_name: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.server_name = server_name
        self.tool_name = tool_name


class ServerNotFound(OrchestratorError, LookupError):
    """Unknown or disabled server name."""


class AlreadyAtRetryLimit(OrchestratorError):
    """The server failed too many times; no further attempts until reset."""

    def __init__(self, server_name: str, attempts: int):
        super().__init__(
            f'Server "{server_name}" failed to load earlier (attempts: {attempts}).',
            server_name=server_name,
        )
        self.attempts = attempts


class ConnectionFailure(OrchestratorError):
    """A connection could not be established."""


class SpawnFailure(ConnectionFailure):
    """The server process could not be started."""


class HandshakeFailure(ConnectionFailure):
    """The initialize exchange failed."""


class HandshakeTimeout(HandshakeFailure):
    """The server did not answer initialize in time."""


class SelfReferenceDetected(HandshakeFailure):
    """The downstream server is another instance of this orchestrator."""

    def __init__(self, server_name: str, server_info: dict | None = None):
        super().__init__(
            f'Self-referential server "{server_name}" detected via handshake',
            server_name=server_name,
        )
        self.server_info = server_info or {}


class ToolsListFailure(ConnectionFailure):
    """tools/list failed or returned something unusable."""


class TransportFailure(ConnectionFailure):
    """The channel itself broke: HTTP non-2xx, reset, or a dead process."""


class ToolCallFailure(OrchestratorError):
    """A tool call on a ready connection failed."""


class ToolNotFound(ToolCallFailure, LookupError):
    """The server's catalog has no tool by that name."""


class CallTimeout(ToolCallFailure):
    """No response with a matching id arrived within the call budget."""


class CallError(ToolCallFailure):
    """The server answered with an error field."""

    def __init__(
        self,
        message: str,
        server_name: str | None = None,
        tool_name: str | None = None,
        code: int | None = None,
        data=None,
    ):
        super().__init__(message, server_name=server_name, tool_name=tool_name)
        self.code = code
        self.data = data


class ConfigError(ValueError):
    """Invalid server configuration."""
