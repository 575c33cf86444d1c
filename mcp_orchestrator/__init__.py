"""
MCP Orchestrator — one client, many downstream tool servers.

Architecture:
    ┌──────────────┐          ┌──────────────┐   stdio    ┌──────────────┐
    │  Controlling │  calls   │  ServerPool  │ ─────────▶ │  Tool Server  │
    │    client    │ ───────▶ │ (lazy, single│  JSON-RPC  │  (subprocess) │
    │              │ ◀─TOON── │   -flight)   │ ─────────▶ │  Tool Server  │
    └──────────────┘          └──────────────┘    HTTP    │   (remote)    │
                                                          └──────────────┘

Each downstream server is reached through a Connection that runs the
initialize → initialized → tools/list handshake and correlates responses
by id. The ServerPool starts non-lazy servers at boot and lazy ones on
first demand, never runs two handshakes for one server at once, and
refuses to connect to another copy of itself.

Results can be compressed with the TOON codec (codec.encode/decode).

The LangChain bridge is imported lazily so the core runs without it.
"""

from mcp_orchestrator.codec import ToonDecodeError, decode, encode
from mcp_orchestrator.config import (
    OrchestratorConfig,
    ServerDescriptor,
    Timeouts,
    TransportKind,
    load_config,
)
from mcp_orchestrator.connection import Connection, ToolDescriptor
from mcp_orchestrator.errors import (
    AlreadyAtRetryLimit,
    CallError,
    CallTimeout,
    ConfigError,
    ConnectionFailure,
    HandshakeFailure,
    HandshakeTimeout,
    OrchestratorError,
    SelfReferenceDetected,
    ServerNotFound,
    SpawnFailure,
    ToolCallFailure,
    ToolNotFound,
    ToolsListFailure,
    TransportFailure,
)
from mcp_orchestrator.manager import ServerPool, ServerState, ServerStatus
from mcp_orchestrator.shutdown import ShutdownCoordinator


# Bridge requires langchain: imported lazily
def mcp_to_langchain_tool(*args, **kwargs):
    from mcp_orchestrator.bridge import mcp_to_langchain_tool as _impl
    return _impl(*args, **kwargs)


def langchain_tools(*args, **kwargs):
    from mcp_orchestrator.bridge import langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "AlreadyAtRetryLimit",
    "CallError",
    "CallTimeout",
    "ConfigError",
    "Connection",
    "ConnectionFailure",
    "HandshakeFailure",
    "HandshakeTimeout",
    "OrchestratorConfig",
    "OrchestratorError",
    "SelfReferenceDetected",
    "ServerDescriptor",
    "ServerNotFound",
    "ServerPool",
    "ServerState",
    "ServerStatus",
    "ShutdownCoordinator",
    "SpawnFailure",
    "Timeouts",
    "ToolCallFailure",
    "ToolDescriptor",
    "ToolNotFound",
    "ToolsListFailure",
    "ToonDecodeError",
    "TransportFailure",
    "TransportKind",
    "decode",
    "encode",
    "langchain_tools",
    "load_config",
    "mcp_to_langchain_tool",
]
