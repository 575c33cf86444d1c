"""
Bridge between the server pool and LangChain.

Turns catalog entries of downstream servers into LangChain tools that an
agent can call. Each tool goes through ServerPool.call_encoded, so a lazy
server starts on first use and results come back as TOON text.

Usage:
    from mcp_orchestrator.bridge import mcp_to_langchain_tool, langchain_tools

    # Single tool
    lc_tool = mcp_to_langchain_tool(pool, "filesystem", "read_file")

    # All tools from all loaded servers
    tools = langchain_tools(pool)
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.tools import StructuredTool

from mcp_orchestrator.errors import OrchestratorError
from mcp_orchestrator.manager import ServerPool


def mcp_to_langchain_tool(
    pool: ServerPool,
    server_name: str,
    tool_name: str,
    description_override: str | None = None,
    toon: bool = True,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps a downstream tool call.

    The tool's inputSchema is handed to LangChain as-is; no validation
    happens on this side.

    Args:
        pool: The ServerPool managing the server
        server_name: Which server the tool lives on
        tool_name: The tool name (as listed by the server)
        description_override: Optional override for the tool description
        toon: Return TOON text (default) instead of JSON

    Returns:
        A LangChain StructuredTool that proxies calls to the server.
    """
    connection = pool.ensure_loaded(server_name)
    descriptor = connection.get_tool(tool_name)

    if descriptor:
        description = description_override or descriptor.description or tool_name
        schema = descriptor.input_schema or {"type": "object", "properties": {}}
    else:
        description = description_override or f"MCP tool: {server_name}/{tool_name}"
        schema = {"type": "object", "properties": {}}

    def _call_mcp(**kwargs: Any) -> str:
        """Proxy call to the downstream server."""
        try:
            if toon:
                return pool.call_encoded(server_name, tool_name, kwargs)
            result = pool.call(server_name, tool_name, kwargs)
            if isinstance(result, str):
                return result
            return json.dumps(result, indent=2)
        except OrchestratorError as e:
            return f"Error calling {server_name}/{tool_name}: {e}"

    return StructuredTool.from_function(
        func=_call_mcp,
        name=tool_id(server_name, tool_name),
        description=description,
        args_schema=schema,
    )


def langchain_tools(
    pool: ServerPool,
    server_names: list[str] | None = None,
    toon: bool = True,
) -> list[StructuredTool]:
    """
    Build LangChain tools for every tool of the given servers.

    Args:
        pool: The ServerPool
        server_names: Servers to include; default is every loaded server.
        toon: Passed through to mcp_to_langchain_tool.

    Returns:
        One StructuredTool per downstream tool.
    """
    names = server_names if server_names is not None else list(pool.loaded_servers())
    tools = []
    for server_name in names:
        for descriptor in pool.list_tools(server_name):
            tools.append(mcp_to_langchain_tool(pool, server_name, descriptor.name, toon=toon))
    return tools


def tool_id(server_name: str, tool_name: str) -> str:
    """LangChain-visible name for a downstream tool."""
    return f"{server_name}__{tool_name}" if server_name != tool_name else tool_name
