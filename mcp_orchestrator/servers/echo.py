"""
Echo tool server — minimal reference implementation.

Use this as a template for building new tool servers.
It implements tools that echo back their input, useful for testing
the transport layer and the TOON codec.

Launch:
    python -m mcp_orchestrator.servers.echo

Test:
    echo '{"jsonrpc":"2.0","method":"ping","params":{},"id":1}' | python -m mcp_orchestrator.servers.echo
"""

import logging

from mcp_orchestrator.server import StdioToolServer, ToolHandler


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }
    required = ["message"]

    def handle(self, params: dict) -> dict:
        message = params.get("message", "")
        return {"echoed": message, "length": len(message)}


class RecordsTool(ToolHandler):
    name = "records"
    description = "Returns `count` uniform records. Handy for checking tabular compression."
    parameters = {
        "count": {"type": "integer", "description": "How many records to return"},
    }

    def handle(self, params: dict) -> dict:
        count = int(params.get("count", 3))
        return {
            "records": [
                {"id": i, "name": f"User{i}", "email": f"user{i}@example.com", "active": i % 2 == 0}
                for i in range(1, count + 1)
            ]
        }


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    server = StdioToolServer(server_info={"name": "echo", "version": "0.1.0"})
    server.register(EchoTool())
    server.register(RecordsTool())
    server.run()


if __name__ == "__main__":
    main()
