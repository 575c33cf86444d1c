"""
Scriptable downstream tool server for the test suite.

Built on StdioToolServer; command-line flags make it misbehave in the ways
the orchestrator has to cope with.

    python tests/fake_server.py --name alpha --log /tmp/alpha.log --init-delay 0.5

--log appends "<start>" once per process and then the method of every
message received, one per line.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from mcp_orchestrator.identity import DEFAULT_IDENTITY
from mcp_orchestrator.server import StdioToolServer, ToolHandler
from mcp_orchestrator.servers.echo import EchoTool, RecordsTool


class HangTool(ToolHandler):
    name = "hang"
    description = "Never answers."

    def handle(self, params: dict) -> dict:
        raise AssertionError("hang is answered by FakeServer.handle_line")


class BoomTool(ToolHandler):
    name = "boom"
    description = "Always fails."

    def handle(self, params: dict) -> dict:
        raise RuntimeError("boom")


class FakeServer(StdioToolServer):
    def __init__(self, options: argparse.Namespace, **kwargs):
        super().__init__(**kwargs)
        self.options = options

    def record(self, entry: str) -> None:
        if self.options.log:
            with open(self.options.log, "a", encoding="utf-8") as f:
                f.write(entry + "\n")

    def handle_line(self, line: str) -> None:
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            message = None
        if not isinstance(message, dict):
            super().handle_line(line)
            return

        method = message.get("method", "")
        self.record(method)

        if method == "initialize":
            if self.options.hang_initialize:
                return
            if self.options.init_delay:
                time.sleep(self.options.init_delay)
            if self.options.fail_initialize:
                self._write_error(message.get("id"), -32000, "initialize refused")
                return

        if method == "tools/call":
            tool = (message.get("params") or {}).get("name")
            if tool == self.options.die_on:
                os._exit(1)
            if tool == "hang":
                return

        if method == "exit" and self.options.ignore_exit:
            return

        super().handle_line(line)


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--name", default="fake")
    parser.add_argument("--log", default=None)
    parser.add_argument("--self", dest="is_self", action="store_true",
                        help="Report the orchestrator's own identity")
    parser.add_argument("--hang-initialize", action="store_true")
    parser.add_argument("--fail-initialize", action="store_true")
    parser.add_argument("--init-delay", type=float, default=0.0)
    parser.add_argument("--ignore-exit", action="store_true",
                        help="Ignore exit and stdin EOF; only a kill stops it")
    parser.add_argument("--die-on", default=None, metavar="TOOL",
                        help="Exit abruptly when TOOL is called")
    options = parser.parse_args()

    if options.is_self:
        server_info = DEFAULT_IDENTITY.client_info()
    else:
        server_info = {"name": options.name, "version": "0.0.1"}

    server = FakeServer(options, server_info=server_info)
    server.register(EchoTool())
    server.register(RecordsTool())
    server.register(HangTool())
    server.register(BoomTool())

    server.record("<start>")
    server.run()

    if options.ignore_exit:
        while True:
            time.sleep(60)


if __name__ == "__main__":
    main()
