"""
Run Orchestrator — end-to-end: config → server pool → tool calls.

This is the script that closes the loop. It:
1. Loads the server config (or the built-in echo server)
2. Starts every non-lazy server in the background
3. Lists, searches, or calls tools on demand (lazy servers start on first use)
4. Prints results as TOON or JSON
5. Drains every server on exit or Ctrl+C

Usage:
    # Show servers and their tools
    python run_orchestrator.py --config mcp-servers.json --list

    # Start lazy servers too, then search their tools
    python run_orchestrator.py --config mcp-servers.json --hydrate --search read

    # Call a tool
    python run_orchestrator.py --call echo records --args '{"count": 3}'

    # Same, as JSON
    python run_orchestrator.py --call echo echo --args '{"message": "hi"}' --format json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT))

from mcp_orchestrator.codec import encode
from mcp_orchestrator.config import OrchestratorConfig, load_config
from mcp_orchestrator.errors import ConfigError, OrchestratorError
from mcp_orchestrator.manager import ServerPool, ServerState

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


# ============================================================
# BUILT-IN SERVER DEFINITIONS
# ============================================================
# Used when no --config is given. Same shape as the "mcpServers"
# section of a config file.

DEFAULT_SERVERS = {
    "mcpServers": {
        "echo": {
            "command": sys.executable,
            "args": ["-m", "mcp_orchestrator.servers.echo"],
        },
    },
}


def build_pool(config_path: str | None) -> ServerPool:
    """Load the config and create a pool for it."""
    if config_path:
        config = load_config(config_path)
    else:
        config = OrchestratorConfig.from_dict(DEFAULT_SERVERS)
    return ServerPool(config)


def print_servers(pool: ServerPool) -> None:
    statuses = pool.list_servers()
    print(f"\nServers ({len(statuses)}):\n")
    for status in statuses.values():
        flags = []
        if status.lazy:
            flags.append("lazy")
        if status.disabled:
            flags.append("disabled")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"  {status.name:<25} {status.state.value:<9} {status.transport}{suffix}")
        if status.last_error:
            print(f"    error: {status.last_error}")

        connection = pool.get(status.name)
        if connection is not None:
            for tool in connection.tools:
                print(f"    - {tool.name:<30} {tool.description[:60]}")
    print()


def print_result(result, output_format: str) -> None:
    if output_format == "json":
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        print(encode(result))


def main():
    parser = argparse.ArgumentParser(
        description="Orchestrate downstream MCP tool servers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_orchestrator.py --list
  python run_orchestrator.py --config mcp-servers.json --hydrate 2 --search file
  python run_orchestrator.py --call echo records --args '{"count": 5}'
        """,
    )
    parser.add_argument("--config", "-c", type=str, default=None, help="Path to the server config JSON")
    parser.add_argument("--list", action="store_true", help="List servers and their tools")
    parser.add_argument("--hydrate", type=int, nargs="?", const=-1, default=None, metavar="N",
                        help="Start lazy servers too (all, or at most N)")
    parser.add_argument("--search", type=str, default=None, help="Search tool names and descriptions")
    parser.add_argument("--call", nargs=2, metavar=("SERVER", "TOOL"), help="Call a tool")
    parser.add_argument("--args", type=str, default="{}", help="Tool arguments as a JSON object")
    parser.add_argument("--format", choices=["toon", "json"], default="toon", help="Result format")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        tool_args = json.loads(args.args)
    except json.JSONDecodeError as e:
        parser.error(f"--args is not valid JSON: {e}")
    if not isinstance(tool_args, dict):
        parser.error("--args must be a JSON object")

    try:
        pool = build_pool(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(2)

    # Graceful shutdown on Ctrl+C / SIGTERM
    pool.coordinator.install_signal_handlers()

    exit_code = 0
    try:
        # ── Start servers ─────────────────────────────────────
        print("Starting MCP servers...")
        eager = pool.load_eager_servers()

        if args.hydrate is not None:
            limit = None if args.hydrate < 0 else args.hydrate
            errors = pool.hydrate(limit)
            failed = [name for name, err in errors.items() if err is not None]
            print(f"Hydrated {len(errors) - len(failed)} lazy server(s), {len(failed)} failed")

        # --list and --search want to see every eager server settled
        if args.list or args.search is not None:
            eager.result()

        if args.list:
            print_servers(pool)

        if args.search is not None:
            matches = pool.search_tools(args.search)
            print(f"\nMatches for {args.search!r} ({len(matches)}):\n")
            for server_name, tool in matches:
                print(f"  {server_name}/{tool.name:<30} {tool.description[:60]}")
            lazy = pool.lazy_servers()
            if lazy:
                print(f"\n  Not searched (lazy, not loaded): {', '.join(lazy)}")
            print()

        if args.call:
            server_name, tool_name = args.call
            try:
                result = pool.call(server_name, tool_name, tool_args)
            except OrchestratorError as e:
                print(f"Error: {e}")
                exit_code = 1
            else:
                print_result(result, args.format)

        if not (args.list or args.search is not None or args.call):
            eager.result()
            ready = sum(1 for s in pool.list_servers().values() if s.state is ServerState.READY)
            print(f"{ready} server(s) ready. Use --list, --search or --call.")
    finally:
        pool.shutdown()
        print("\nMCP servers stopped.")

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
