"""
Orchestrator configuration.

The config file is a JSON document read once at startup:

    {
      "mcpServers": {
        "filesystem": {"command": "npx", "args": ["-y", "server-fs"], "lazy": true},
        "search":     {"url": "http://localhost:8931/mcp"},
        "old-thing":  {"command": "old", "disabled": true}
      },
      "optimizations": {"projectRoot": "~/work"}
    }

Entries whose name starts with "_" are treated as comments and skipped.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from mcp_orchestrator.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_MAX_LOAD_ATTEMPTS = 3


class TransportKind(str, Enum):
    SUBPROCESS = "subprocess"
    HTTP = "http"


@dataclass(frozen=True)
class Timeouts:
    """Timeout budgets, in seconds."""
    handshake: float = 5.0          # initialize round trip
    tools_list: float = 120.0       # first runs of some servers download/compile
    tool_call: float = 60.0
    http_request: float = 30.0
    shutdown_grace: float = 0.5     # wait for exit after the shutdown request
    force_kill: float = 1.0         # wait after exit before killing


@dataclass(frozen=True)
class ServerDescriptor:
    """Static description of one downstream server. Immutable after load."""
    name: str
    transport: TransportKind
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    lazy: bool = False
    disabled: bool = False
    cwd: str | None = None

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "ServerDescriptor":
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid config for {name}: expected an object")

        command = data.get("command")
        url = data.get("url")
        if command:
            transport = TransportKind.SUBPROCESS
        elif url:
            transport = TransportKind.HTTP
        else:
            raise ConfigError(f"Invalid config for {name}: no command or url")

        args = data.get("args") or []
        if not isinstance(args, list):
            raise ConfigError(f"Invalid config for {name}: args must be a list")

        return cls(
            name=name,
            transport=transport,
            command=command,
            args=tuple(str(a) for a in args),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            url=url,
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            lazy=bool(data.get("lazy", False)),
            disabled=bool(data.get("disabled", False)),
            cwd=data.get("cwd"),
        )

    @classmethod
    def subprocess(cls, name: str, command: str, args: list[str] | None = None, **kwargs) -> "ServerDescriptor":
        return cls(
            name=name,
            transport=TransportKind.SUBPROCESS,
            command=command,
            args=tuple(args or ()),
            **kwargs,
        )

    @classmethod
    def http(cls, name: str, url: str, **kwargs) -> "ServerDescriptor":
        return cls(name=name, transport=TransportKind.HTTP, url=url, **kwargs)

    @property
    def is_subprocess(self) -> bool:
        return self.transport is TransportKind.SUBPROCESS

    def describe(self) -> str:
        if self.is_subprocess:
            return " ".join([self.command or "", *self.args]).strip()
        return self.url or ""


@dataclass
class OrchestratorConfig:
    servers: dict[str, ServerDescriptor] = field(default_factory=dict)
    timeouts: Timeouts = field(default_factory=Timeouts)
    max_load_attempts: int = DEFAULT_MAX_LOAD_ATTEMPTS
    project_root: str = field(default_factory=lambda: os.environ.get("PROJECT_ROOT") or os.getcwd())
    enable_toon: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorConfig":
        servers: dict[str, ServerDescriptor] = {}
        for name, entry in (data.get("mcpServers") or {}).items():
            if name.startswith("_"):
                continue
            servers[name] = ServerDescriptor.from_dict(name, entry)

        optimizations = data.get("optimizations") or {}
        project_root = (
            os.environ.get("PROJECT_ROOT")
            or optimizations.get("projectRoot")
            or os.getcwd()
        )

        timeouts = Timeouts(**{
            k: float(v) for k, v in (data.get("timeouts") or {}).items()
            if k in Timeouts.__dataclass_fields__
        })

        return cls(
            servers=servers,
            timeouts=timeouts,
            max_load_attempts=int(data.get("maxLoadAttempts", DEFAULT_MAX_LOAD_ATTEMPTS)),
            project_root=str(Path(project_root).expanduser()),
            enable_toon=bool(optimizations.get("enableTOON", True)),
        )

    def enabled_servers(self) -> list[ServerDescriptor]:
        return [s for s in self.servers.values() if not s.disabled]

    def disabled_servers(self) -> list[str]:
        return [name for name, s in self.servers.items() if s.disabled]


def load_config(path: str | os.PathLike) -> OrchestratorConfig:
    """
    Read the config file once.

    A missing or unreadable file is logged and yields an empty server map.
    Structurally invalid server entries raise ConfigError.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to load config from {path}, using defaults. Error: {e}")
        return OrchestratorConfig()

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")

    config = OrchestratorConfig.from_dict(data)
    logger.info(
        f"Loaded config from {path}: {len(config.servers)} servers "
        f"({len(config.disabled_servers())} disabled)"
    )
    return config
