"""Shared fixtures: fake downstream servers and pools that clean up after themselves."""

import sys
from pathlib import Path

import pytest

from mcp_orchestrator.config import OrchestratorConfig, ServerDescriptor, Timeouts
from mcp_orchestrator.manager import ServerPool

FAKE_SERVER = str(Path(__file__).parent / "fake_server.py")

FAST_TIMEOUTS = Timeouts(
    handshake=5.0,
    tools_list=5.0,
    tool_call=5.0,
    http_request=5.0,
    shutdown_grace=0.2,
    force_kill=0.5,
)


@pytest.fixture
def fast_timeouts():
    return FAST_TIMEOUTS


@pytest.fixture
def fake_server():
    """Factory: descriptor for a fake server process, e.g. fake_server("alpha", "--init-delay", "0.5")."""

    def _make(name, *flags, **kwargs):
        return ServerDescriptor.subprocess(
            name, sys.executable, [FAKE_SERVER, "--name", name, *flags], **kwargs
        )

    return _make


@pytest.fixture
def read_log():
    """Read a fake server's --log file as a list of lines."""

    def _read(path):
        path = Path(path)
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()

    return _read


@pytest.fixture
def make_pool():
    """Factory for ServerPools over the given descriptors; every pool is shut down at teardown."""
    pools = []

    def _make(*descriptors, timeouts=FAST_TIMEOUTS, **kwargs):
        config = OrchestratorConfig(
            servers={d.name: d for d in descriptors},
            timeouts=timeouts,
            **kwargs,
        )
        pool = ServerPool(config)
        pools.append(pool)
        return pool

    yield _make

    for pool in pools:
        pool.shutdown()
