"""Tests for draining live servers on shutdown."""

import signal
import subprocess
import sys
import textwrap
import time
from pathlib import Path

from mcp_orchestrator.config import Timeouts
from mcp_orchestrator.manager import ServerState
from mcp_orchestrator.shutdown import ShutdownCoordinator

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
FAKE_SERVER = str(Path(__file__).parent / "fake_server.py")


class TestDrain:
    """Test shutdown → grace → exit → kill against real subprocesses."""

    def test_shutdown_and_exit_sent_to_every_server(self, make_pool, fake_server, tmp_path, read_log):
        logs = {name: tmp_path / f"{name}.log" for name in ("one", "two")}
        pool = make_pool(*(fake_server(name, "--log", str(log)) for name, log in logs.items()))
        processes = [pool.ensure_loaded(name).transport.process for name in logs]

        pool.shutdown()

        for process in processes:
            assert process.poll() is not None
        for log in logs.values():
            lines = read_log(log)
            assert "shutdown" in lines
            assert "exit" in lines
            assert lines.index("shutdown") < lines.index("exit")
        assert all(s.state is ServerState.UNLOADED for s in pool.list_servers().values())

    def test_stubborn_server_is_killed(self, make_pool, fake_server):
        timeouts = Timeouts(shutdown_grace=0.2, force_kill=0.3)
        pool = make_pool(fake_server("stubborn", "--ignore-exit"), timeouts=timeouts)
        process = pool.ensure_loaded("stubborn").transport.process

        start = time.monotonic()
        pool.shutdown()
        elapsed = time.monotonic() - start

        assert process.poll() is not None
        assert process.returncode == -signal.SIGKILL
        assert elapsed < 5

    def test_drains_run_concurrently(self, make_pool, fake_server):
        timeouts = Timeouts(shutdown_grace=0.3, force_kill=0.5)
        names = ["s1", "s2", "s3"]
        pool = make_pool(*(fake_server(n, "--ignore-exit") for n in names), timeouts=timeouts)
        for name in names:
            pool.ensure_loaded(name)

        start = time.monotonic()
        pool.shutdown()
        elapsed = time.monotonic() - start

        # sequential drains would need at least 3 * 0.8s
        assert elapsed < 2.0

    def test_shutdown_is_idempotent(self, make_pool, fake_server):
        pool = make_pool(fake_server("alpha"))
        pool.ensure_loaded("alpha")

        pool.shutdown()
        pool.shutdown()

        assert pool.live_connections() == []

    def test_shutdown_with_nothing_loaded(self, make_pool, fake_server):
        pool = make_pool(fake_server("later", lazy=True))

        pool.shutdown()

        assert pool.live_connections() == []


class TestSignalHandlers:
    def test_handlers_installed(self, make_pool):
        pool = make_pool()
        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            assert isinstance(pool.coordinator, ShutdownCoordinator)
            pool.coordinator.install_signal_handlers()

            assert signal.getsignal(signal.SIGINT) is not previous[signal.SIGINT]
            assert callable(signal.getsignal(signal.SIGTERM))
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)


# Runs a pool in its own interpreter and sends it SIGINT 0.3s in, while the
# main thread is doing whatever `mode` says.
SIGNAL_SCRIPT = textwrap.dedent("""
    import os, signal, sys, threading, time

    root, fake_server, log, mode = sys.argv[1:5]
    sys.path.insert(0, root)

    from mcp_orchestrator.config import OrchestratorConfig, ServerDescriptor, Timeouts
    from mcp_orchestrator.manager import ServerPool

    flags = ["--name", "stubborn", "--log", log]
    flags += ["--init-delay", "3"] if mode == "loading" else ["--ignore-exit"]
    descriptor = ServerDescriptor.subprocess("stubborn", sys.executable, [fake_server, *flags])
    pool = ServerPool(OrchestratorConfig(
        servers={"stubborn": descriptor},
        timeouts=Timeouts(handshake=10.0, shutdown_grace=0.5, force_kill=1.0),
    ))
    if mode != "loading":
        pool.ensure_loaded("stubborn")
    pool.coordinator.install_signal_handlers()
    threading.Timer(0.3, os.kill, (os.getpid(), signal.SIGINT)).start()

    if mode == "draining":
        pool.shutdown()
    elif mode == "loading":
        pool.ensure_loaded("stubborn")
    elif mode == "locked":
        with pool._lock:
            time.sleep(10)
    else:
        time.sleep(10)
    sys.exit(3)
""")


def _run_with_sigint(mode, log):
    start = time.monotonic()
    completed = subprocess.run(
        [sys.executable, "-c", SIGNAL_SCRIPT, PROJECT_ROOT, FAKE_SERVER, str(log), mode],
        capture_output=True,
        text=True,
        timeout=20,
    )
    return completed, time.monotonic() - start


class TestSignalShutdown:
    """Test SIGINT handling in a separate interpreter."""

    def test_signal_while_idle_drains_before_exit(self, tmp_path, read_log):
        log = tmp_path / "stubborn.log"

        completed, elapsed = _run_with_sigint("idle", log)

        assert completed.returncode == 0, completed.stderr
        assert elapsed < 8
        lines = read_log(log)
        assert lines.index("shutdown") < lines.index("exit")

    def test_second_signal_during_drain_does_not_hang(self, tmp_path, read_log):
        """SIGINT landing inside pool.shutdown() exits once the running drain finishes."""
        log = tmp_path / "stubborn.log"

        completed, elapsed = _run_with_sigint("draining", log)

        assert completed.returncode == 0, completed.stderr
        assert elapsed < 8
        lines = read_log(log)
        assert "shutdown" in lines
        assert "exit" in lines

    def test_signal_while_pool_lock_is_held(self, tmp_path, read_log):
        """The drain waits for the interrupted frame to release the pool lock."""
        log = tmp_path / "stubborn.log"

        completed, elapsed = _run_with_sigint("locked", log)

        assert completed.returncode == 0, completed.stderr
        assert elapsed < 8
        assert "exit" in read_log(log)

    def test_signal_during_load(self, tmp_path, read_log):
        log = tmp_path / "stubborn.log"

        completed, elapsed = _run_with_sigint("loading", log)

        assert completed.returncode == 0, completed.stderr
        assert elapsed < 8
        lines = read_log(log)
        assert "initialize" in lines
        assert "tools/list" not in lines
