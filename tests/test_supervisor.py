"""
Process Supervisor Tests

Spawns real Python child processes to exercise the handle table, the output
drain, and the terminate-then-kill escalation.
"""

import signal
import sys
import textwrap
import threading
import time

import pytest

from conftest import DummySession
from lilroot.modules.errors import ProcessStartupError
from lilroot.modules.readiness import ReadinessPoller
from lilroot.modules.sandbox import SandboxCommand
from lilroot.modules.supervisor import ProcessSupervisor, is_ready_line


def _py(code: str) -> SandboxCommand:
    return SandboxCommand(argv=[sys.executable, "-c", textwrap.dedent(code)], env={"PYTHONUNBUFFERED": "1"})


SLEEPER = _py("""
    import time
    print("server listening on 127.0.0.1", flush=True)
    time.sleep(60)
""")


@pytest.fixture
def supervisor():
    lines = []
    sup = ProcessSupervisor(log_sink=lines.append)
    sup.lines = lines
    yield sup
    sup.force_stop_all()


def test_start_returns_existing_live_handle(supervisor):
    first = supervisor.start("gateway", SLEEPER)
    second = supervisor.start("gateway", SLEEPER)

    assert second is first
    assert supervisor.roles() == ["gateway"]
    assert first.ready.wait(10)
    assert "[gateway] server listening on 127.0.0.1" in supervisor.lines


def test_stop_terminates_and_unregisters(supervisor):
    handle = supervisor.start("gateway", SLEEPER)
    assert supervisor.stop("gateway", grace=5) is True

    assert not handle.is_alive()
    assert supervisor.get("gateway") is None
    assert supervisor.stop("gateway") is False


def test_stop_escalates_to_kill_when_sigterm_is_ignored(supervisor):
    handle = supervisor.start("gateway", _py("""
        import signal, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        print("ready", flush=True)
        time.sleep(60)
    """))
    assert handle.ready.wait(10)

    started = time.monotonic()
    supervisor.stop("gateway", grace=0.5)
    elapsed = time.monotonic() - started

    assert not handle.is_alive()
    assert handle.returncode == -signal.SIGKILL
    assert elapsed < 10


def test_failure_detail_prefers_error_lines(supervisor):
    handle = supervisor.start("gateway", _py("""
        import sys
        print("booting")
        print("loading config")
        print("Error: listen EADDRINUSE 127.0.0.1:3000")
        sys.exit(3)
    """))
    handle.proc.wait(10)
    handle.join_output(5)

    detail = handle.failure_detail()
    assert "EADDRINUSE" in detail
    assert "booting" not in detail
    assert "exit code 3" in detail
    assert not handle.ready.is_set()
    assert any("EADDRINUSE" in line for line in supervisor.lines)


def test_restart_after_exit_spawns_new_process(supervisor):
    quick = _py("print('bye')")
    first = supervisor.start("ui", quick)
    first.proc.wait(10)
    second = supervisor.start("ui", quick)
    assert second is not first
    second.proc.wait(10)


def test_force_stop_all_kills_everything(supervisor):
    a = supervisor.start("gateway", SLEEPER)
    b = supervisor.start("ui", SLEEPER)
    supervisor.force_stop_all()
    assert not a.is_alive() and not b.is_alive()
    assert supervisor.roles() == []


def test_address_in_use_line_is_not_a_ready_signal(supervisor):
    handle = supervisor.start("gateway", _py("""
        import sys, time
        print("Error: listen EADDRINUSE: address already in use 127.0.0.1:3000", flush=True)
        time.sleep(0.5)
        sys.exit(1)
    """))
    poller = ReadinessPoller(interval=0.05, session=DummySession())

    with pytest.raises(ProcessStartupError):
        poller.wait_until_ready(3000, 10, ready_hint=handle.ready, alive=handle.is_alive, role="gateway")
    assert not handle.ready.is_set()


@pytest.mark.parametrize("line, expected", [
    ("Gateway ready", True),
    ("server listening on 127.0.0.1:3000", True),
    ("UI running at http://127.0.0.1:3001", True),
    ("address already in use", False),
    ("not ready yet: failed to bind", False),
])
def test_ready_line_detection(line, expected):
    assert is_ready_line(line) is expected


def test_force_stop_all_kills_handle_that_is_being_stopped(supervisor):
    handle = supervisor.start("gateway", _py("""
        import signal, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        print("ready", flush=True)
        time.sleep(60)
    """))
    assert handle.ready.wait(10)

    stopper = threading.Thread(target=supervisor.stop, args=("gateway", 5.0))
    stopper.start()
    time.sleep(0.3)

    started = time.monotonic()
    supervisor.force_stop_all()
    elapsed = time.monotonic() - started
    stopper.join(10)

    assert not handle.is_alive()
    assert elapsed < 2
    assert not stopper.is_alive()
