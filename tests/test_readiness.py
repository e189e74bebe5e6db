import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from conftest import ForbiddenSession
from lilroot.modules.errors import ProcessStartupError, ReadinessTimeout
from lilroot.modules.readiness import ReadinessPoller


def _serve(status: int):
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            self.send_response(status)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, *args):
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


@pytest.fixture
def http_server():
    servers = []

    def _start(status):
        server = _serve(status)
        servers.append(server)
        return server.server_address[1]

    yield _start
    for server in servers:
        server.shutdown()
        server.server_close()


def _closed_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.mark.parametrize("status", [200, 302, 401, 404])
def test_any_non_server_error_counts_as_ready(http_server, status):
    port = http_server(status)
    assert ReadinessPoller(interval=0.05).wait_until_ready(port, timeout=5) == "http"


def test_server_error_is_not_ready(http_server):
    port = http_server(503)
    poller = ReadinessPoller(interval=0.05)
    ok, err = poller.probe(port)
    assert not ok and err == "HTTP 503"
    with pytest.raises(ReadinessTimeout):
        poller.wait_until_ready(port, timeout=0.3)


def test_closed_port_times_out_with_last_error():
    poller = ReadinessPoller(interval=0.05, probe_timeout=0.5)
    with pytest.raises(ReadinessTimeout) as excinfo:
        poller.wait_until_ready(_closed_port(), timeout=0.3, role="gateway")
    assert excinfo.value.last_error
    assert excinfo.value.role == "gateway"


def test_dead_process_fails_fast():
    poller = ReadinessPoller(interval=0.05, session=ForbiddenSession())
    with pytest.raises(ProcessStartupError) as excinfo:
        poller.wait_until_ready(_closed_port(), timeout=30, alive=lambda: False, role="ui")
    assert type(excinfo.value) is ProcessStartupError
    assert excinfo.value.role == "ui"


def test_ready_hint_short_circuits_polling():
    hint = threading.Event()
    hint.set()
    poller = ReadinessPoller(interval=0.05, session=ForbiddenSession())
    assert poller.wait_until_ready(_closed_port(), timeout=30, ready_hint=hint) == "hint"


def test_hint_arriving_later_wakes_the_wait():
    hint = threading.Event()
    threading.Timer(0.2, hint.set).start()
    poller = ReadinessPoller(interval=5, probe_timeout=0.5)
    assert poller.wait_until_ready(_closed_port(), timeout=10, ready_hint=hint) == "hint"
