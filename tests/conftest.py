"""
pytest configuration and fixtures.
"""

import os
import socket
import threading
import time
from typing import Generator, List, Tuple
import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from tcplistener import ListenerServer, ListenerConfig


requires_fork = pytest.mark.skipif(not hasattr(os, "fork"), reason="needs os.fork()")


class RecordingHandler:
    """Payload handler that keeps every (peer, data) pair it receives."""

    def __init__(self):
        self.payloads: List[Tuple[str, bytes]] = []
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    def __call__(self, peer: str, data: bytes) -> None:
        with self._changed:
            self.payloads.append((peer, data))
            self._changed.notify_all()

    @property
    def data(self) -> List[bytes]:
        with self._lock:
            return [data for _, data in self.payloads]

    def wait_for(self, count: int, timeout: float = 5.0) -> bool:
        with self._changed:
            return self._changed.wait_for(lambda: len(self.payloads) >= count, timeout)


@pytest.fixture
def config() -> ListenerConfig:
    """Loopback-only test configuration on an ephemeral port."""
    return ListenerConfig(
        host="127.0.0.1",
        port="0",  # Let OS pick a free port
        worker_mode="thread",
        poll_interval=0.1,
        log_level="WARNING",
    )


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.fixture
def busy_port() -> Generator[int, None, None]:
    """A port held by a live listener for the duration of the test."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        s.listen(1)
        yield s.getsockname()[1]


def send_payload(port: int, payload: bytes, host: str = "127.0.0.1") -> None:
    """Connect, send payload, close."""
    with socket.create_connection((host, port), timeout=5.0) as s:
        if payload:
            s.sendall(payload)


class TestServer:
    """Test server helper that runs the accept loop in a background thread."""

    __test__ = False  # Not a test class, despite the name

    def __init__(self, server: ListenerServer):
        self.server = server
        self._thread: threading.Thread = None

    @property
    def port(self) -> int:
        return self.server.port

    def start(self):
        """Bind in this thread, serve in a background thread."""
        self.server.start()
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self._thread.start()

        if not self.server.wait_until_ready(timeout=5.0):
            raise RuntimeError("Server failed to start")

    def stop(self):
        """Stop the server and wait for its workers."""
        self.server.stop(timeout=5.0)

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def test_server(config: ListenerConfig, recorder: RecordingHandler) -> Generator[TestServer, None, None]:
    """A thread-mode listener recording every payload."""
    test_srv = TestServer(ListenerServer(config, payload_handler=recorder))
    test_srv.start()

    yield test_srv

    test_srv.stop()


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it's true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
