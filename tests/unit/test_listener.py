"""
Unit tests for the listening socket factory.
"""

import logging
import socket

import pytest

from tcplistener.core.listener import ListenerFactory, ListeningSocket
from tcplistener.core.resolver import BindCandidate, resolve_bind_candidates
from tcplistener.errors import BindError, ConfigurationError, ListenError


LISTENER_LOGGER = "tcplistener.core.listener"


def loopback(port: int) -> BindCandidate:
    return BindCandidate(socket.AF_INET, socket.SOCK_STREAM, 0, ("127.0.0.1", port))


class RecordingSocketFactory:
    """socket.socket replacement that remembers every socket it made."""

    def __init__(self):
        self.created = []

    def __call__(self, family, type_, proto):
        sock = socket.socket(family, type_, proto)
        self.created.append(sock)
        return sock


class FakeSocket:
    """Socket double whose individual calls can be made to fail."""

    def __init__(self, fail_setsockopt=False, fail_listen=False):
        self.fail_setsockopt = fail_setsockopt
        self.fail_listen = fail_listen
        self.closed = False
        self.bound_to = None

    def setsockopt(self, level, option, value):
        if self.fail_setsockopt:
            raise OSError("Protocol not available")

    def bind(self, address):
        self.bound_to = address

    def listen(self, backlog):
        if self.fail_listen:
            raise OSError("Operation not supported")

    def close(self):
        self.closed = True


class TestListenerFactory:
    """Tests for ListenerFactory.create()."""

    def test_binds_and_listens(self):
        """A single good candidate becomes the listening socket."""
        with ListenerFactory(backlog=10).create([loopback(0)]) as listener:
            assert isinstance(listener, ListeningSocket)
            assert listener.family == socket.AF_INET
            assert listener.port > 0
            assert listener.backlog == 10

            # It really is listening
            with socket.create_connection(("127.0.0.1", listener.port), timeout=2.0):
                client, _ = listener.accept()
                client.close()

        assert listener.closed

    def test_sets_reuseaddr(self):
        with ListenerFactory().create([loopback(0)]) as listener:
            assert listener.socket.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR) != 0

    def test_first_fails_second_succeeds(self, busy_port, caplog):
        """A failing first candidate is logged once; the second is used."""
        caplog.set_level(logging.WARNING, logger=LISTENER_LOGGER)

        with ListenerFactory().create([loopback(busy_port), loopback(0)]) as listener:
            assert listener.candidate == loopback(0)
            assert listener.port != busy_port

        warnings = [r for r in caplog.records if r.name == LISTENER_LOGGER and r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "bind" in warnings[0].getMessage()

    def test_all_candidates_fail(self, busy_port):
        """BindError, and every socket that was opened has been closed."""
        factory_sockets = RecordingSocketFactory()
        factory = ListenerFactory(socket_factory=factory_sockets)

        with pytest.raises(BindError) as exc_info:
            factory.create([loopback(busy_port), loopback(busy_port)])

        assert exc_info.value.attempts == 2
        assert len(factory_sockets.created) == 2
        assert all(s.fileno() == -1 for s in factory_sockets.created)

    def test_empty_candidates(self):
        with pytest.raises(BindError):
            ListenerFactory().create([])

    def test_socket_creation_failure_is_skipped(self, caplog):
        """socket() failing for one family moves on to the next."""
        caplog.set_level(logging.WARNING, logger=LISTENER_LOGGER)
        real = RecordingSocketFactory()

        def flaky_factory(family, type_, proto):
            if family == socket.AF_INET6:
                raise OSError("Address family not supported by protocol")
            return real(family, type_, proto)

        v6 = BindCandidate(socket.AF_INET6, socket.SOCK_STREAM, 0, ("::1", 0, 0, 0))

        with ListenerFactory(socket_factory=flaky_factory).create([v6, loopback(0)]) as listener:
            assert listener.family == socket.AF_INET

        messages = [r.getMessage() for r in caplog.records if r.name == LISTENER_LOGGER]
        assert len(messages) == 1
        assert "socket" in messages[0]

    def test_reuseaddr_failure_is_fatal(self):
        """SO_REUSEADDR failing stops immediately, even with candidates left."""
        fakes = []

        def factory(family, type_, proto):
            fake = FakeSocket(fail_setsockopt=True)
            fakes.append(fake)
            return fake

        with pytest.raises(ConfigurationError):
            ListenerFactory(socket_factory=factory).create([loopback(0), loopback(0)])

        assert len(fakes) == 1
        assert fakes[0].closed

    def test_listen_failure_is_fatal(self):
        fake = FakeSocket(fail_listen=True)

        with pytest.raises(ListenError):
            ListenerFactory(socket_factory=lambda *args: fake).create([loopback(0)])

        assert fake.bound_to == ("127.0.0.1", 0)
        assert fake.closed

    def test_resolved_wildcard(self, free_port):
        """The real resolver output can be bound end to end."""
        candidates = resolve_bind_candidates(str(free_port))

        with ListenerFactory().create(candidates) as listener:
            assert listener.port == free_port
            assert listener.candidate in candidates
