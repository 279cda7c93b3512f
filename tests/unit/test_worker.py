"""
Unit tests for PeerConnection and ConnectionWorker.
"""

import logging
import socket

import pytest

from tcplistener.config import DEFAULT_MAX_PAYLOAD, MAX_DATA_SIZE
from tcplistener.core.connection import (
    ConnectionState,
    PeerConnection,
    format_peer_address,
    format_peer_host,
)
from tcplistener.core.worker import ConnectionWorker, decode_payload, print_payload


PEER = ("192.0.2.11", 51000)


@pytest.fixture
def pair():
    """(server side, client side) of a connected socket pair."""
    server_side, client_side = socket.socketpair()
    yield server_side, client_side
    server_side.close()
    client_side.close()


class FailingSocket:
    """Socket double whose recv() fails like a reset connection."""

    def __init__(self):
        self.closed = False

    def settimeout(self, timeout):
        pass

    def recv(self, bufsize):
        raise ConnectionResetError(104, "Connection reset by peer")

    def close(self):
        self.closed = True


class TestPeerAddress:
    """Tests for peer address formatting."""

    def test_ipv4(self):
        assert format_peer_host(PEER) == "192.0.2.11"
        assert format_peer_address(PEER) == "192.0.2.11:51000"

    def test_ipv6(self):
        address = ("2001:db8:c9d2:aee5:73e3:934a:a5ae:9551", 51000, 0, 0)

        assert format_peer_host(address) == "2001:db8:c9d2:aee5:73e3:934a:a5ae:9551"
        assert format_peer_address(address) == "[2001:db8:c9d2:aee5:73e3:934a:a5ae:9551]:51000"

    def test_mapped_ipv4(self):
        assert format_peer_host(("::ffff:192.0.2.11", 51000, 0, 0)) == "::ffff:192.0.2.11"

    def test_unknown(self):
        assert format_peer_host("") == "unknown"


class TestPeerConnection:
    """Tests for the PeerConnection wrapper."""

    def test_close_is_idempotent(self, pair):
        conn = PeerConnection(socket=pair[0], address=PEER)

        conn.close()
        conn.close()

        assert conn.closed
        assert conn.state == ConnectionState.CLOSED
        assert pair[0].fileno() == -1

    def test_ids_are_unique(self, pair):
        a = PeerConnection(socket=pair[0], address=PEER)
        b = PeerConnection(socket=pair[1], address=PEER)

        assert a.id != b.id
        assert len(a.id) == 8


class TestConnectionWorker:
    """Tests for the read-and-handle cycle."""

    def test_reads_payload(self, pair, recorder):
        server_side, client_side = pair
        client_side.sendall(b"ping")

        received = ConnectionWorker(PeerConnection(server_side, PEER), recorder).run()

        assert received == 4
        assert recorder.payloads == [("192.0.2.11", b"ping")]

    def test_exactly_max_payload(self, pair, recorder):
        """49 bytes in one burst are delivered whole."""
        server_side, client_side = pair
        client_side.sendall(b"x" * DEFAULT_MAX_PAYLOAD)

        received = ConnectionWorker(PeerConnection(server_side, PEER), recorder).run()

        assert DEFAULT_MAX_PAYLOAD == MAX_DATA_SIZE - 1 == 49
        assert received == 49
        assert recorder.data == [b"x" * 49]

    def test_oversized_payload_is_truncated(self, pair, recorder, caplog):
        server_side, client_side = pair
        client_side.sendall(b"y" * 80)
        caplog.set_level(logging.DEBUG, logger="tcplistener.core.worker")

        ConnectionWorker(PeerConnection(server_side, PEER), recorder).run()

        assert recorder.data == [b"y" * 49]
        assert any("Read cap" in r.getMessage() for r in caplog.records)

    def test_single_read_only(self, pair, recorder):
        """A short first read is accepted; no loop fills the buffer."""
        server_side, client_side = pair
        client_side.sendall(b"abc")

        ConnectionWorker(PeerConnection(server_side, PEER), recorder, max_payload=10).run()

        assert recorder.data == [b"abc"]

    def test_zero_bytes_is_normal(self, pair, recorder, caplog):
        """A peer that closes immediately gives an empty payload, no error."""
        server_side, client_side = pair
        client_side.close()

        received = ConnectionWorker(PeerConnection(server_side, PEER), recorder).run()

        assert received == 0
        assert recorder.data == [b""]
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    def test_read_failure_is_logged_and_handled(self, recorder, caplog):
        """recv() failing still hands an empty payload on and closes."""
        fake = FailingSocket()
        conn = PeerConnection(socket=fake, address=PEER)

        received = ConnectionWorker(conn, recorder).run()

        assert received == 0
        assert recorder.data == [b""]
        assert fake.closed
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "recv failed" in errors[0].getMessage()

    def test_read_timeout(self, pair, recorder, caplog):
        """With a read timeout a silent peer only costs that long."""
        server_side, _client_side = pair

        received = ConnectionWorker(
            PeerConnection(server_side, PEER), recorder, read_timeout=0.05,
        ).run()

        assert received == 0
        assert recorder.data == [b""]
        assert any("recv failed" in r.getMessage() for r in caplog.records)

    def test_connection_closed_after_handler(self, pair):
        server_side, client_side = pair
        client_side.sendall(b"ping")
        seen_states = []
        conn = PeerConnection(server_side, PEER)

        ConnectionWorker(conn, lambda peer, data: seen_states.append(conn.state)).run()

        assert seen_states == [ConnectionState.HANDLING]
        assert conn.closed

    def test_handler_error_propagates_and_closes(self, pair):
        server_side, client_side = pair
        client_side.sendall(b"ping")
        conn = PeerConnection(server_side, PEER)

        def broken(peer, data):
            raise RuntimeError("handler blew up")

        with pytest.raises(RuntimeError):
            ConnectionWorker(conn, broken).run()

        assert conn.closed


class TestPayloadText:
    """Tests for payload decoding and the default handler."""

    def test_decode(self):
        assert decode_payload(b"ping") == "ping"
        assert decode_payload(b"") == ""

    def test_decode_invalid_utf8(self):
        assert decode_payload(b"ok\xff") == "ok�"

    def test_print_payload(self, capsys):
        print_payload("127.0.0.1", b"ping")

        assert capsys.readouterr().out == "client: received 'ping'\n"
