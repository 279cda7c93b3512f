"""
=============================================================================
PEER CONNECTION
=============================================================================

Wraps one accepted client socket together with the peer's address.

=============================================================================
OWNERSHIP
=============================================================================

A PeerConnection has exactly ONE owner at a time:

    accept() ──► AcceptLoop ──dispatch──► ConnectionWorker ──► close()
                     │
                     └── lets go immediately after dispatch

    PROCESS MODE:  fork() duplicates the file descriptor. The parent
                   closes ITS copy right away; the child's copy is the
                   one that talks to the peer.

    THREAD MODE:   There is only one socket object. The loop simply drops
                   its reference and never touches it again.

=============================================================================
PEER ADDRESSES
=============================================================================

accept() returns the peer address in the listener's family:

    IPv4:  ('192.0.2.11', 51000)
    IPv6:  ('2001:db8::1', 51000, 0, 0)
    IPv6 socket, IPv4 peer (dual-stack):
           ('::ffff:192.0.2.11', 51000, 0, 0)

The first element is already the textual host, so there is no inet_ntop()
step in Python.

=============================================================================
"""

import socket
import time
import uuid
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection lifecycle states."""
    NEW = "new"              # Accepted, owned by the loop
    READING = "reading"      # Worker is inside recv()
    HANDLING = "handling"    # Payload handler is running
    CLOSED = "closed"        # Socket released


def format_peer_host(address) -> str:
    """
    Textual host of a peer address, for either IP version.

    Args:
        address: Address as returned by socket.accept().

    Returns:
        The host part, e.g. "192.0.2.11" or "2001:db8::1".
    """
    if isinstance(address, tuple) and address:
        return str(address[0])
    return str(address) or "unknown"


def format_peer_address(address) -> str:
    """Host and port, bracketing IPv6 hosts: "[::1]:51000"."""
    host = format_peer_host(address)
    if not isinstance(address, tuple) or len(address) < 2:
        return host
    if ":" in host:
        return f"[{host}]:{address[1]}"
    return f"{host}:{address[1]}"


@dataclass
class PeerConnection:
    """
    One accepted client connection.

    Attributes:
        socket: The connected client socket.
        address: Peer address as returned by accept().
        id: Short identifier used to prefix log lines.
        state: Current lifecycle state.
        created_at: Timestamp when the connection was accepted.
    """

    socket: socket.socket
    address: tuple

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    created_at: float = field(default_factory=time.time)

    @property
    def peer_host(self) -> str:
        """Peer host as text (what "got connection from" logs)."""
        return format_peer_host(self.address)

    @property
    def peer_label(self) -> str:
        return format_peer_address(self.address)

    @property
    def closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    def set_timeout(self, timeout: Optional[float]) -> None:
        """
        Set the read timeout. None = block indefinitely.

        Sockets accepted from a listener with a timeout can inherit it on
        some platforms, so this is always called explicitly.
        """
        self.socket.settimeout(timeout)

    def receive(self, max_bytes: int) -> bytes:
        """
        ONE recv() of at most max_bytes.

        Returns:
            The bytes received. b"" means the peer closed the connection.

        Raises:
            OSError: The read failed (reset, timeout, ...).
        """
        self.state = ConnectionState.READING
        return self.socket.recv(max_bytes)

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        try:
            self.socket.close()
        except OSError:
            pass  # Already closed

    def __enter__(self) -> "PeerConnection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
