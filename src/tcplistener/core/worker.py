"""
=============================================================================
CONNECTION WORKER
=============================================================================

The code that runs inside an isolated worker for one connection.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      ConnectionWorker.run()                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   1. recv(max_payload)      ONE read, no loop, short reads are fine  │
    │          │                                                           │
    │          ├── OSError → log it, carry on with b""                     │
    │          │                                                           │
    │   2. payload_handler(peer, data)                                     │
    │          │                                                           │
    │   3. close()                                                         │
    │          │                                                           │
    │   4. return → worker terminates (process exits / thread ends)       │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

A peer that connects and closes without sending anything produces an
empty payload. That is a normal completion, not an error.

=============================================================================
"""

import logging
from typing import Callable, Optional

from ..config import DEFAULT_MAX_PAYLOAD
from .connection import ConnectionState, PeerConnection


logger = logging.getLogger(__name__)


# (peer host, raw bytes) -> None
PayloadHandler = Callable[[str, bytes], None]


def decode_payload(data: bytes) -> str:
    """
    Turn a received byte sequence into text.

    Bytes that aren't valid UTF-8 are replaced rather than rejected.
    """
    return data.decode("utf-8", errors="replace")


def print_payload(peer: str, data: bytes) -> None:
    """Default payload handler: write the payload to standard output."""
    print(f"client: received '{decode_payload(data)}'", flush=True)


class ConnectionWorker:
    """
    Reads one bounded payload from a connection and hands it off.

    Usage:
        worker = ConnectionWorker(conn, print_payload, max_payload=49)
        received = worker.run()   # closes conn before returning
    """

    def __init__(
        self,
        conn: PeerConnection,
        payload_handler: PayloadHandler = print_payload,
        max_payload: int = DEFAULT_MAX_PAYLOAD,
        read_timeout: Optional[float] = None,
    ):
        self.conn = conn
        self.payload_handler = payload_handler
        self.max_payload = max_payload
        self.read_timeout = read_timeout

    def run(self) -> int:
        """
        Run the read-and-handle cycle.

        Returns:
            Number of payload bytes handed to the payload handler.

        Raises:
            Whatever the payload handler raises. The connection is closed
            either way.
        """
        with self.conn:
            data = self._read()

            self.conn.state = ConnectionState.HANDLING
            self.payload_handler(self.conn.peer_host, data)

        logger.debug(f"[{self.conn.id}] Worker done ({len(data)} bytes)")
        return len(data)

    def _read(self) -> bytes:
        try:
            self.conn.set_timeout(self.read_timeout)
            data = self.conn.receive(self.max_payload)
        except OSError as e:
            logger.error(f"[{self.conn.id}] recv failed to read bytes from {self.conn.peer_label}: {e}")
            return b""

        if len(data) == self.max_payload:
            # Anything still in flight past the cap is dropped with the socket
            logger.debug(f"[{self.conn.id}] Read cap of {self.max_payload} bytes reached, payload may be truncated")
        return data
