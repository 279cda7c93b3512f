"""
=============================================================================
LISTENING SOCKET FACTORY
=============================================================================

Takes the resolved bind candidates and produces exactly ONE listening
socket from the first candidate that works.

=============================================================================
SOCKET LIFECYCLE (Server Side)
=============================================================================

    1. socket()      Create a socket of the candidate's family
    2. setsockopt()  SO_REUSEADDR, so a restart doesn't hit TIME_WAIT
    3. bind()        Reserve the candidate's address
    4. listen()      Start queueing connections (backlog = queue size)

    candidates:  [ IPv4 0.0.0.0:3490 ] [ IPv6 [::]:3490 ]
                        │
                        ├── socket() fails? → log, try next
                        ├── bind() fails?   → close, log, try next
                        ├── setsockopt() fails? → FATAL (ConfigurationError)
                        │
                        └── all steps OK → stop, this is THE socket

Failing to create or bind one family is normal on hosts that only have
IPv4 (or only IPv6). Failing to set SO_REUSEADDR is not: it means the
socket layer itself is broken, so there is no point trying the next one.

=============================================================================
SO_REUSEADDR
=============================================================================

Without it you'd see "Address already in use" for ~60 seconds after
restarting the server, while old connections sit in TIME_WAIT.

    server stops
    server starts  # Error: Address already in use!

It does NOT allow two live listeners on the same port.

=============================================================================
"""

import socket
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

from ..config import DEFAULT_BACKLOG
from ..errors import BindError, ConfigurationError, ListenError
from .resolver import BindCandidate


logger = logging.getLogger(__name__)


SocketFactory = Callable[[int, int, int], socket.socket]


@dataclass
class ListeningSocket:
    """
    The bound, listening server socket.

    Owned by the accept loop. Workers never see it (process workers close
    their inherited copy first thing).

    Attributes:
        socket: The underlying socket object.
        candidate: The bind candidate that succeeded.
        backlog: Pending-connection queue size passed to listen().
    """

    socket: socket.socket
    candidate: BindCandidate
    backlog: int = DEFAULT_BACKLOG

    @property
    def family(self) -> socket.AddressFamily:
        return self.candidate.family

    @property
    def address(self) -> tuple:
        """Actual bound address (resolves port 0 to the ephemeral port)."""
        return self.socket.getsockname()

    @property
    def port(self) -> int:
        return self.address[1]

    @property
    def closed(self) -> bool:
        return self.socket.fileno() == -1

    def settimeout(self, timeout: Optional[float]) -> None:
        self.socket.settimeout(timeout)

    def accept(self) -> Tuple[socket.socket, tuple]:
        """Wait for the next connection (see socket.accept)."""
        return self.socket.accept()

    def close(self) -> None:
        try:
            self.socket.close()
        except OSError:
            pass  # Already closed

    def __enter__(self) -> "ListeningSocket":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __str__(self) -> str:
        host, port = self.address[:2]
        if self.family == socket.AF_INET6:
            return f"[{host}]:{port}"
        return f"{host}:{port}"


class ListenerFactory:
    """
    Creates the single listening socket from an ordered candidate list.

    Usage:
        candidates = resolve_bind_candidates("3490")
        listener = ListenerFactory(backlog=10).create(candidates)
        print(listener.port)
    """

    def __init__(
        self,
        backlog: int = DEFAULT_BACKLOG,
        socket_factory: SocketFactory = socket.socket,
    ):
        """
        Args:
            backlog: listen() queue size.
            socket_factory: Callable (family, type, proto) -> socket.
                            Replaceable for tests.
        """
        self.backlog = backlog
        self._socket_factory = socket_factory

    def create(self, candidates: Iterable[BindCandidate]) -> ListeningSocket:
        """
        Bind to the first usable candidate and start listening.

        Raises:
            ConfigurationError: SO_REUSEADDR could not be set.
            BindError: No candidate could be opened and bound.
            ListenError: listen() failed on the bound socket.
        """
        attempts = 0
        sock: Optional[socket.socket] = None

        for candidate in candidates:
            attempts += 1
            sock = self._bind(candidate)
            if sock is not None:
                break
        else:
            raise BindError(attempts)

        # ─────────────────────────────────────────────────────────────────
        # LISTEN
        # ─────────────────────────────────────────────────────────────────
        # Connections beyond the backlog are refused by the kernel, not by us.

        try:
            sock.listen(self.backlog)
        except OSError as e:
            sock.close()
            raise ListenError(f"listen: {e}") from e

        listener = ListeningSocket(socket=sock, candidate=candidate, backlog=self.backlog)
        logger.info(f"Listening on {listener} ({candidate.family_name}, backlog {self.backlog})")
        return listener

    def _bind(self, candidate: BindCandidate) -> Optional[socket.socket]:
        """
        Open, configure and bind one candidate.

        Returns:
            The bound socket, or None if this candidate should be skipped.
        """
        try:
            sock = self._socket_factory(candidate.family, candidate.type, candidate.proto)
        except OSError as e:
            logger.warning(f"server: socket ({candidate.family_name} {candidate}): {e}")
            return None

        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            sock.close()
            raise ConfigurationError(f"setsockopt SO_REUSEADDR: {e}") from e

        try:
            sock.bind(candidate.sockaddr)
        except OSError as e:
            sock.close()
            logger.warning(f"server: bind ({candidate.family_name} {candidate}): {e}")
            return None

        return sock
