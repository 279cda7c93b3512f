"""
=============================================================================
ACCEPT LOOP
=============================================================================

The server's main control loop. It has one state, "awaiting connection",
and keeps returning to it:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     Accept Loop Flow                                 │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   while running:                                                     │
    │       │                                                              │
    │       ├──► accept()                                                  │
    │       │       ├── timeout   → check running flag, loop               │
    │       │       ├── OSError   → log "accept: ...", loop                │
    │       │       └── (socket, peer address)                             │
    │       │                                                              │
    │       ├──► log "server: got connection from <host>"                  │
    │       │                                                              │
    │       └──► dispatcher.dispatch(conn)  ← does NOT wait for the worker │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Nothing that happens to a single connection ends the loop. Only a
shutdown request (SIGINT, SIGTERM, or shutdown() from another thread)
does.

=============================================================================
INTERRUPTIBLE accept()
=============================================================================

accept() on a blocking socket waits forever, which makes it impossible
to notice a shutdown request. The listener gets a timeout instead:

    while running:
        try:
            accept()   # blocks for poll_interval seconds at most
        except timeout:
            continue   # check running flag, loop again

Signals such as SIGCHLD also interrupt accept(); Python runs the handler
and retries the call transparently.

=============================================================================
"""

import socket
import signal
import threading
import logging
from typing import Optional

from .connection import PeerConnection
from .dispatcher import WorkerDispatcher, WorkerHandle
from .listener import ListeningSocket


logger = logging.getLogger(__name__)


class AcceptLoop:
    """
    Accepts connections and hands each one to the dispatcher.

    Usage:
        loop = AcceptLoop(listener, dispatcher)
        loop.run()            # blocks until shutdown()
    """

    def __init__(
        self,
        listener: ListeningSocket,
        dispatcher: WorkerDispatcher,
        poll_interval: float = 1.0,
    ):
        self.listener = listener
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval

        self._running = False
        self._ready = threading.Event()
        self._stopped = threading.Event()
        self._original_handlers: dict = {}

        self.accepted = 0
        self.accept_errors = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until the loop is waiting for connections."""
        return self._ready.wait(timeout)

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """Wait until run() has returned."""
        return self._stopped.wait(timeout)

    def run(self) -> None:
        """
        Run the accept loop. Blocks until shutdown() is called.

        The listener is closed when this returns.
        """
        self.listener.settimeout(self.poll_interval)
        self._running = True
        self._stopped.clear()
        self._setup_signals()

        logger.info("server: waiting for connections...")
        self._ready.set()

        try:
            while self._running:
                self.serve_once()
                self.dispatcher.reaper.log_reaped()
        finally:
            self._cleanup()

    def serve_once(self) -> Optional[WorkerHandle]:
        """
        One trip around the loop: accept, log, dispatch.

        Returns:
            The dispatched worker, or None if nothing was dispatched.
        """
        try:
            client_socket, client_address = self.listener.accept()
        except socket.timeout:
            return None
        except OSError as e:
            if self._running:
                self.accept_errors += 1
                logger.error(f"accept: {e}")
            return None

        self.accepted += 1
        conn = PeerConnection(socket=client_socket, address=client_address)
        logger.info(f"server: got connection from {conn.peer_host}")
        logger.debug(f"[{conn.id}] Peer {conn.peer_label}")

        try:
            return self.dispatcher.dispatch(conn, self.listener)
        except (OSError, RuntimeError) as e:
            logger.error(f"[{conn.id}] Could not start worker: {e}")
            conn.close()
            return None

    def shutdown(self) -> None:
        """
        Ask the loop to stop. Safe to call from a signal handler, another
        thread, or more than once.
        """
        if self._running:
            logger.info("Shutting down accept loop...")
        self._running = False

    def _setup_signals(self) -> None:
        """
        Turn SIGINT and SIGTERM into a graceful shutdown.

        signal.signal() only works in the main thread; when the loop runs
        elsewhere (tests, embedding) shutdown() is the only way out.
        """
        if threading.current_thread() is not threading.main_thread():
            return

        def shutdown_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            logger.info(f"Received {signal_name}, initiating shutdown...")
            self.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[sig] = signal.signal(sig, shutdown_handler)

    def _restore_signals(self) -> None:
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    def _cleanup(self) -> None:
        self._running = False
        self._restore_signals()
        self.listener.close()
        self._ready.clear()
        self._stopped.set()
        logger.info("Accept loop stopped")
