"""
=============================================================================
LISTENER SERVER
=============================================================================

The orchestrator that ties all components together.

=============================================================================
STARTUP SEQUENCE
=============================================================================

    ListenerServer.run()
        │
        ├──► _setup_logging()
        │
        ├──► start()                          ── any failure here is FATAL
        │       ├── resolve_bind_candidates()    ResolutionError
        │       ├── ListenerFactory.create()     ConfigurationError,
        │       │                                BindError, ListenError
        │       └── reaper.start()               ReaperSetupError
        │
        ├──► serve_forever()                  ── blocks in the accept loop
        │
        └──► _shutdown()
                ├── wait for outstanding workers (shutdown_timeout)
                └── reaper.stop()

run() turns a StartupError into exit status 1 and a normal shutdown into
exit status 0. Only startup errors ever get that far; everything that
goes wrong with a single connection is logged and forgotten.

=============================================================================
"""

import logging
from typing import Optional

from .config import ListenerConfig
from .errors import StartupError
from .core import (
    AcceptLoop,
    ConnectionWorker,
    ListenerFactory,
    ListeningSocket,
    PayloadHandler,
    PeerConnection,
    ProcessDispatcher,
    ProcessReaper,
    Reaper,
    ThreadDispatcher,
    ThreadReaper,
    WorkerDispatcher,
    print_payload,
    resolve_bind_candidates,
)


logger = logging.getLogger(__name__)


class ListenerServer:
    """
    TCP listener with one isolated worker per connection.

    =========================================================================
    USAGE
    =========================================================================

        def handle(peer, data):
            print(peer, data)

        server = ListenerServer(ListenerConfig(port="3490"), payload_handler=handle)
        exit_code = server.run()    # blocks until SIGINT/SIGTERM

    Or, with more control (tests, embedding):

        server.start()              # resolve, bind, listen, start reaper
        print(server.port)
        server.serve_forever()      # in whichever thread should own the loop
        server.shutdown()           # from anywhere

    =========================================================================
    """

    def __init__(
        self,
        config: Optional[ListenerConfig] = None,
        payload_handler: Optional[PayloadHandler] = None,
    ):
        self.config = config or ListenerConfig()
        self.config.validate()  # Fail-fast on invalid config

        self.payload_handler = payload_handler or print_payload

        self.listener: Optional[ListeningSocket] = None
        self.reaper: Optional[Reaper] = None
        self.dispatcher: Optional[WorkerDispatcher] = None
        self._loop: Optional[AcceptLoop] = None
        self._closed = False

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def port(self) -> int:
        if self.listener is None:
            raise RuntimeError("Server not started")
        return self.listener.port

    @property
    def is_running(self) -> bool:
        return self._loop is not None and self._loop.is_running

    @property
    def stats(self) -> dict:
        dispatched = self.dispatcher.dispatched if self.dispatcher else 0
        reaped = self.reaper.reaped_count if self.reaper else 0
        return {
            "dispatched": dispatched,
            "reaped": reaped,
            "outstanding": dispatched - reaped,
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def run(self) -> int:
        """
        Start the server and serve until shut down.

        Returns:
            Process exit status: 0 after a graceful shutdown, 1 if startup
            failed.
        """
        self._setup_logging()

        try:
            self.start()
        except StartupError as e:
            logger.critical(str(e))
            return e.exit_code

        try:
            self.serve_forever()
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        finally:
            self._shutdown()
        return 0

    def start(self) -> ListeningSocket:
        """
        Resolve, bind, listen and start the reaper.

        Raises:
            StartupError: Any of the steps failed. Nothing is left open.
        """
        candidates = resolve_bind_candidates(self.config.port, self.config.host)

        factory = ListenerFactory(backlog=self.config.backlog)
        self.listener = factory.create(candidates)

        try:
            self.reaper, self.dispatcher = self._create_workers()
            self.reaper.start()
        except StartupError:
            self.listener.close()
            raise

        self._loop = AcceptLoop(
            self.listener,
            self.dispatcher,
            poll_interval=self.config.poll_interval,
        )
        logger.debug(f"Workers: {self.config.worker_mode}, read cap {self.config.max_payload} bytes")
        return self.listener

    def serve_forever(self) -> None:
        """Run the accept loop (blocking). start() must have been called."""
        if self._loop is None:
            raise RuntimeError("Server not started")
        self._loop.run()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self._loop is not None and self._loop.wait_until_ready(timeout)

    def shutdown(self) -> None:
        """Ask the accept loop to stop. Safe from any thread."""
        if self._loop is not None:
            self._loop.shutdown()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """
        Stop a server whose serve_forever() runs in another thread, then
        wait for its workers to be reaped.
        """
        self.shutdown()
        if self._loop is not None:
            self._loop.wait_for_shutdown(timeout)
        self._shutdown()

    def _create_workers(self):
        if self.config.worker_mode == "process":
            reaper = ProcessReaper()
            return reaper, ProcessDispatcher(self._create_worker, reaper)

        reaper = ThreadReaper()
        return reaper, ThreadDispatcher(self._create_worker, reaper)

    def _create_worker(self, conn: PeerConnection) -> ConnectionWorker:
        return ConnectionWorker(
            conn,
            payload_handler=self.payload_handler,
            max_payload=self.config.max_payload,
            read_timeout=self.config.read_timeout,
        )

    def _setup_logging(self) -> None:
        """Configure logging based on config."""
        level = self.config.log_level_value

        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        logging.getLogger("tcplistener").setLevel(level)

    def _shutdown(self) -> None:
        """
        Graceful shutdown.

        The listener is already closed by the accept loop. Workers in flight
        get shutdown_timeout seconds to finish and be reaped.
        """
        if self._closed:
            return
        self._closed = True

        logger.info("Shutting down server...")

        if self.dispatcher is not None and self.reaper is not None:
            if not self.reaper.wait_for(self.dispatcher.dispatched, timeout=self.config.shutdown_timeout):
                logger.warning(f"{self.stats['outstanding']} worker(s) still running at shutdown")
            self.reaper.stop()

        logger.info(f"Server stopped ({self.stats['dispatched']} connection(s) handled)")
