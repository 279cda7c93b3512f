"""
=============================================================================
WORKER DISPATCH
=============================================================================

One accepted connection → one isolated worker. Dispatch is fire-and-forget:
the accept loop gets control back as soon as the worker has STARTED.

=============================================================================
PROCESS VS THREAD WORKERS
=============================================================================

    ┌──────────────────────────┬──────────────────────────────────────────┐
    │  ProcessDispatcher       │  ThreadDispatcher                        │
    ├──────────────────────────┼──────────────────────────────────────────┤
    │  os.fork() per conn      │  threading.Thread per conn               │
    │  Own memory space        │  Shared memory, strict ownership          │
    │  Crash = child dies      │  Exception = logged in the worker thread │
    │  Reaped by SIGCHLD       │  Reaped by the completion queue          │
    │  POSIX only              │  Everywhere                              │
    └──────────────────────────┴──────────────────────────────────────────┘

FORK, STEP BY STEP:

    parent (accept loop)                 child (worker)
    ────────────────────                 ──────────────
    flush stdout/stderr
    block SIGCHLD
    pid = fork() ──────────────────────► pid == 0
    track(pid), unblock SIGCHLD          reset SIGCHLD/SIGINT/SIGTERM
    close(conn)   ← parent's copy        unblock SIGCHLD
    back to accept()                     close(listener) ← child's copy
                                         recv → handler → close(conn)
                                         os._exit(0)  ──► SIGCHLD to parent

Stdio is flushed before fork() so the child doesn't inherit, and later
write out, half a buffer of the parent's output.

os._exit() skips atexit handlers and buffered-IO cleanup that belong to
the parent. A forked worker must never fall back into the accept loop,
whatever happens inside it.

=============================================================================
"""

import os
import sys
import signal
import itertools
import threading
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Union

from .connection import PeerConnection
from .listener import ListeningSocket
from .reaper import ProcessReaper, Reaper, ThreadReaper
from .worker import ConnectionWorker


logger = logging.getLogger(__name__)


WorkerFactory = Callable[[PeerConnection], ConnectionWorker]


@dataclass
class WorkerHandle:
    """
    What the accept loop gets back from a dispatch.

    Attributes:
        ident: Process id (process mode) or thread name (thread mode).
        connection_id: Id of the connection the worker owns.
        started_at: Timestamp of the dispatch.
    """

    ident: Union[int, str]
    connection_id: str
    started_at: float = field(default_factory=time.time)


class WorkerDispatcher(ABC):
    """
    Starts one worker per connection.

    Attributes:
        dispatched: Number of workers started so far.
    """

    def __init__(self, worker_factory: WorkerFactory, reaper: Reaper):
        self.worker_factory = worker_factory
        self.reaper = reaper
        self.dispatched = 0

    @abstractmethod
    def dispatch(self, conn: PeerConnection, listener: ListeningSocket) -> WorkerHandle:
        """
        Start a worker that owns `conn` and return without waiting for it.

        After this returns the caller must not use `conn` again.

        Raises:
            OSError / RuntimeError: The worker could not be started. The
                                    caller still owns `conn` in that case.
        """


class ProcessDispatcher(WorkerDispatcher):
    """Forks a child process per connection."""

    def __init__(self, worker_factory: WorkerFactory, reaper: ProcessReaper):
        super().__init__(worker_factory, reaper)

    def dispatch(self, conn: PeerConnection, listener: ListeningSocket) -> WorkerHandle:
        _flush_std_streams()

        # The child must be tracked before its SIGCHLD can be handled
        with self.reaper.deferred():
            pid = os.fork()
            if pid == 0:
                self._run_child(conn, listener)  # Never returns
            self.reaper.track(pid)

        # ─────────────────────────────────────────────────────────────────
        # PARENT: let go of the connection
        # ─────────────────────────────────────────────────────────────────
        conn.close()
        self.dispatched += 1
        logger.debug(f"[{conn.id}] Dispatched to worker process {pid}")
        return WorkerHandle(ident=pid, connection_id=conn.id)

    def _run_child(self, conn: PeerConnection, listener: ListeningSocket) -> None:
        exit_code = 0
        try:
            # The parent's handlers would act on the parent's state
            for signum in (signal.SIGCHLD, signal.SIGINT, signal.SIGTERM):
                signal.signal(signum, signal.SIG_DFL)
            signal.pthread_sigmask(signal.SIG_UNBLOCK, {signal.SIGCHLD})

            listener.close()  # Child doesn't need the listener
            self.worker_factory(conn).run()
        except Exception as e:
            logger.exception(f"[{conn.id}] Worker process failed: {e}")
            exit_code = 1
        finally:
            _flush_std_streams()
            os._exit(exit_code)


class ThreadDispatcher(WorkerDispatcher):
    """Starts a supervised thread per connection."""

    def __init__(self, worker_factory: WorkerFactory, reaper: ThreadReaper):
        super().__init__(worker_factory, reaper)
        self._counter = itertools.count(1)

    def dispatch(self, conn: PeerConnection, listener: ListeningSocket) -> WorkerHandle:
        worker = self.worker_factory(conn)
        thread = threading.Thread(
            target=self._run_worker,
            args=(worker,),
            name=f"Worker-{next(self._counter)}",
            daemon=True,
        )
        thread.start()

        self.dispatched += 1
        logger.debug(f"[{conn.id}] Dispatched to {thread.name}")
        return WorkerHandle(ident=thread.name, connection_id=conn.id)

    def _run_worker(self, worker: ConnectionWorker) -> None:
        try:
            worker.run()
        except Exception as e:
            logger.exception(f"[{worker.conn.id}] Worker thread failed: {e}")
        finally:
            self.reaper.notify_finished(threading.current_thread())


def _flush_std_streams() -> None:
    for stream in (sys.stdout, sys.stderr):
        try:
            if stream is not None:
                stream.flush()
        except (AttributeError, ValueError, OSError):
            pass
