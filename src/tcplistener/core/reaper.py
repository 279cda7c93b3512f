"""
=============================================================================
WORKER REAPING
=============================================================================

Finished workers still hold resources until somebody collects them:

    PROCESS:  A child that exits becomes a ZOMBIE. Its process-table entry
              (pid, exit status) stays around until the parent calls
              waitpid(). Enough zombies and fork() starts failing.

    THREAD:   A finished thread object lingers until it is joined.

The reaper collects them asynchronously, so the accept loop never has to
stop and wait for anybody.

=============================================================================
TWO REAPERS, ONE CONTRACT
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │  ProcessReaper                                                       │
    │  ─────────────────────────────────────────────────────────────────  │
    │  The kernel sends SIGCHLD whenever a child exits. Our handler       │
    │  drains every child that has already finished:                      │
    │                                                                      │
    │      while True:                                                     │
    │          pid, status = waitpid(-1, WNOHANG)                         │
    │          pid == 0            → children alive, none finished: stop  │
    │          ChildProcessError   → no children at all: stop (idle)      │
    │          otherwise           → reclaimed one, loop again            │
    │                                                                      │
    │  Signals COALESCE: three children dying at once may produce ONE     │
    │  SIGCHLD. That is why the handler loops instead of reaping one.     │
    └─────────────────────────────────────────────────────────────────────┘

    ┌─────────────────────────────────────────────────────────────────────┐
    │  ThreadReaper                                                        │
    │  ─────────────────────────────────────────────────────────────────  │
    │  A supervisor thread blocks on a completion queue. Every worker     │
    │  thread posts itself there from a `finally` block, the supervisor   │
    │  joins it, drains whatever else is already queued, and goes back    │
    │  to waiting. A None "poison pill" stops it.                         │
    └─────────────────────────────────────────────────────────────────────┘

Both count every reclaimed worker exactly once and remember only the most
recent identities, so nothing grows with the number of connections served.

=============================================================================
SIGNAL HANDLERS IN PYTHON
=============================================================================

Python runs signal handlers in the MAIN thread, between bytecodes, not in
the C-level handler. Consequences:

- The C errno of the interrupted call is saved by the interpreter, and any
  exception raised by waitpid() is caught inside the handler, so the code
  we interrupted sees no side effect.
- A system call interrupted by the signal (accept(), recv()) is retried
  automatically after the handler returns (PEP 475).
- The handler may run while the main thread is inside a logging call.
  It only counts; the messages are written later by log_reaped().

=============================================================================
"""

import os
import queue
import signal
import threading
import time
import logging
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from typing import Deque, List, Optional, Set, Union

from ..errors import ReaperSetupError


logger = logging.getLogger(__name__)


WorkerId = Union[int, str]

# How many reclaimed identities are kept for inspection
DEFAULT_HISTORY = 64


class Reaper(ABC):
    """
    Collects finished workers.

    Attributes:
        reaped_count: Number of workers reclaimed so far.
        recent: Identities of the last `history` reclaimed workers, oldest
                first. Older ones are forgotten so a long-running server
                holds nothing per connection served.
    """

    def __init__(self, history: int = DEFAULT_HISTORY):
        self.reaped_count = 0
        self.recent: Deque[WorkerId] = deque(maxlen=history)
        self._unlogged: Deque[str] = deque()

    @abstractmethod
    def start(self) -> None:
        """Begin reaping in the background."""

    @abstractmethod
    def stop(self) -> None:
        """Stop reaping. Safe to call more than once."""

    def reap(self) -> List[WorkerId]:
        """Reclaim whatever has already finished, without blocking."""
        self.log_reaped()
        return []

    def wait_for(self, count: int, timeout: Optional[float] = None) -> bool:
        """
        Wait until at least `count` workers have been reclaimed.

        Returns:
            True if the count was reached, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.reaped_count < count:
            self.reap()
            if self.reaped_count >= count:
                break
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        self.log_reaped()
        return True

    def log_reaped(self) -> None:
        """
        Log the workers reclaimed since the last call.

        Must not run inside a signal handler: the interrupted code may be
        halfway through a write to the same stream.
        """
        while True:
            try:
                message = self._unlogged.popleft()
            except IndexError:
                return
            logger.debug(message)

    def _record(self, worker_id: WorkerId, detail: str = "") -> None:
        self.reaped_count += 1
        self.recent.append(worker_id)
        self._unlogged.append(f"Reaped worker {worker_id}{detail}")


class ProcessReaper(Reaper):
    """
    Reaps forked workers from a SIGCHLD handler.

    Only children registered with track() are counted. Other children of
    the process are still collected, so they never linger as zombies, but
    they don't count as workers.

    Usage:
        reaper = ProcessReaper()
        reaper.start()        # must run in the main thread
        with reaper.deferred():
            pid = os.fork()
            ...
            reaper.track(pid)
        reaper.stop()         # restores the previous SIGCHLD handler
    """

    def __init__(self, history: int = DEFAULT_HISTORY):
        super().__init__(history)
        self._tracked: Set[int] = set()
        self._previous_handler = None
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    @property
    def outstanding(self) -> int:
        """Tracked children not reclaimed yet."""
        return len(self._tracked)

    def track(self, pid: int) -> None:
        """
        Register a forked worker.

        Call inside deferred() together with the fork, or the child may be
        reaped before it is known.
        """
        self._tracked.add(pid)

    @contextmanager
    def deferred(self):
        """Hold SIGCHLD back in this thread until the block ends."""
        previous = signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGCHLD})
        try:
            yield
        finally:
            signal.pthread_sigmask(signal.SIG_SETMASK, previous)

    def start(self) -> None:
        """
        Install the SIGCHLD handler.

        Raises:
            ReaperSetupError: Not in the main thread, or no SIGCHLD on this
                              platform.
        """
        if self._installed:
            return

        try:
            self._previous_handler = signal.signal(signal.SIGCHLD, self._handle_sigchld)
        except (AttributeError, ValueError, OSError) as e:
            raise ReaperSetupError(f"sigaction: {e}") from e

        self._installed = True
        logger.debug("SIGCHLD handler installed")

        # Children that died before the handler existed sent no signal we saw
        self.reap()

    def stop(self) -> None:
        if not self._installed:
            return
        signal.signal(signal.SIGCHLD, self._previous_handler or signal.SIG_DFL)
        self._previous_handler = None
        self._installed = False
        self.log_reaped()

    def _handle_sigchld(self, signum, frame) -> None:
        self._collect()  # Logged later, by log_reaped()

    def reap(self) -> List[int]:
        """
        Reclaim every child that has already exited.

        Never blocks and never raises: having nothing to reap is the idle
        case.
        """
        reclaimed = self._collect()
        self.log_reaped()
        return reclaimed

    def _collect(self) -> List[int]:
        reclaimed = []
        # No SIGCHLD handler may run in the middle of this loop
        with self.deferred():
            while True:
                try:
                    pid, status = os.waitpid(-1, os.WNOHANG)
                except ChildProcessError:
                    break  # No children at all
                except InterruptedError:
                    continue

                if pid == 0:
                    break  # Children exist, none finished yet

                exit_code = os.waitstatus_to_exitcode(status)
                if pid not in self._tracked:
                    self._unlogged.append(f"Reaped untracked child {pid} (exit status {exit_code})")
                    continue

                self._tracked.discard(pid)
                reclaimed.append(pid)
                self._record(pid, f" (exit status {exit_code})")
        return reclaimed


class ThreadReaper(Reaper):
    """
    Joins finished worker threads from a supervisor thread.

    Usage:
        reaper = ThreadReaper()
        reaper.start()
        # in each worker thread, when done:
        reaper.notify_finished(threading.current_thread())
        reaper.stop()
    """

    def __init__(self, join_timeout: float = 5.0, history: int = DEFAULT_HISTORY):
        super().__init__(history)
        self.join_timeout = join_timeout
        self._finished: "queue.Queue[Optional[threading.Thread]]" = queue.Queue()
        self._supervisor: Optional[threading.Thread] = None

    @property
    def is_alive(self) -> bool:
        return self._supervisor is not None and self._supervisor.is_alive()

    def notify_finished(self, thread: threading.Thread) -> None:
        """Completion signal, called by a worker thread as it ends."""
        self._finished.put(thread)

    def start(self) -> None:
        if self.is_alive:
            return
        self._supervisor = threading.Thread(target=self._run, name="Reaper", daemon=True)
        self._supervisor.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if not self.is_alive:
            return
        self._finished.put(None)  # Poison pill
        self._supervisor.join(timeout)
        self._supervisor = None

    def _run(self) -> None:
        logger.debug("Reaper started")
        while True:
            thread = self._finished.get()  # Wait for the next completion
            if thread is None:
                break

            self._reclaim(thread)
            if not self._drain():
                break
        logger.debug("Reaper stopped")

    def _drain(self) -> bool:
        """
        Reclaim everything already queued without blocking.

        Returns:
            False if the poison pill was found.
        """
        while True:
            try:
                thread = self._finished.get_nowait()
            except queue.Empty:
                return True
            if thread is None:
                return False
            self._reclaim(thread)

    def _reclaim(self, thread: threading.Thread) -> None:
        # The worker posts from its `finally`, so this join is momentary
        thread.join(self.join_timeout)
        if thread.is_alive():
            logger.warning(f"Worker {thread.name} still running after completion signal")
        self._record(thread.name)
        self.log_reaped()
