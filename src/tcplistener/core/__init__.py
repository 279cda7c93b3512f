"""
=============================================================================
CORE LISTENER COMPONENTS
=============================================================================

The connection-acceptance lifecycle, leaf first:

    ┌─────────────────────────────────────────────────────────────────────┐
    │  resolver       (service, host) → [BindCandidate, ...]              │
    │  listener       [BindCandidate, ...] → ListeningSocket              │
    │  accept_loop    accept → log peer → dispatch → repeat               │
    │  dispatcher     PeerConnection → isolated worker                    │
    │  worker         one recv → payload handler → close                  │
    │  reaper         collects finished workers, concurrently             │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from .resolver import BindCandidate, resolve_bind_candidates
from .listener import ListenerFactory, ListeningSocket
from .connection import PeerConnection, ConnectionState
from .worker import ConnectionWorker, PayloadHandler, decode_payload, print_payload
from .reaper import Reaper, ProcessReaper, ThreadReaper
from .dispatcher import WorkerDispatcher, ProcessDispatcher, ThreadDispatcher, WorkerHandle
from .accept_loop import AcceptLoop

__all__ = [
    "BindCandidate",        # One bindable address
    "resolve_bind_candidates",
    "ListenerFactory",      # Creates the listening socket
    "ListeningSocket",
    "PeerConnection",       # One accepted client
    "ConnectionState",
    "ConnectionWorker",     # Per-connection read-and-handle
    "PayloadHandler",
    "decode_payload",
    "print_payload",
    "Reaper",               # Collects finished workers
    "ProcessReaper",
    "ThreadReaper",
    "WorkerDispatcher",     # Starts workers
    "ProcessDispatcher",
    "ThreadDispatcher",
    "WorkerHandle",
    "AcceptLoop",           # Main loop
]
