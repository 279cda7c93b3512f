"""
=============================================================================
TCPLISTENER - Dual-Stack TCP Listener With Isolated Per-Connection Workers
=============================================================================

Accepts inbound TCP connections on every local interface (IPv4 and IPv6),
hands each connection to its own worker, and reaps those workers as they
finish.

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    tcplistener/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m tcplistener)
    ├── server.py            # ListenerServer orchestrator
    ├── config.py            # ListenerConfig dataclass
    ├── errors.py            # Startup error hierarchy
    └── core/
        ├── resolver.py      # getaddrinfo() → bind candidates
        ├── listener.py      # socket/setsockopt/bind/listen
        ├── accept_loop.py   # accept → log → dispatch
        ├── connection.py    # PeerConnection wrapper
        ├── dispatcher.py    # fork or thread per connection
        ├── worker.py        # one bounded read → payload handler
        └── reaper.py        # SIGCHLD / completion-queue reaping

=============================================================================
QUICK START
=============================================================================

    from tcplistener import ListenerServer, ListenerConfig

    def handle(peer, data):
        print(f"{peer} sent {data!r}")

    server = ListenerServer(ListenerConfig(port="3490"), payload_handler=handle)
    raise SystemExit(server.run())

=============================================================================
"""

__version__ = "1.0.0"

from .config import ListenerConfig
from .errors import (
    ListenerError,
    StartupError,
    ResolutionError,
    ConfigurationError,
    BindError,
    ListenError,
    ReaperSetupError,
)
from .server import ListenerServer

__all__ = [
    "ListenerServer",
    "ListenerConfig",
    "ListenerError",
    "StartupError",
    "ResolutionError",
    "ConfigurationError",
    "BindError",
    "ListenError",
    "ReaperSetupError",
    "__version__",
]
