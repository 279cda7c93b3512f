"""
=============================================================================
LISTENER CONFIGURATION
=============================================================================

Centralized configuration management for the TCP listener.

=============================================================================
CONFIGURATION SOURCES
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION HIERARCHY                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Priority (highest to lowest):                                     │
    │                                                                      │
    │   1. Command-line arguments                                         │
    │      └── python -m tcplistener --port 4000                         │
    │                                                                      │
    │   2. Environment variables                                          │
    │      └── LISTENER_PORT=4000 python -m tcplistener                  │
    │                                                                      │
    │   3. Default values (in this dataclass)                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The port is kept as TEXT. It is a service identifier handed straight to
getaddrinfo(), so "3490" and a name from /etc/services are both valid.
Whether it resolves is decided by the resolver at startup, not here.

=============================================================================
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional


DEFAULT_PORT = "3490"

DEFAULT_BACKLOG = 10

# Read buffer is 50 bytes; one is reserved for the terminator.
MAX_DATA_SIZE = 50
DEFAULT_MAX_PAYLOAD = MAX_DATA_SIZE - 1

WORKER_MODES = ("process", "thread")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def default_worker_mode() -> str:
    """Process isolation where the platform can fork, threads elsewhere."""
    return "process" if hasattr(os, "fork") else "thread"


@dataclass
class ListenerConfig:
    """
    Configuration for the TCP listener.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK SETTINGS
    - host, port, backlog

    WORKER SETTINGS
    - max_payload, read_timeout, worker_mode

    LIFECYCLE
    - poll_interval, shutdown_timeout

    LOGGING
    - log_level

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    host: Optional[str] = None
    """
    Local address to bind to.
    - None - every local interface, IPv4 and IPv6 (passive resolution)
    - "127.0.0.1" / "::1" - loopback only
    """

    port: str = DEFAULT_PORT
    """
    Service identifier: a port number as text, or a service name.
    "0" asks the OS for an ephemeral port.
    """

    backlog: int = DEFAULT_BACKLOG
    """
    Maximum number of established connections the OS queues before
    accept() is called. Extra connections are refused by the kernel.
    """

    # ─────────────────────────────────────────────────────────────────────
    # WORKER SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    max_payload: int = DEFAULT_MAX_PAYLOAD
    """
    Maximum bytes a worker reads from its connection, in ONE recv() call.
    Anything the peer sends beyond this is discarded.
    """

    read_timeout: Optional[float] = None
    """
    Timeout for the worker's read in seconds.
    None = block until the peer sends or closes (only that worker waits).
    """

    worker_mode: str = field(default_factory=default_worker_mode)
    """
    Isolation primitive for connection workers.
    - "process" - fork() per connection, reaped via SIGCHLD
    - "thread"  - supervised thread per connection, reaped via a queue
    """

    # ─────────────────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────────────────

    poll_interval: float = 1.0
    """
    How often the accept loop wakes up to check for a shutdown request.
    """

    shutdown_timeout: float = 5.0
    """
    How long shutdown waits for outstanding workers to be reaped.
    """

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    """
    Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    DEBUG also logs every reaped worker.
    """

    @property
    def log_level_value(self) -> int:
        """Numeric logging level."""
        return getattr(logging, self.log_level.upper(), logging.INFO)

    @classmethod
    def from_env(cls) -> "ListenerConfig":
        """
        Create configuration from environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES
        =====================================================================

        LISTENER_HOST          Bind address (default: all interfaces)
        LISTENER_PORT          Service/port (default: 3490)
        LISTENER_BACKLOG       Pending connection queue (default: 10)
        LISTENER_MAX_PAYLOAD   Read cap in bytes (default: 49)
        LISTENER_READ_TIMEOUT  Worker read timeout in seconds (default: none)
        LISTENER_WORKER_MODE   process or thread
        LISTENER_LOG_LEVEL     Logging level (default: INFO)

        =====================================================================
        """
        read_timeout = os.getenv("LISTENER_READ_TIMEOUT")
        return cls(
            host=os.getenv("LISTENER_HOST") or None,
            port=os.getenv("LISTENER_PORT", DEFAULT_PORT),
            backlog=int(os.getenv("LISTENER_BACKLOG", str(DEFAULT_BACKLOG))),
            max_payload=int(os.getenv("LISTENER_MAX_PAYLOAD", str(DEFAULT_MAX_PAYLOAD))),
            read_timeout=float(read_timeout) if read_timeout else None,
            worker_mode=os.getenv("LISTENER_WORKER_MODE", default_worker_mode()),
            log_level=os.getenv("LISTENER_LOG_LEVEL", "INFO"),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Runs before anything touches the network so a typo fails at
        startup instead of after the first connection.
        """
        if self.backlog < 1:
            raise ValueError(f"backlog must be >= 1, got {self.backlog}")

        if self.max_payload < 1:
            raise ValueError(f"max_payload must be >= 1, got {self.max_payload}")

        if self.read_timeout is not None and self.read_timeout <= 0:
            raise ValueError("read_timeout must be > 0")

        if self.worker_mode not in WORKER_MODES:
            raise ValueError(
                f"Invalid worker_mode: {self.worker_mode!r}. "
                f"Must be one of {', '.join(WORKER_MODES)}."
            )

        if self.worker_mode == "process" and not hasattr(os, "fork"):
            raise ValueError("worker_mode 'process' needs os.fork(), use 'thread'")

        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {self.log_level!r}")
