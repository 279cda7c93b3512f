"""
=============================================================================
LISTENER ERRORS
=============================================================================

Exceptions raised while bringing the listener up.

=============================================================================
ERROR CATEGORIES
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                       WHERE ERRORS END UP                           │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   FATAL (startup)          → StartupError subclasses, exit code 1   │
    │      resolution, bind, SO_REUSEADDR, listen, reaper install          │
    │                                                                      │
    │   PER-CANDIDATE            → logged by ListenerFactory, next one     │
    │      socket() or bind() failed for one address family                │
    │                                                                      │
    │   PER-CONNECTION           → logged, loop keeps accepting            │
    │      accept() failed, recv() failed, worker could not start          │
    │                                                                      │
    │   REAPING                  → not an error at all                     │
    │      no finished workers is the idle case                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Only the first category is represented by exceptions that leave the
accept loop. Everything else is reported through the logger.

=============================================================================
"""

from typing import Optional


class ListenerError(Exception):
    """Base class for all listener errors."""


class StartupError(ListenerError):
    """
    A failure that prevents the accept loop from ever running.
    
    Attributes:
        exit_code: Process exit status to use when this error aborts startup.
    """
    
    exit_code = 1


class ResolutionError(StartupError):
    """The service/host pair could not be turned into any bind candidate."""
    
    def __init__(self, service: str, host: Optional[str] = None, reason: str = ""):
        self.service = service
        self.host = host
        self.reason = reason
        target = f"{host or '*'}:{service}"
        message = f"getaddrinfo: cannot resolve {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ConfigurationError(StartupError):
    """A socket option required for binding could not be set."""


class BindError(StartupError):
    """Every bind candidate failed."""
    
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"server: failed to bind ({attempts} candidate(s) tried)")


class ListenError(StartupError):
    """The bound socket could not be put into listening mode."""


class ReaperSetupError(StartupError):
    """The worker-reaping handler could not be installed."""
