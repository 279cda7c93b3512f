"""
=============================================================================
BIND ADDRESS RESOLUTION
=============================================================================

Turns a service (port) and an optional host into the list of local
addresses the listener may bind to, for whichever IP versions the host
supports.

=============================================================================
PASSIVE getaddrinfo()
=============================================================================

getaddrinfo() is normally used by CLIENTS to look up where to connect.
With the AI_PASSIVE flag and no host, it answers a different question:
"which wildcard addresses can a SERVER bind to on this machine?"

    getaddrinfo(None, "3490", AF_UNSPEC, SOCK_STREAM, 0, AI_PASSIVE)

    ┌───────────────────────────────────────────────────────────────────┐
    │  family     type         proto   sockaddr                          │
    ├───────────────────────────────────────────────────────────────────┤
    │  AF_INET    SOCK_STREAM  6       ('0.0.0.0', 3490)                 │
    │  AF_INET6   SOCK_STREAM  6       ('::', 3490, 0, 0)                │
    └───────────────────────────────────────────────────────────────────┘

AF_UNSPEC means "I don't care about the IP version", which is what makes
the listener dual-stack without any version-specific code. The order of
the rows is the order ListenerFactory tries them in.

=============================================================================
"""

import socket
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from ..errors import ResolutionError


logger = logging.getLogger(__name__)


# Families we know how to bind and report peers for
IP_FAMILIES = (socket.AF_INET, socket.AF_INET6)


@dataclass(frozen=True)
class BindCandidate:
    """
    One concrete (family, type, protocol, address) tuple eligible for bind().

    Attributes:
        family: AF_INET or AF_INET6.
        type: Always SOCK_STREAM for this listener.
        proto: Protocol number (0 or IPPROTO_TCP).
        sockaddr: Address tuple accepted by socket.bind().
    """

    family: socket.AddressFamily
    type: socket.SocketKind
    proto: int
    sockaddr: tuple

    @property
    def family_name(self) -> str:
        """Human-friendly IP version, for logs."""
        return "IPv6" if self.family == socket.AF_INET6 else "IPv4"

    @property
    def host(self) -> str:
        return self.sockaddr[0]

    @property
    def port(self) -> int:
        return self.sockaddr[1]

    def __str__(self) -> str:
        if self.family == socket.AF_INET6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def _check_service(service: str, host: Optional[str]) -> None:
    """
    Reject numeric ports getaddrinfo() would otherwise wrap or accept.

    Service names ("http", "ssh") are left to getaddrinfo(). Anything
    str.isdigit() accepts is treated as a port attempt, including
    superscripts and non-ASCII digits that int() or getaddrinfo() reject.
    """
    if not service.isdigit():
        return

    if not service.isascii():
        raise ResolutionError(service, host, "invalid port")

    try:
        port = int(service)
    except ValueError as e:  # Longer than the int conversion limit
        raise ResolutionError(service, host, "invalid port") from e

    if port > 65535:
        raise ResolutionError(service, host, "port out of range")


def resolve_bind_candidates(
    service: Union[str, int],
    host: Optional[str] = None,
) -> List[BindCandidate]:
    """
    Resolve the local addresses a listening socket can bind to.

    Args:
        service: Port number (as text or int) or service name.
        host: Local address to bind; None means every local interface.

    Returns:
        Ordered list of candidates, at least one entry long.

    Raises:
        ResolutionError: The service or host cannot be resolved, or no
                         IPv4/IPv6 stream address came back.
    """
    service = str(service).strip()
    if not service:
        raise ResolutionError(service, host, "empty service")

    _check_service(service, host)

    try:
        infos = socket.getaddrinfo(
            host,
            service,
            socket.AF_UNSPEC,      # IPv4 or IPv6, whatever the host has
            socket.SOCK_STREAM,
            0,
            socket.AI_PASSIVE,     # addresses to bind, not to connect
        )
    except (socket.gaierror, UnicodeError) as e:
        raise ResolutionError(service, host, str(e)) from e

    candidates = [
        BindCandidate(family=family, type=type_, proto=proto, sockaddr=sockaddr)
        for family, type_, proto, _canonname, sockaddr in infos
        if family in IP_FAMILIES and type_ == socket.SOCK_STREAM
    ]

    if not candidates:
        raise ResolutionError(service, host, "no IPv4 or IPv6 stream address")

    logger.debug(
        f"Resolved {host or '*'}:{service} to "
        f"{', '.join(f'{c.family_name} {c}' for c in candidates)}"
    )
    return candidates
