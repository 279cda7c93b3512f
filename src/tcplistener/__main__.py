"""
=============================================================================
TCPLISTENER CLI ENTRY POINT
=============================================================================

    # Run with defaults (all interfaces, port 3490, process workers)
    python -m tcplistener

    # Custom port, loopback only
    python -m tcplistener --host 127.0.0.1 --port 4000

    # Thread workers instead of fork()
    python -m tcplistener --worker-mode thread

    # See every reaped worker
    python -m tcplistener --log-level DEBUG

Exit status is 0 after a graceful shutdown (Ctrl+C, SIGTERM) and 1 when
the listener could not be brought up.

=============================================================================
"""

import argparse
import sys

from . import __version__
from .config import LOG_LEVELS, WORKER_MODES, ListenerConfig
from .server import ListenerServer


def build_parser(defaults: ListenerConfig) -> argparse.ArgumentParser:
    """CLI arguments; defaults come from the environment."""
    parser = argparse.ArgumentParser(
        prog="tcplistener",
        description="Dual-stack TCP listener with one isolated worker per connection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m tcplistener                        # All interfaces, port 3490
  python -m tcplistener --port 4000            # Custom port
  python -m tcplistener --host ::1             # IPv6 loopback only
  python -m tcplistener --worker-mode thread   # Threads instead of fork()
        """
    )

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--host", "-H",
        default=defaults.host,
        help="Local address to bind (default: all interfaces)"
    )

    parser.add_argument(
        "--port", "-p",
        default=defaults.port,
        help=f"Port or service name to listen on (default: {defaults.port})"
    )

    parser.add_argument(
        "--backlog", "-b",
        type=int,
        default=defaults.backlog,
        help=f"Pending connection queue size (default: {defaults.backlog})"
    )

    # ─────────────────────────────────────────────────────────────────────
    # WORKER ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--max-payload",
        type=int,
        default=defaults.max_payload,
        help=f"Bytes read per connection (default: {defaults.max_payload})"
    )

    parser.add_argument(
        "--read-timeout",
        type=float,
        default=defaults.read_timeout,
        help="Worker read timeout in seconds (default: none)"
    )

    parser.add_argument(
        "--worker-mode",
        choices=WORKER_MODES,
        default=defaults.worker_mode,
        help=f"Worker isolation (default: {defaults.worker_mode})"
    )

    # ─────────────────────────────────────────────────────────────────────
    # META ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument(
        "--log-level", "-l",
        type=str.upper,
        choices=LOG_LEVELS,
        default=defaults.log_level.upper(),
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"tcplistener {__version__}"
    )

    return parser


def main(argv=None) -> int:
    """
    Main CLI entry point.

    Returns:
        Process exit status.
    """
    try:
        defaults = ListenerConfig.from_env()
    except ValueError as e:
        print(f"Error: invalid environment: {e}", file=sys.stderr)
        return 1

    args = build_parser(defaults).parse_args(argv)

    config = ListenerConfig(
        host=args.host,
        port=args.port,
        backlog=args.backlog,
        max_payload=args.max_payload,
        read_timeout=args.read_timeout,
        worker_mode=args.worker_mode,
        log_level=args.log_level,
    )

    try:
        server = ListenerServer(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return server.run()


if __name__ == "__main__":
    sys.exit(main())
