from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .config import DEFAULT_BIND, Settings, parse_address
from .console import run_client_console, run_host_console
from .errors import TransportUnavailable
from .net.directory import DirectoryServer


def main(argv: Optional[List[str]] = None) -> int:
    settings = Settings.from_env()
    directory_default = f"{settings.directory[0]}:{settings.directory[1]}"

    parser = argparse.ArgumentParser(description="Mafia - host or join a party game session")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level (default: %(default)s)")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    dir_p = subparsers.add_parser("directory", help="Run the session discovery service")
    dir_p.add_argument("--bind", type=str, default="0.0.0.0", help="Bind address")
    dir_p.add_argument("--port", type=int, default=settings.directory[1], help="TCP port to listen on")

    host_p = subparsers.add_parser("host", help="Host a game session")
    host_p.add_argument("--code", type=str, default=None, help="Requested 6-character session code")
    host_p.add_argument("--directory", type=str, default=directory_default, help="Discovery service host:port")
    host_p.add_argument("--bind", type=str, default=DEFAULT_BIND, help="Bind address")
    host_p.add_argument("--port", type=int, default=0, help="TCP port to listen on (0 = any)")
    host_p.add_argument("--capacity", type=int, default=settings.capacity, help="Active participants per game")

    join_p = subparsers.add_parser("join", help="Join a hosted session")
    join_p.add_argument("--code", type=str, required=True, help="Session code shown by the host")
    join_p.add_argument("--name", type=str, required=True, help="Display name")
    join_p.add_argument("--directory", type=str, default=directory_default, help="Discovery service host:port")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.mode == "directory":
        try:
            server = DirectoryServer(bind=args.bind, port=args.port)
        except TransportUnavailable as exc:
            print(f"Could not start directory: {exc}")
            return 1
        print(f"Directory listening on {server.address[0]}:{server.address[1]}")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            server.stop()
        return 0
    if args.mode == "host":
        try:
            host_settings = Settings(
                capacity=args.capacity,
                connect_timeout=settings.connect_timeout,
                directory=parse_address(args.directory),
            )
        except ValueError as exc:
            parser.error(str(exc))
        return run_host_console(host_settings, args.code, args.bind, args.port)
    join_settings = Settings(
        capacity=settings.capacity,
        connect_timeout=settings.connect_timeout,
        directory=parse_address(args.directory),
    )
    return run_client_console(join_settings, args.code, args.name)


if __name__ == "__main__":
    sys.exit(main())
