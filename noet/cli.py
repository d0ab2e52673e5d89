from __future__ import annotations

import argparse
import json
import logging
import sys

import uvicorn

from .config import load_settings
from .ports import find_available_port, is_port_available

logger = logging.getLogger("noet")


def _run(args: argparse.Namespace) -> int:
    settings = load_settings()
    host = args.host or settings.host
    port = args.port or settings.port

    if not is_port_available(port, host):
        if not args.allow_port_fallback:
            logger.error("Port %s is already in use on %s; free it or change the port in config.json", port, host)
            return 1
        fallback = find_available_port(port + 1, host)
        logger.warning("Port %s is in use, falling back to %s", port, fallback)
        port = fallback

    logger.info("Starting Noet on http://%s:%s (notes: %s)", host, port, settings.notes_path)
    uvicorn.run("noet.web:create_app", factory=True, host=host, port=port, reload=False, log_level=settings.log_level)
    return 0


def _ports(args: argparse.Namespace) -> int:
    settings = load_settings()
    print(
        json.dumps(
            {
                "environment": settings.environment,
                "frontend": settings.frontend.url,
                "backend": settings.backend.url,
            },
            indent=2,
        )
    )
    return 0


def _check_port(args: argparse.Namespace) -> int:
    free = is_port_available(args.port, args.host)
    print(f"Port {args.port} on {args.host} is {'available' if free else 'in use'}")
    return 0 if free else 1


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="noet", description="Noet - file-backed note storage server.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Run the API server")
    run.add_argument("--host", default=None, help="Bind host (override BACKEND_HOST)")
    run.add_argument("--port", type=int, default=None, help="Bind port (override BACKEND_PORT)")
    run.add_argument(
        "--allow-port-fallback",
        action="store_true",
        help="Use the next free port instead of exiting when the port is taken",
    )
    run.set_defaults(func=_run)

    ports = sub.add_parser("ports", help="Print the resolved frontend/backend URLs")
    ports.set_defaults(func=_ports)

    check = sub.add_parser("check-port", help="Exit 0 if a port is free, 1 otherwise")
    check.add_argument("port", type=int)
    check.add_argument("--host", default="localhost")
    check.set_defaults(func=_check_port)

    args = parser.parse_args(argv)
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(args.func(args))
