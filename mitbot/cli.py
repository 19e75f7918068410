"""Command line entry point.

Usage:
    mitbot run --host 0.0.0.0 --port 8000

    # Human-readable logs instead of JSON:
    mitbot run --log-text --log-level debug

Environment Variables:
    MIT_URL: Base URL of the token-issuing service
    REDIS_URL: Redis connection string (ignored with USE_MEMORY_STORE=true)
    LOG_LEVEL / LOG_JSON: Defaults for the logging flags
"""
from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

from mitbot.logging import configure_logging, get_logger

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mitbot",
        description="Chat-driven token management service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Start the HTTP service")
    run.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    run.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8000")))
    run.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "info"),
        choices=["debug", "info", "warning", "error"],
        type=str.lower,
    )
    run.add_argument(
        "--log-text",
        action="store_true",
        help="Write human-readable logs instead of JSON",
    )
    return parser


def run_server(host: str, port: int, log_level: str, log_text: bool) -> None:
    import uvicorn

    # The runtime rebuilds logging from Settings, which read LOG_* from the environment.
    os.environ["LOG_LEVEL"] = log_level.upper()
    os.environ["LOG_JSON"] = "false" if log_text else "true"
    configure_logging(log_level=log_level.upper(), json_output=not log_text)

    logger.info("server_starting", host=host, port=port)
    uvicorn.run("mitbot.app:app", host=host, port=port, log_level=log_level)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "run":
        run_server(args.host, args.port, args.log_level, args.log_text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
