"""CLI entry point serving the probe engine over HTTP."""

import argparse
import logging
import sys

from aiohttp import web

from probe_engine.config import get_settings
from probe_engine.web.app import create_app


def main() -> None:
    """CLI entry point."""
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Run the HTTP probe engine service")
    parser.add_argument("--host", default=settings.host, help="Listen address")
    parser.add_argument("--port", type=int, default=settings.port, help="Listen port")
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Log level (DEBUG, INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    log = logging.getLogger("probe_engine")
    log.info("Starting probe engine on %s:%d", args.host, args.port)

    web.run_app(create_app(settings), host=args.host, port=args.port, print=None)


if __name__ == "__main__":  # pragma: no cover
    main()
