"""
Evidex Server Entry Point
"""

import argparse
import logging
import sys
from typing import Optional

import uvicorn

from .config import Settings, get_settings, load_config


def setup_logging(settings: Settings):
    log_path = settings.resolve_path(settings.logging.file_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(str(log_path)),
        ],
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the Evidex API server")
    parser.add_argument("--config", "-c", help="Path to config.yml", default=None)
    parser.add_argument("--host", help="Override server.host", default=None)
    parser.add_argument("--port", type=int, help="Override server.port", default=None)
    return parser.parse_args(argv)


def main(argv: Optional[list] = None):
    args = parse_args(argv)
    settings = load_config(args.config) if args.config else get_settings()

    setup_logging(settings)
    logger = logging.getLogger(__name__)

    host = args.host or settings.server.host
    port = args.port or settings.server.port

    logger.info("=" * 60)
    logger.info("  Evidex - Evidence Log Analysis")
    logger.info("=" * 60)
    logger.info(f"  Host: {host}")
    logger.info(f"  Port: {port}")
    logger.info(f"  Rules: {settings.resolve_path(settings.rules.rules_path)}")
    logger.info("=" * 60)

    for dir_path in (
        settings.resolve_path(settings.storage.uploads_path),
        settings.resolve_path(settings.storage.analyses_path),
    ):
        dir_path.mkdir(parents=True, exist_ok=True)

    if settings.server.workers > 1:
        # Active runs and progress live in this process
        logger.warning(f"Ignoring server.workers={settings.server.workers}; Evidex runs a single worker")

    from .api.main import create_app

    uvicorn.run(
        create_app(settings),
        host=host,
        port=port,
        log_level="debug" if settings.server.debug else "info",
    )


if __name__ == "__main__":
    main()
