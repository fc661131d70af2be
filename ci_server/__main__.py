"""
Entrypoint for running the CI API server.

Usage:
    python -m ci_server [OPTIONS]
    ci-server [OPTIONS]  (after pip install)

Environment Variables:
    CI_DB_PATH: Database path (default: ci_jobs.db)
    CI_HOST: Interface to bind (default: 0.0.0.0)
    CI_PORT: Port to listen on (default: 8000)
    CI_LOG_LEVEL: Logging level (default: INFO)
"""

import argparse
import logging
import os
import sys

import uvicorn

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="CI Server - commit and build API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  CI_DB_PATH      Database path (default: ci_jobs.db)
  CI_HOST         Interface to bind (default: 0.0.0.0)
  CI_PORT         Port to listen on (default: 8000)
  CI_LOG_LEVEL    Logging level (default: INFO)

Note: Command-line arguments override environment variables.
        """,
    )

    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to SQLite database file (default: CI_DB_PATH env or ci_jobs.db)",
    )
    parser.add_argument("--host", type=str, default=None, help="Interface to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: CI_LOG_LEVEL env or INFO)",
    )

    return parser.parse_args()


def get_port(args: argparse.Namespace) -> int:
    if args.port is not None:
        return args.port

    try:
        return int(os.environ.get("CI_PORT", "8000"))
    except ValueError:
        logger.warning(f"Invalid CI_PORT={os.environ.get('CI_PORT')}, using default 8000")
        return 8000


def main() -> int:
    args = parse_args()

    log_level = args.log_level or os.environ.get("CI_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # The app reads the database path when it starts up
    if args.db_path:
        os.environ["CI_DB_PATH"] = args.db_path

    host = args.host or os.environ.get("CI_HOST", "0.0.0.0")
    port = get_port(args)

    logger.info("Starting CI Server")
    logger.info(f"  Database: {os.environ.get('CI_DB_PATH', 'ci_jobs.db')}")
    logger.info(f"  Listening on: {host}:{port}")

    try:
        uvicorn.run("ci_server.app:app", host=host, port=port, log_level=log_level.lower())
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
