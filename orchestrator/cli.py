"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the ingestion service.

- argparse-based CLI
- Loads YAML configuration (+ .env and environment)
- Wires Redis / Kafka, or in-memory stand-ins for dry runs
- Serves the status API in the same event loop

============================================================
USAGE
============================================================
python app.py --config config.yaml
python app.py --config config.yaml --dry-run --log-level DEBUG
python -m orchestrator.cli --config config.yaml --no-api

============================================================
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import uvicorn

from core.config import AppConfig, load_config
from core.exceptions import ConfigLoadError
from event_publishing.transport import InMemoryTransport, KafkaTransport, Transport
from storage.kv_store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore

from .core import IngestionService, setup_logging


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="chain-ingestion",
        description="Multi-network blockchain ingestion and risk scoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --config config.yaml                 # Run against Redis and Kafka
  %(prog)s --config config.yaml --dry-run       # In-memory store and transport
  %(prog)s --config config.yaml --no-api        # Pipeline only, no status API
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default="config.yaml",
        metavar="PATH",
        help="YAML configuration file (default: config.yaml)",
    )

    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        metavar="PATH",
        help="Optional .env file to load before the configuration",
    )

    # --------------------------------------------------------
    # Execution Options
    # --------------------------------------------------------
    execution_group = parser.add_argument_group("Execution Options")

    execution_group.add_argument(
        "--dry-run",
        action="store_true",
        help="Use in-memory store and transport instead of Redis and Kafka",
    )

    execution_group.add_argument(
        "--no-api",
        action="store_true",
        help="Do not serve the status API",
    )

    execution_group.add_argument(
        "--shutdown-timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Grace period for flushing on shutdown (default: kafka.producer.close_grace_period)",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Logging level (default: from config)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default=None,
        help="Logging format (default: from config)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    return parser


def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Returns:
        List of validation errors
    """
    errors = []
    if args.shutdown_timeout is not None and args.shutdown_timeout <= 0:
        errors.append("--shutdown-timeout must be positive")
    return errors


# ============================================================
# WIRING
# ============================================================

def build_store(config: AppConfig, dry_run: bool) -> KeyValueStore:
    if dry_run:
        return InMemoryKeyValueStore()
    return RedisKeyValueStore(config.redis)


def build_transport(config: AppConfig, dry_run: bool) -> Transport:
    if dry_run:
        return InMemoryTransport()
    return KafkaTransport(config.kafka)


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, config: AppConfig) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    service = IngestionService(
        config,
        store=build_store(config, args.dry_run),
        transport=build_transport(config, args.dry_run),
    )

    api_task: Optional[asyncio.Task] = None
    server: Optional[uvicorn.Server] = None
    if config.api.enabled and not args.no_api:
        from dashboard.api import create_app

        server = uvicorn.Server(uvicorn.Config(
            create_app(service),
            host=config.api.host,
            port=config.api.port,
            log_config=None,
            access_log=False,
        ))
        api_task = asyncio.create_task(server.serve(), name="status-api")
        # Uvicorn exiting on a signal stops the pipeline too
        api_task.add_done_callback(lambda _: service.request_stop())
        logger.info(f"Status API on {config.api.host}:{config.api.port}")

    try:
        await service.run(shutdown_timeout=args.shutdown_timeout)
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        if server is not None and api_task is not None:
            server.should_exit = True
            await asyncio.gather(api_task, return_exceptions=True)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    try:
        config = load_config(args.config, env_file=args.env_file)
    except ConfigLoadError as e:
        # The only fatal error class
        print(f"Error: {e}", file=sys.stderr)
        return 1

    setup_logging(
        level=args.log_level or config.logging.level,
        log_format=args.log_format or config.logging.format,
    )
    print_banner(args, config)

    try:
        return asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130


def print_banner(args: argparse.Namespace, config: AppConfig) -> None:
    """Print startup banner."""
    networks = ", ".join(n.name for n in config.enabled_networks()) or "none"
    print()
    print("=" * 60)
    print("  CHAIN INGESTION & RISK SCORING")
    print("=" * 60)
    print(f"  Config:     {args.config}")
    print(f"  Networks:   {networks}")
    print(f"  Dry Run:    {args.dry_run}")
    print(f"  Status API: {'off' if args.no_api or not config.api.enabled else config.api.port}")
    print("=" * 60)
    print()


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
