"""Challenge ingestion pipeline entry point. Use --help for usage."""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from prometheus_client import start_http_server

from config.config import PipelineConfig, load_config
from core.errors import ConfigurationError, PipelineError
from core.logging.setup import setup_logging
from pipeline.challenges.errors import DecodeError
from pipeline.challenges.publisher import ChallengePublisher
from pipeline.challenges.storage import create_store
from pipeline.challenges.workers.ingestion_worker import ChallengeIngestionWorker
from pipeline.common.signals import setup_shutdown_signal_handlers
from pipeline.common.transport import AmqpBroker

# Project root directory (where .env file is located)
# __main__.py is at src/pipeline/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Challenge ingestion pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run the ingestion worker
    python -m pipeline run

    # Declare the exchange and queues (and the table, for the postgres store)
    python -m pipeline setup-topology

    # Publish a challenge onto the intake queue
    python -m pipeline publish --external-id ext-1 --name "Spring Sprint"
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: src/config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )
    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the ingestion worker (default)")
    run_parser.add_argument(
        "--instance-id",
        default=None,
        help="Stable instance suffix for the worker id (default: random)",
    )

    subparsers.add_parser("setup-topology", help="Declare exchange, queues and store schema")

    publish_parser = subparsers.add_parser("publish", help="Publish one challenge message")
    publish_parser.add_argument("--external-id", required=True)
    publish_parser.add_argument("--name", required=True)
    publish_parser.add_argument("--description", default=None)
    publish_parser.add_argument(
        "--metadata",
        type=json.loads,
        default=None,
        help="Metadata as a JSON object, e.g. '{\"difficulty\": \"hard\"}'",
    )

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
        args.instance_id = None
    return args


def start_metrics_server(port: int) -> None:
    """Expose the default Prometheus registry on ``port``. Port 0 disables it."""
    if not port:
        logger.info("Metrics server disabled")
        return
    start_http_server(port)
    logger.info("Metrics server started", extra={"metrics_port": port})


async def run_worker(config: PipelineConfig, instance_id: str | None = None) -> None:
    broker = AmqpBroker(config.rabbitmq)
    store = create_store(config.store)
    worker = ChallengeIngestionWorker(config, broker, store, instance_id=instance_id)

    setup_shutdown_signal_handlers(worker.request_shutdown)
    await worker.run_until_stopped()


async def setup_topology(config: PipelineConfig) -> None:
    broker = AmqpBroker(config.rabbitmq)
    await broker.connect()
    try:
        await ChallengePublisher(broker, config.rabbitmq).setup_topology()
    finally:
        await broker.close()

    store = create_store(config.store)
    ensure_schema = getattr(store, "ensure_schema", None)
    if ensure_schema is not None:
        await store.open()
        try:
            await ensure_schema()
        finally:
            await store.close()


async def publish_challenge(config: PipelineConfig, args: argparse.Namespace) -> None:
    attrs = {
        "external_id": args.external_id,
        "name": args.name,
        "description": args.description,
        "metadata": args.metadata,
    }
    broker = AmqpBroker(config.rabbitmq)
    await broker.connect()
    try:
        message = await ChallengePublisher(broker, config.rabbitmq).publish_challenge(attrs)
    finally:
        await broker.close()
    print(message.model_dump_json())


def main(argv: list[str] | None = None) -> int:
    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)

    log_dir = Path(args.log_dir or os.getenv("LOG_DIR", "logs"))
    log_to_stdout = args.log_to_stdout or os.getenv("LOG_TO_STDOUT", "").lower() in ("1", "true")
    setup_logging(
        name="pipeline",
        stage=ChallengeIngestionWorker.STAGE if args.command == "run" else args.command,
        domain=ChallengeIngestionWorker.DOMAIN,
        log_dir=log_dir,
        console_level=getattr(logging, args.log_level),
        log_to_stdout=log_to_stdout,
    )

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        logger.error(f"Configuration error: {e}")
        return 2

    try:
        if args.command == "run":
            start_metrics_server(config.metrics_port)
            asyncio.run(run_worker(config, args.instance_id))
        elif args.command == "setup-topology":
            asyncio.run(setup_topology(config))
        elif args.command == "publish":
            asyncio.run(publish_challenge(config, args))
    except DecodeError as e:
        logger.error(f"Invalid challenge: {e}")
        return 2
    except PipelineError as e:
        logger.error(f"{args.command} failed: {e}", extra={"error_category": e.category.value})
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
