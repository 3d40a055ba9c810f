"""APRS Firehose Service - APRS-IS stream ingestion into PostgreSQL."""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import List, Optional

from . import __version__
from .config.settings import FirehoseSettings, load_settings
from .db_writer import FrameStore, PostgresFrameStore
from .exceptions import ConfigError, FirehoseError
from .health import HealthCheckServer
from .metrics import FirehoseMetrics
from .shutdown import ShutdownCoordinator
from .stream_processor import IngestionPipeline
from .utils.logging import setup_logging
from .utils.passcode import generate_passcode


logger = logging.getLogger(__name__)


class FirehoseService:
    """Main firehose service: store, pipeline and the optional HTTP endpoints."""

    def __init__(self, settings: FirehoseSettings, store: Optional[FrameStore] = None):
        self.settings = settings
        self.shutdown = ShutdownCoordinator(settings.pipeline.shutdown_grace_seconds)
        self.store = store or PostgresFrameStore(settings.database)
        self.metrics: Optional[FirehoseMetrics] = None
        self.pipeline: Optional[IngestionPipeline] = None
        self.health_server: Optional[HealthCheckServer] = None

        logger.info("APRS Firehose Service initialized")

    async def start(self):
        """
        Run the service until shutdown.

        Raises:
            StorageError: if the store cannot be initialized
            FirehoseError: if a component fails fatally
        """
        logger.info(f"Starting APRS Firehose {__version__}")

        await self.store.initialize()

        try:
            if self.settings.metrics.enable_prometheus:
                self.metrics = FirehoseMetrics()
                self.metrics.start_server(self.settings.metrics.prometheus_port)

            self.pipeline = IngestionPipeline(
                self.settings,
                self.store,
                shutdown=self.shutdown,
                metrics=self.metrics
            )

            if self.settings.health.enabled:
                self.health_server = HealthCheckServer(
                    self.health_check,
                    host=self.settings.health.host,
                    port=self.settings.health.port
                )
                await self.health_server.start()

            self.shutdown.install_signal_handlers()
            try:
                await self.pipeline.run()
            finally:
                self.shutdown.remove_signal_handlers()
        finally:
            if self.health_server:
                await self.health_server.stop()
            await self.store.close()

        logger.info("APRS Firehose Service stopped")

    def stop(self, reason: str = "stop requested"):
        self.shutdown.request_shutdown(reason)

    async def health_check(self) -> dict:
        """Perform health check."""
        health_status = {
            "service": self.settings.service_name,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {}
        }

        if self.pipeline:
            health_status["components"]["pipeline"] = self.pipeline.health_check()
        health_status["components"]["store"] = await self.store.health_check()

        component_statuses = [
            comp.get("status", "unknown")
            for comp in health_status["components"].values()
        ]

        if any(status == "unhealthy" for status in component_statuses):
            health_status["status"] = "unhealthy"
        elif any(status == "degraded" for status in component_statuses):
            health_status["status"] = "degraded"

        return health_status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aprs-firehose",
        description="Stream the APRS-IS feed into PostgreSQL."
    )
    parser.add_argument("callsign", nargs="?", help="station callsign used to log in")
    parser.add_argument(
        "-c", "--config",
        default=os.getenv("APRS_FIREHOSE_CONFIG_FILE"),
        help="YAML configuration file"
    )
    parser.add_argument("--passcode", type=int, help="APRS-IS passcode (derived from the callsign if omitted)")
    parser.add_argument("--host", help="APRS-IS server host")
    parser.add_argument("--port", type=int, help="APRS-IS server port")
    parser.add_argument("--filter", dest="filter_spec", help="server-side filter expression")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="more log output")
    parser.add_argument("-q", "--quiet", action="count", default=0, help="less log output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def settings_from_args(args: argparse.Namespace) -> FirehoseSettings:
    """
    Load settings and apply command line overrides.

    Raises:
        ConfigError: on invalid configuration
    """
    aprs_is = {}
    if args.callsign:
        aprs_is["callsign"] = args.callsign
    if args.passcode is not None:
        aprs_is["passcode"] = args.passcode
    if args.host:
        aprs_is["host"] = args.host
    if args.port:
        aprs_is["port"] = args.port
    if args.filter_spec:
        aprs_is["filter"] = args.filter_spec

    overrides = {"aprs_is": aprs_is} if aprs_is else {}
    settings = load_settings(args.config, **overrides)

    if settings.aprs_is.passcode is None:
        settings.aprs_is.passcode = generate_passcode(settings.aprs_is.callsign)

    return settings


def level_from_args(args: argparse.Namespace) -> Optional[int]:
    if args.verbose and args.quiet:
        raise ConfigError("--verbose and --quiet are mutually exclusive")
    if args.verbose:
        return logging.DEBUG
    if args.quiet == 1:
        return logging.WARNING
    if args.quiet > 1:
        return logging.ERROR
    return None


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
        level = level_from_args(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.logging, settings.service_name, level_override=level)

    service = FirehoseService(settings)
    try:
        asyncio.run(service.start())
    except FirehoseError as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted before startup completed")

    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
