"""CLI entry point for the ingest daemon."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import List, Optional

from . import __version__
from .common.config import Settings, get_settings
from .decoding import PAYLOAD_FORMATS
from .domain.errors import SchemaMismatch, StoreError
from .metrics import start_metrics_server
from .service import IngestContext

logger = logging.getLogger(__name__)

EXIT_INVALID_CONFIG = 1
EXIT_SCHEMA_MISMATCH = 2
EXIT_STORE_UNAVAILABLE = 3


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="zpowergraph-ingest",
        description=(
            "Listen to Zigbee2MQTT messages of power-monitoring smart plugs "
            "(Nous A1Z) and store the readings in a SQLite database."
        ),
    )
    p.add_argument("server", nargs="?", help="MQTT broker host. Example: localhost")
    p.add_argument("port", nargs="?", type=int, help="MQTT broker port. Example: 1883")
    p.add_argument("topic", nargs="?", help="Base topic the plugs are exposed under. Example: zigbee2mqtt")
    p.add_argument("friendly_names", nargs="*", help="Friendly names of the plugs (all when omitted)")
    p.add_argument("--user", help="Username for authorization, if applicable")
    p.add_argument("--pass", dest="password", help="Password for authorization, if applicable")
    p.add_argument("--db", help="SQLite database file (default ./zpowergraph.db)")
    p.add_argument("--payload-format", choices=sorted(PAYLOAD_FORMATS))
    p.add_argument("--idle-timeout", type=float, help="seconds of silence before a zero-power reading (0 disables)")
    p.add_argument("--metrics-port", type=int, help="expose Prometheus metrics on this port")
    p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def settings_from_args(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    base = base or get_settings()
    return base.with_overrides(
        mqtt_host=args.server,
        mqtt_port=args.port,
        base_topic=args.topic,
        devices=tuple(args.friendly_names) or None,
        mqtt_username=args.user,
        mqtt_password=args.password,
        db_path=args.db,
        payload_format=args.payload_format,
        idle_timeout_seconds=args.idle_timeout,
        metrics_port=args.metrics_port,
        log_level=args.log_level,
    )


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValueError as e:
        _configure_logging("INFO")
        logger.error("Invalid configuration: %s", e)
        return EXIT_INVALID_CONFIG

    _configure_logging(settings.log_level)
    logger.debug("Settings: %s", settings.with_overrides(mqtt_password="***" if settings.mqtt_password else None))

    try:
        context = IngestContext.build(settings)
    except SchemaMismatch as e:
        logger.error("Refusing to start: %s", e)
        return EXIT_SCHEMA_MISMATCH
    except StoreError as e:
        logger.error("Cannot open database: %s", e)
        return EXIT_STORE_UNAVAILABLE
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_INVALID_CONFIG

    def _handle_signal(signum, frame):
        logger.info("Shutdown signal %s received", signal.Signals(signum).name)
        context.request_stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)

    context.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
