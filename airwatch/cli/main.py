"""Main CLI application for browsing stored sessions and their statistics."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..models import AppConfiguration
from ..services import DataAggregator, SessionStorage
from ..lib.config import (
    ConfigManager,
    ConfigurationError,
    load_default_configuration,
    save_config_to_file,
)
from ..lib.config.validation import validate_config_file


logger = structlog.get_logger(__name__)


class AirwatchApplication:
    """Operator application wiring configuration, storage and aggregation."""

    def __init__(self):
        """Initialize the application."""
        self.configuration: Optional[AppConfiguration] = None
        self.config_manager: Optional[ConfigManager] = None
        self.session_storage: Optional[SessionStorage] = None
        self.data_aggregator: Optional[DataAggregator] = None

    def initialize(self,
                   config_path: Optional[str] = None,
                   with_storage: bool = True,
                   hot_reload: bool = False) -> None:
        """Load configuration and create the storage and aggregator.

        With ``hot_reload`` every valid edit of the configuration file is
        applied to the running store and aggregator.
        """
        if config_path and Path(config_path).exists():
            self.config_manager = ConfigManager(config_path, hot_reload=hot_reload)
            self.config_manager.on_config_changed = self.apply_configuration
            self.configuration = self.config_manager.load_config()
            logger.debug("Loaded configuration from file", config_path=config_path)
        else:
            if config_path:
                logger.warning("Configuration file not found, using defaults",
                              config_path=config_path)
            self.configuration = load_default_configuration()

        if not with_storage:
            return

        self.session_storage = SessionStorage.from_settings(self.configuration.storage)
        self.data_aggregator = DataAggregator(self.session_storage, self.configuration.aggregation)

    def apply_configuration(self, config: AppConfiguration) -> None:
        """Switch the running components to reloaded settings.

        Aggregation settings, the session cap and the write retries take
        effect for the next operation. A new storage directory or index file
        name needs a restart.
        """
        previous = self.configuration

        if self.data_aggregator is not None:
            self.data_aggregator.settings = config.aggregation

        if self.session_storage is not None:
            self.session_storage.max_sessions = config.storage.max_sessions
            self.session_storage.write_retries = config.storage.write_retries
            if previous is not None and (
                config.storage.storage_dir != previous.storage.storage_dir or
                config.storage.index_filename != previous.storage.index_filename
            ):
                logger.warning("Storage location changed, restart to use it",
                              storage_dir=config.storage.storage_dir)

        self.configuration = config

        logger.info("Applied configuration",
                   max_sessions=config.storage.max_sessions,
                   deduplicate=config.aggregation.deduplicate,
                   max_workers=config.aggregation.max_workers)

    def shutdown(self) -> None:
        if self.config_manager is not None:
            self.config_manager.shutdown()

    def list_sessions(self) -> List[str]:
        """One line per stored session, newest first."""
        return [
            f"{entry.session_id}  {entry.describe()}"
            for entry in self.session_storage.list_sessions()
        ]

    def show_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Full session record, or None when it cannot be loaded."""
        session = self.session_storage.load_session(session_id)
        return session.to_record() if session else None

    async def session_statistics(self,
                                 session_id: str,
                                 station_id: int,
                                 sensor_ids: Sequence[int],
                                 dates: Sequence[date]) -> Dict[str, Any]:
        """Aggregate the stored history of a station and compute statistics."""
        result = await self.data_aggregator.analyze_async(
            session_id, station_id, sensor_ids, dates
        )
        return {
            "session_id": result.session_id,
            "station_id": result.station_id,
            "dates": [day.isoformat() for day in result.selected_dates],
            "statistics": [
                stats.model_dump(mode='json') for stats in result.statistics
            ]
        }

    def export_session(self, session_id: str, output_path: str) -> bool:
        return self.session_storage.export_session_data(session_id, output_path)

    def get_status(self) -> Dict[str, Any]:
        """Storage and aggregation counters."""
        return {
            "session_storage": self.session_storage.get_storage_stats(),
            "data_aggregator": self.data_aggregator.get_aggregation_stats()
        }


def parse_date(value: str) -> date:
    """argparse type for YYYY-MM-DD dates."""
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD")


def add_selection_arguments(parser: argparse.ArgumentParser) -> None:
    """Session, station, sensor and date selection shared by stats and watch."""
    parser.add_argument("session_id", help="Session identifier")
    parser.add_argument(
        "--station",
        type=int,
        required=True,
        help="Station identifier"
    )
    parser.add_argument(
        "--sensor",
        type=int,
        action="append",
        required=True,
        dest="sensors",
        help="Sensor identifier (repeatable)"
    )
    parser.add_argument(
        "--date",
        type=parse_date,
        action="append",
        required=True,
        dest="dates",
        help="Date to include, YYYY-MM-DD (repeatable)"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="airwatch",
        description="Air quality station history - stored search sessions and sensor statistics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  airwatch sessions                                  # List stored sessions
  airwatch show 1b4e28ba-2fa1-11d2-883f-0016d3cca427 # Dump one session
  airwatch stats SESSION --station 114 --sensor 642 --date 2024-03-01
  airwatch --config airwatch.yaml watch SESSION --station 114 --sensor 642 --date 2024-03-01
  airwatch export SESSION session.json               # Copy a session record
  airwatch config-export airwatch.yaml               # Write default configuration
  airwatch config-validate airwatch.yaml --strict    # Check a configuration file
        """
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sessions", help="List stored sessions, newest first")

    show_parser = subparsers.add_parser("show", help="Print a stored session as JSON")
    show_parser.add_argument("session_id", help="Session identifier")

    stats_parser = subparsers.add_parser("stats", help="Compute sensor statistics of a session")
    add_selection_arguments(stats_parser)

    watch_parser = subparsers.add_parser(
        "watch",
        help="Recompute statistics periodically, following configuration edits"
    )
    add_selection_arguments(watch_parser)
    watch_parser.add_argument(
        "--interval",
        type=float,
        default=60.0,
        help="Seconds between recomputations (default: 60)"
    )
    watch_parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after this many recomputations (default: run until interrupted)"
    )

    export_parser = subparsers.add_parser("export", help="Copy a session record to a file")
    export_parser.add_argument("session_id", help="Session identifier")
    export_parser.add_argument("output", help="Output JSON path")

    config_parser = subparsers.add_parser("config-export", help="Write the effective configuration")
    config_parser.add_argument("path", help="Output YAML path")

    validate_parser = subparsers.add_parser("config-validate", help="Validate a configuration file")
    validate_parser.add_argument("path", help="YAML path to validate")
    validate_parser.add_argument(
        "--strict",
        action="store_true",
        help="Treat unknown keys as errors"
    )

    return parser


def configure_logging(debug: bool) -> None:
    """Configure structlog console output on stderr."""
    log_level = logging.DEBUG if debug else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    """Async main function."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(args.debug)

    if args.command == "config-validate":
        result = validate_config_file(args.path, strict=args.strict)
        result.print_results(verbose=args.debug)
        return 0 if result.is_valid else 1

    app = AirwatchApplication()
    try:
        app.initialize(config_path=args.config,
                       with_storage=args.command != "config-export",
                       hot_reload=args.command == "watch")
    except ConfigurationError as e:
        logger.error("Failed to load configuration", error=str(e))
        return 1

    if app.configuration.enable_debug_logging and not args.debug:
        configure_logging(True)

    try:
        return await run_command(app, args)
    finally:
        app.shutdown()


async def watch_statistics(app: AirwatchApplication, args: argparse.Namespace) -> int:
    """Recompute statistics every interval and print them when they change."""
    logger.info("Watching session statistics",
               session_id=args.session_id,
               interval=args.interval,
               hot_reload=app.config_manager is not None)

    previous: Optional[Dict[str, Any]] = None
    iteration = 0
    while True:
        report = await app.session_statistics(
            args.session_id, args.station, args.sensors, args.dates
        )
        if report != previous:
            print(json.dumps(report, indent=2, ensure_ascii=False), flush=True)
            previous = report

        iteration += 1
        if args.iterations and iteration >= args.iterations:
            return 0
        await asyncio.sleep(args.interval)


async def run_command(app: AirwatchApplication, args: argparse.Namespace) -> int:
    """Dispatch one subcommand on an initialized application."""
    if args.command == "sessions":
        for line in app.list_sessions():
            print(line)
        return 0

    if args.command == "show":
        record = app.show_session(args.session_id)
        if record is None:
            logger.error("Session not found", session_id=args.session_id)
            return 1
        print(json.dumps(record, indent=2, ensure_ascii=False))
        return 0

    if args.command in ("stats", "watch"):
        if not app.session_storage.session_exists(args.session_id):
            logger.error("Session not found", session_id=args.session_id)
            return 1
        if args.command == "watch":
            return await watch_statistics(app, args)
        report = await app.session_statistics(
            args.session_id, args.station, args.sensors, args.dates
        )
        print(json.dumps(report, indent=2, ensure_ascii=False))
        logger.debug("Status", **app.get_status())
        return 0

    if args.command == "export":
        if not app.export_session(args.session_id, args.output):
            return 1
        logger.info("Session exported successfully", session_id=args.session_id, path=args.output)
        return 0

    if args.command == "config-export":
        try:
            save_config_to_file(app.configuration, args.path)
        except ConfigurationError as e:
            logger.error("Failed to export configuration", error=str(e))
            return 1
        logger.info("Configuration exported successfully", path=args.path)
        return 0

    logger.error("Unknown command", command=args.command)
    return 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    try:
        return asyncio.run(main_async(argv))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
