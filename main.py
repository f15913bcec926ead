#!/usr/bin/env python3
"""
Transit XES - Main Entry Point
==============================
Batch conversion of collected GTFS-Realtime vehicle snapshots into XES
process-mining logs, one log per configured feed.

Feeds are independent: each gets its own reference index, vehicle state and
output file. They are converted one after another; a feed that fails is
reported and the remaining feeds still run.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from src.core.config import DEFAULT_CONFIG_PATH, AppConfig, load_app_config
from src.core.exceptions import ConfigurationError, ConverterError
from src.core.log_setup import configure_logging
from src.tools.xes_converter import ConversionResult, XESConverter


class TransitXES:
    """
    Orchestrates the conversion of every configured feed.
    """

    def __init__(
        self,
        config_path: Path = DEFAULT_CONFIG_PATH,
        feeds: Optional[List[str]] = None,
        log_level: Optional[str] = None
    ) -> None:
        """
        Args:
            config_path: Path to the YAML configuration file.
            feeds: Restrict the run to these feed names.
            log_level: Override the configured log level.
        """
        self.config: AppConfig = load_app_config(config_path)
        configure_logging(log_level or self.config.log_level)

        self.logger = structlog.get_logger(__name__)
        self.feeds = self.config.select(feeds)
        self.results: List[ConversionResult] = []
        self.failed: List[str] = []

    def run(self) -> bool:
        """
        Convert every selected feed.

        Returns:
            True if all feeds converted successfully.
        """
        self.logger.info("batch_started", feeds=[feed.name for feed in self.feeds])

        for feed in self.feeds:
            converter = XESConverter(feed, show_progress=self.config.show_progress)
            try:
                self.results.append(converter.convert())
            except ConverterError as e:
                self.failed.append(feed.name)
                self.logger.error(
                    "feed_conversion_failed",
                    feed=feed.name,
                    error_type=type(e).__name__,
                    error=str(e)
                )

        self.logger.info(
            "batch_finished",
            converted=[result.feed for result in self.results],
            failed=self.failed
        )
        return not self.failed


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Convert collected GTFS-RT vehicle snapshots to XES event logs"
    )
    parser.add_argument(
        '--config',
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f'Path to the YAML configuration (default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '--feed',
        action='append',
        dest='feeds',
        help='Convert only this feed (repeatable)'
    )
    parser.add_argument('--log-level', default=None, help='Override the configured log level')

    args = parser.parse_args(argv)

    try:
        app = TransitXES(config_path=args.config, feeds=args.feeds, log_level=args.log_level)
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return 1

    return 0 if app.run() else 1


if __name__ == "__main__":
    sys.exit(main())
