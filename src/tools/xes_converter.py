#!/usr/bin/env python3
"""
Snapshot to XES Converter
=========================
Converts the collected GTFS-Realtime vehicle snapshots of one feed into an XES
process-mining log, one trace per vehicle and one event per stop transition.

Pipeline:
- Load the feed's static GTFS tables (directory or ZIP)
- Build the reference lookups
- Stream the feed's ``*<feed>.jsonl`` snapshot files in chronological order
- Reconstruct per-vehicle traces
- Write ``<feed>.xes``

Usage:
    python -m src.tools.xes_converter --feed ToeiBus \\
        --input-dir output --static ToeiBus-static --output output/ToeiBus.xes
"""

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

import structlog

from src.core.config import FeedConfig
from src.core.exceptions import ConverterError
from src.core.log_setup import configure_logging
from src.engine.reference_index import ReferenceIndex
from src.engine.reference_tables import load_reference_tables
from src.engine.traces import TraceReconstructionEngine
from src.export.xes import write_xes
from src.ingestion.snapshots import Snapshot, SnapshotReader, feed_file_selector

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConversionResult:
    """Summary of one feed conversion."""
    feed: str
    output_path: Path
    traces: int
    events: int
    stats: Dict[str, object]


class XESConverter:
    """
    Converts the snapshots of one feed to an XES log.

    This class handles the complete conversion process:
    1. Validating the feed configuration
    2. Loading static reference data and building lookups
    3. Reconstructing traces from the snapshot stream
    4. Writing the XES document
    """

    def __init__(
        self,
        config: FeedConfig,
        show_progress: bool = False,
        reader: Optional[Iterable[Snapshot]] = None
    ) -> None:
        """
        Initialize the converter.

        Args:
            config: Feed settings (name, input directory, output path, static source).
            show_progress: Display a progress bar while reading snapshot files.
            reader: Snapshot source; defaults to the feed's files in ``config.input_dir``.
        """
        self.config = config
        self.show_progress = show_progress
        self.reader = reader
        self.index: Optional[ReferenceIndex] = None

    def load_reference_data(self) -> ReferenceIndex:
        """Load the static tables and build the lookups."""
        tables = load_reference_tables(self.config.static_source)
        self.index = ReferenceIndex.build(tables)
        return self.index

    def convert(self) -> ConversionResult:
        """
        Execute the complete conversion.

        Raises:
            ConfigurationError: Invalid settings, raised before any I/O.
            ReferenceDataError: Static tables missing or invalid.
            SnapshotParseError: A snapshot line could not be parsed.
        """
        self.config.validate()
        logger.info("feed_conversion_started", feed=self.config.name)

        index = self.load_reference_data()

        reader = self.reader
        if reader is None:
            reader = SnapshotReader(
                self.config.input_dir,
                feed_file_selector(self.config.name),
                show_progress=self.show_progress
            )

        engine = TraceReconstructionEngine(self.config.name, index)
        traces = engine.run(reader)

        write_xes(self.config.output_path, self.config.name, traces)

        result = ConversionResult(
            feed=self.config.name,
            output_path=self.config.output_path,
            traces=len(traces),
            events=sum(len(trace.events) for trace in traces),
            stats=engine.stats.as_dict()
        )

        logger.info(
            "feed_conversion_completed",
            feed=result.feed,
            output=str(result.output_path),
            traces=result.traces,
            events=result.events,
            stats=result.stats
        )
        return result


def main() -> None:
    """
    CLI entry point for converting a single feed.

    Parses command-line arguments and executes the conversion.
    """
    parser = argparse.ArgumentParser(
        description="Convert collected GTFS-RT vehicle snapshots of one feed to an XES event log",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --feed ToeiBus --input-dir output --static ToeiBus-static
  %(prog)s --feed ToeiTrain --input-dir output --static gtfs/ToeiTrain.zip --output logs/train.xes

Input:
  - Snapshot files whose name contains <feed>.jsonl, e.g. 2025-10-30-ToeiBus.jsonl
  - Static GTFS directory or ZIP with trips, routes, stops, stop_times, translations
        """
    )

    parser.add_argument('--feed', required=True, help='Feed name, e.g. ToeiBus')
    parser.add_argument(
        '--input-dir',
        type=Path,
        required=True,
        help='Directory containing the collected snapshot files'
    )
    parser.add_argument(
        '--static',
        type=Path,
        default=None,
        help='Static GTFS directory or ZIP (default: <feed>-static)'
    )
    parser.add_argument(
        '--output',
        type=Path,
        default=None,
        help='Output XES file (default: <input-dir>/<feed>.xes)'
    )
    parser.add_argument('--log-level', default='INFO', help='Log level (default: INFO)')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')

    args = parser.parse_args()
    configure_logging(args.log_level)

    config = FeedConfig(
        name=args.feed,
        input_dir=args.input_dir,
        output_path=args.output or args.input_dir / f"{args.feed}.xes",
        static_source=args.static or Path(f"{args.feed}-static")
    )

    try:
        XESConverter(config, show_progress=not args.no_progress).convert()
    except ConverterError as e:
        logger.error("feed_conversion_failed", feed=args.feed, error=str(e))
        sys.exit(1)


if __name__ == '__main__':
    main()
