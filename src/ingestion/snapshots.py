"""
Snapshot Stream Reader
======================
Reads the JSON-lines files written by the GTFS-RT collector and yields one
:class:`Snapshot` per vehicle observation, in file order then line order.

Two line shapes are understood:

1. A decoded GTFS-Realtime ``FeedMessage`` (what the collector appends every
   poll), whose ``entity`` list holds vehicle positions::

       {"header": {...}, "entity": [{"id": "100009150", "vehicle": {
           "trip": {"tripId": "100009150", "routeId": ""},
           "currentStopSequence": 1, "timestamp": "1761830460", ...}}]}

   The vehicle id is the entity id. Entities without a vehicle payload
   (trip updates, alerts) carry no position and are ignored.

2. A flat normalized vehicle position, one per line::

       {"vehicle_id": "V1", "trip_id": "T1", "route_id": null,
        "current_stop_sequence": 3, "timestamp": 1761830460}

File selection is a permissive substring match on the file name, injected as a
predicate so ordering and selection can be tested without a filesystem. Files
are processed in lexical order, which is chronological for the collector's
``YYYY-MM-DD-<feed>.jsonl`` names.

A line that cannot be parsed aborts the run: an incomplete log is worse than
no log.
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import structlog
from tqdm import tqdm

from src.core.exceptions import SnapshotParseError

logger = structlog.get_logger(__name__)

FileSelector = Callable[[str], bool]


@dataclass(frozen=True)
class Snapshot:
    """One polled observation of a vehicle."""
    vehicle_id: str
    trip_id: str
    route_id: str
    stop_sequence: int
    timestamp: str  # epoch seconds, as text


def feed_file_selector(feed_name: str) -> FileSelector:
    """Select files whose name contains ``<feed_name>.jsonl``."""
    pattern = f"{feed_name}.jsonl"
    return lambda filename: pattern in filename


def select_files(filenames: Iterable[str], selector: FileSelector) -> List[str]:
    """Filter file names with ``selector`` and order them lexically."""
    return sorted(name for name in filenames if selector(name))


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _stop_sequence(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        raise SnapshotParseError(f"Invalid stop sequence: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise SnapshotParseError(f"Invalid stop sequence: {value!r}")


def _timestamp(value: Any) -> str:
    text = _text(value).strip()
    if not (text.isascii() and text.isdigit()):
        raise SnapshotParseError(f"Invalid epoch timestamp: {value!r}")
    try:
        datetime.fromtimestamp(int(text), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise SnapshotParseError(f"Epoch timestamp out of range: {value!r}")
    return text


def _from_entity(entity: Dict[str, Any]) -> Optional[Snapshot]:
    vehicle = entity.get('vehicle')
    if not vehicle:
        return None

    try:
        trip = vehicle.get('trip') or {}
        return Snapshot(
            vehicle_id=_text(entity['id']),
            trip_id=_text(trip.get('tripId')),
            route_id=_text(trip.get('routeId')),
            stop_sequence=_stop_sequence(vehicle.get('currentStopSequence')),
            timestamp=_timestamp(vehicle.get('timestamp'))
        )
    except (KeyError, AttributeError) as e:
        raise SnapshotParseError(f"Malformed feed entity: {e!r}")


def _from_flat_record(record: Dict[str, Any]) -> Snapshot:
    try:
        return Snapshot(
            vehicle_id=_text(record['vehicle_id']),
            trip_id=_text(record.get('trip_id')),
            route_id=_text(record.get('route_id')),
            stop_sequence=_stop_sequence(record.get('current_stop_sequence')),
            timestamp=_timestamp(record.get('timestamp'))
        )
    except KeyError as e:
        raise SnapshotParseError(f"Missing field {e} in vehicle position record")


def parse_snapshot_line(line: str) -> List[Snapshot]:
    """
    Parse one JSON line into the snapshots it contains.

    Args:
        line: A FeedMessage object or a flat vehicle position record.

    Returns:
        Snapshots in entity order (a FeedMessage may hold zero or many).

    Raises:
        SnapshotParseError: If the line is not valid JSON or lacks fields.
    """
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise SnapshotParseError(f"Invalid JSON: {e}")

    if not isinstance(payload, dict):
        raise SnapshotParseError("Snapshot line must be a JSON object")

    if 'entity' in payload:
        entities = payload['entity'] or []
        if not isinstance(entities, list):
            raise SnapshotParseError("'entity' must be a list")
        snapshots: List[Snapshot] = []
        for entity in entities:
            if not isinstance(entity, dict):
                raise SnapshotParseError("Feed entity must be a JSON object")
            snapshot = _from_entity(entity)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    if 'vehicle_id' in payload:
        return [_from_flat_record(payload)]

    raise SnapshotParseError("Line is neither a FeedMessage nor a vehicle position record")


def iter_snapshot_lines(lines: Iterable[str], source: str = "<lines>") -> Iterator[Snapshot]:
    """
    Lazily parse snapshots from an iterable of lines.

    Whitespace-only lines are ignored. Parse errors are re-raised with the
    source name and 1-based line number.
    """
    for line_number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            snapshots = parse_snapshot_line(line)
        except SnapshotParseError as e:
            raise SnapshotParseError(str(e), path=source, line_number=line_number)
        logger.debug(
            "snapshot_line_parsed",
            source=source,
            line=line_number,
            snapshots=len(snapshots)
        )
        yield from snapshots


def decode_lines(raw_lines: Iterable[bytes], source: str = "<lines>") -> Iterator[str]:
    """
    Decode raw lines as UTF-8, one line at a time.

    Raises:
        SnapshotParseError: On invalid UTF-8 or a read failure, with the
            source name and 1-based line number.
    """
    line_number = 0
    lines = iter(raw_lines)
    while True:
        try:
            raw = next(lines)
        except StopIteration:
            return
        except OSError as e:
            raise SnapshotParseError(f"Read failed: {e}", path=source, line_number=line_number + 1)
        line_number += 1
        try:
            text = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise SnapshotParseError(f"Invalid UTF-8: {e}", path=source, line_number=line_number)
        yield text


class SnapshotReader:
    """
    Restartable, lazy sequence of snapshots from a directory of JSONL files.

    Each iteration re-lists the directory and re-reads the selected files, so
    one reader can be consumed once per run.

    Usage:
        reader = SnapshotReader(Path("output"), feed_file_selector("ToeiBus"))
        for snapshot in reader:
            ...
    """

    def __init__(
        self,
        directory: Path,
        selector: FileSelector,
        show_progress: bool = False
    ) -> None:
        """
        Args:
            directory: Directory holding the collected snapshot files.
            selector: Predicate on file names choosing this feed's files.
            show_progress: Display a tqdm progress bar over the files.
        """
        self.directory = Path(directory)
        self.selector = selector
        self.show_progress = show_progress

    def files(self) -> List[Path]:
        """Selected snapshot files in processing order."""
        names = [
            name for name in os.listdir(self.directory)
            if (self.directory / name).is_file()
        ]
        return [self.directory / name for name in select_files(names, self.selector)]

    def __iter__(self) -> Iterator[Snapshot]:
        files = self.files()
        if not files:
            logger.warning("no_snapshot_files_selected", directory=str(self.directory))

        for path in tqdm(files, desc="Reading snapshots", disable=not self.show_progress):
            logger.info("snapshot_file_processing", file=path.name)
            try:
                handle = open(path, 'rb')
            except OSError as e:
                raise SnapshotParseError(f"Cannot open snapshot file: {e}", path=path.name)
            with handle:
                yield from iter_snapshot_lines(decode_lines(handle, path.name), source=path.name)
