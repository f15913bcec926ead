"""
Reference Table Loader
======================
Loads the static GTFS tables the trace engine joins against:

- trips.txt         (trip_id, route_id, trip_headsign)
- routes.txt        (route_id, route_long_name)
- stops.txt         (stop_id, stop_name)
- stop_times.txt    (trip_id, stop_sequence, stop_id)
- translations.txt  (record_id, field_value, translation, language)

Tables are read either from an extracted GTFS directory (``ToeiBus-static/``)
or directly from a GTFS static ZIP file. Every cell is kept as text; empty
cells stay empty strings rather than becoming NaN.

Any problem with a table is fatal: the converter cannot produce a correct log
without complete reference data.
"""

import zipfile
from dataclasses import dataclass
from io import TextIOWrapper
from pathlib import Path
from typing import IO, Dict, List, Tuple

import pandas as pd
import structlog

from src.core.exceptions import ReferenceDataError

logger = structlog.get_logger(__name__)

Row = Dict[str, str]

REQUIRED_COLUMNS: Dict[str, Tuple[str, ...]] = {
    'trips': ('trip_id', 'route_id', 'trip_headsign'),
    'routes': ('route_id', 'route_long_name'),
    'stops': ('stop_id', 'stop_name'),
    'stop_times': ('trip_id', 'stop_sequence', 'stop_id'),
    'translations': ('record_id', 'field_value', 'translation', 'language'),
}


@dataclass(frozen=True)
class ReferenceTables:
    """Parsed static tables, one list of row records per table."""
    trips: List[Row]
    routes: List[Row]
    stops: List[Row]
    stop_times: List[Row]
    translations: List[Row]


def parse_table(handle: IO[str], table: str) -> List[Row]:
    """
    Parse one delimited table into row records.

    Only the required columns are kept. Extra columns are ignored.

    Args:
        handle: Text stream positioned at the header row.
        table: Table name, a key of REQUIRED_COLUMNS.

    Returns:
        Rows in file order.

    Raises:
        ReferenceDataError: If the table is empty, malformed or misses a column.
    """
    required = REQUIRED_COLUMNS[table]

    try:
        df = pd.read_csv(
            handle,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True
        )
    except pd.errors.EmptyDataError:
        raise ReferenceDataError(f"{table}.txt is empty", table=table)
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise ReferenceDataError(f"Cannot parse {table}.txt: {e}", table=table)

    missing = [col for col in required if col not in df.columns]
    if missing:
        raise ReferenceDataError(
            f"{table}.txt missing required column(s): {', '.join(missing)}",
            table=table
        )

    return df[list(required)].to_dict(orient='records')


def _load_from_directory(directory: Path) -> Dict[str, List[Row]]:
    tables: Dict[str, List[Row]] = {}
    for table in REQUIRED_COLUMNS:
        path = directory / f"{table}.txt"
        if not path.is_file():
            raise ReferenceDataError(f"{table}.txt not found in {directory}", table=table)
        try:
            with open(path, 'r', encoding='utf-8-sig', newline='') as f:
                tables[table] = parse_table(f, table)
        except OSError as e:
            raise ReferenceDataError(f"Cannot read {path}: {e}", table=table)
    return tables


def _load_from_zip(zip_path: Path) -> Dict[str, List[Row]]:
    tables: Dict[str, List[Row]] = {}
    try:
        with zipfile.ZipFile(zip_path, 'r') as zip_ref:
            names = zip_ref.namelist()
            for table in REQUIRED_COLUMNS:
                member = f"{table}.txt"
                if member not in names:
                    raise ReferenceDataError(
                        f"{member} not found in GTFS ZIP file {zip_path}",
                        table=table
                    )
                with zip_ref.open(member) as raw:
                    text = TextIOWrapper(raw, encoding='utf-8-sig', newline='')
                    tables[table] = parse_table(text, table)
    except zipfile.BadZipFile:
        raise ReferenceDataError(f"Invalid ZIP file: {zip_path}")
    return tables


def load_reference_tables(source: Path) -> ReferenceTables:
    """
    Load all five reference tables from a GTFS directory or ZIP file.

    Args:
        source: Directory containing the ``*.txt`` tables, or a ``.zip`` file.

    Returns:
        The parsed tables.

    Raises:
        ReferenceDataError: If the source or any table is missing or invalid.
    """
    source = Path(source)

    if source.is_dir():
        tables = _load_from_directory(source)
    elif source.is_file():
        tables = _load_from_zip(source)
    else:
        raise ReferenceDataError(f"Static GTFS source not found: {source}")

    for table, rows in tables.items():
        logger.info(
            "reference_table_loaded",
            source=str(source),
            table=table,
            rows=len(rows)
        )

    return ReferenceTables(**tables)
