"""
Tests for the Reference Table Loader
=====================================
Tests for src/engine/reference_tables.py
"""

import zipfile
from io import StringIO
from pathlib import Path

import pytest

from src.core.exceptions import ReferenceDataError
from src.engine.reference_tables import (
    REQUIRED_COLUMNS,
    load_reference_tables,
    parse_table
)


GTFS_FILES = {
    'trips.txt': "route_id,service_id,trip_id,trip_headsign\nR1,WD,T1,Shinjuku\n",
    'routes.txt': "route_id,agency_id,route_long_name\nR1,A,Line X\n",
    'stops.txt': "stop_id,stop_name,stop_lat,stop_lon\nS1,Stop A,35.0,139.0\nS2,Stop B,35.1,139.1\n",
    'stop_times.txt': (
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
        "T1,08:00:00,08:00:00,S1,1\n"
        "T1,08:05:00,08:05:00,S2,2\n"
    ),
    'translations.txt': (
        "table_name,field_name,language,translation,record_id,field_value\n"
        "stops,stop_name,en,Stop A (EN),S1,\n"
        "stops,stop_name,ja-Hrkt,すとっぷえー,S1,\n"
        "routes,route_long_name,en,Line X (EN),,Line X\n"
    ),
}


@pytest.fixture
def gtfs_dir(tmp_path: Path) -> Path:
    """Extracted GTFS static directory."""
    directory = tmp_path / "ToeiBus-static"
    directory.mkdir()
    for name, content in GTFS_FILES.items():
        (directory / name).write_text(content, encoding='utf-8')
    return directory


@pytest.fixture
def gtfs_zip(tmp_path: Path) -> Path:
    """GTFS static ZIP file with the same tables."""
    zip_path = tmp_path / "ToeiBus.zip"
    with zipfile.ZipFile(zip_path, 'w') as zf:
        for name, content in GTFS_FILES.items():
            zf.writestr(name, content)
    return zip_path


class TestParseTable:
    """Test suite for parse_table."""

    def test_keeps_only_required_columns(self):
        rows = parse_table(StringIO(GTFS_FILES['stops.txt']), 'stops')

        assert rows == [
            {'stop_id': 'S1', 'stop_name': 'Stop A'},
            {'stop_id': 'S2', 'stop_name': 'Stop B'},
        ]

    def test_values_stay_text(self):
        """Numeric-looking values are not converted."""
        rows = parse_table(StringIO(GTFS_FILES['stop_times.txt']), 'stop_times')

        assert rows[0]['stop_sequence'] == '1'
        assert isinstance(rows[0]['stop_sequence'], str)

    def test_empty_cells_are_empty_strings(self):
        rows = parse_table(StringIO(GTFS_FILES['translations.txt']), 'translations')

        assert rows[0]['field_value'] == ''
        assert rows[2]['record_id'] == ''

    def test_blank_lines_skipped(self):
        content = "stop_id,stop_name\nS1,Stop A\n\n\nS2,Stop B\n"

        rows = parse_table(StringIO(content), 'stops')

        assert [row['stop_id'] for row in rows] == ['S1', 'S2']

    def test_header_only_table_has_no_rows(self):
        assert parse_table(StringIO("stop_id,stop_name\n"), 'stops') == []

    def test_missing_required_column(self):
        with pytest.raises(ReferenceDataError) as exc_info:
            parse_table(StringIO("trip_id,route_id\nT1,R1\n"), 'trips')

        assert exc_info.value.table == 'trips'
        assert 'trip_headsign' in str(exc_info.value)

    def test_empty_file(self):
        with pytest.raises(ReferenceDataError, match="empty"):
            parse_table(StringIO(""), 'routes')

    def test_utf8_names_preserved(self):
        rows = parse_table(StringIO("stop_id,stop_name\nS1,都庁前\n"), 'stops')

        assert rows[0]['stop_name'] == '都庁前'


class TestLoadReferenceTables:
    """Test suite for load_reference_tables."""

    def test_load_from_directory(self, gtfs_dir):
        tables = load_reference_tables(gtfs_dir)

        assert len(tables.trips) == 1
        assert tables.trips[0]['trip_headsign'] == 'Shinjuku'
        assert len(tables.routes) == 1
        assert len(tables.stops) == 2
        assert len(tables.stop_times) == 2
        assert len(tables.translations) == 3

    def test_load_from_zip(self, gtfs_zip):
        tables = load_reference_tables(gtfs_zip)

        assert tables.routes[0] == {'route_id': 'R1', 'route_long_name': 'Line X'}
        assert len(tables.translations) == 3

    def test_directory_and_zip_agree(self, gtfs_dir, gtfs_zip):
        assert load_reference_tables(gtfs_dir) == load_reference_tables(gtfs_zip)

    def test_byte_order_mark_stripped(self, gtfs_dir):
        (gtfs_dir / 'stops.txt').write_bytes(
            b'\xef\xbb\xbfstop_id,stop_name\nS1,Stop A\n'
        )

        tables = load_reference_tables(gtfs_dir)

        assert tables.stops == [{'stop_id': 'S1', 'stop_name': 'Stop A'}]

    def test_missing_source(self, tmp_path):
        with pytest.raises(ReferenceDataError, match="not found"):
            load_reference_tables(tmp_path / "nowhere")

    def test_missing_table_in_directory(self, gtfs_dir):
        (gtfs_dir / 'translations.txt').unlink()

        with pytest.raises(ReferenceDataError) as exc_info:
            load_reference_tables(gtfs_dir)

        assert exc_info.value.table == 'translations'

    def test_missing_table_in_zip(self, tmp_path):
        zip_path = tmp_path / "partial.zip"
        with zipfile.ZipFile(zip_path, 'w') as zf:
            zf.writestr('trips.txt', GTFS_FILES['trips.txt'])

        with pytest.raises(ReferenceDataError, match="routes.txt not found"):
            load_reference_tables(zip_path)

    def test_invalid_zip(self, tmp_path):
        bad_zip = tmp_path / "bad.zip"
        bad_zip.write_text("not a zip file")

        with pytest.raises(ReferenceDataError, match="Invalid ZIP"):
            load_reference_tables(bad_zip)

    def test_every_table_is_required(self):
        assert set(REQUIRED_COLUMNS) == {
            'trips', 'routes', 'stops', 'stop_times', 'translations'
        }
