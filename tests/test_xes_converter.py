"""
Test Suite for the Snapshot to XES Converter
=============================================
End-to-end conversion of a small feed: static GTFS directory or ZIP,
JSON-lines snapshot files, XES output.
"""

import json
import sys
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path
from unittest.mock import patch

import pytest

from src.core.config import FeedConfig
from src.core.exceptions import ConfigurationError, ReferenceDataError, SnapshotParseError
from src.export.xes import XES_NAMESPACE
from src.ingestion.snapshots import Snapshot
from src.tools import xes_converter
from src.tools.xes_converter import XESConverter

NS = {'xes': XES_NAMESPACE}

STATIC_FILES = {
    'trips.txt': "route_id,service_id,trip_id,trip_headsign\nR1,WD,T1,Shinjuku\n",
    'routes.txt': "route_id,route_short_name,route_long_name\nR1,X,Line X\n",
    'stops.txt': "stop_id,stop_name\nS1,Stop A\nS2,Stop B\nS3,Stop C\n",
    'stop_times.txt': (
        "trip_id,stop_id,stop_sequence\n"
        "T1,S1,1\n"
        "T1,S2,2\n"
        "T1,S3,3\n"
    ),
    'translations.txt': (
        "table_name,field_name,language,translation,record_id,field_value\n"
        "stops,stop_name,en,Stop A (EN),S1,Stop A\n"
        "stops,stop_name,en,Stop B (EN),S2,Stop B\n"
        "routes,route_long_name,en,Line X (EN),R1,Line X\n"
        "trips,trip_headsign,en,For Shinjuku,T1,Shinjuku\n"
    ),
}


def feed_line(*vehicles) -> str:
    return json.dumps({
        'header': {'gtfsRealtimeVersion': '2.0', 'timestamp': '0'},
        'entity': [
            {
                'id': vehicle_id,
                'vehicle': {
                    'trip': {'tripId': trip_id, 'routeId': ''},
                    'currentStopSequence': sequence,
                    'timestamp': str(timestamp),
                },
            }
            for vehicle_id, trip_id, sequence, timestamp in vehicles
        ]
    }) + '\n'


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Collector output directory plus a static GTFS directory."""
    static_dir = tmp_path / 'ToeiTrain-static'
    static_dir.mkdir()
    for name, content in STATIC_FILES.items():
        (static_dir / name).write_text(content, encoding='utf-8')

    output_dir = tmp_path / 'output'
    output_dir.mkdir()
    (output_dir / '2025-10-30-ToeiTrain.jsonl').write_text(
        feed_line(('V1', 'T1', 1, 100), ('V2', 'T1', 1, 100))
        + feed_line(('V1', 'T1', 2, 200), ('V2', 'T1', 1, 200))
    )
    (output_dir / '2025-10-31-ToeiTrain.jsonl').write_text(
        feed_line(('V1', 'T1', 3, 300), ('V2', 'T1', 1, 300), ('V3', '', 1, 300))
    )
    return tmp_path


def feed_config(workspace: Path, **overrides) -> FeedConfig:
    values = {
        'name': 'ToeiTrain',
        'input_dir': workspace / 'output',
        'output_path': workspace / 'output' / 'ToeiTrain.xes',
        'static_source': workspace / 'ToeiTrain-static',
    }
    values.update(overrides)
    return FeedConfig(**values)


class TestXESConverter:
    """Test suite for XESConverter."""

    def test_convert_end_to_end(self, workspace):
        result = XESConverter(feed_config(workspace)).convert()

        assert result.traces == 1
        assert result.events == 1
        assert result.stats['snapshots'] == 7
        assert result.stats['without_trip'] == 1
        assert result.stats['skipped'] == {'stop_translation_missing': 1}

        root = ET.parse(result.output_path).getroot()
        traces = root.findall('xes:trace', NS)
        assert len(traces) == 1

        values = {
            child.attrib['key']: child.attrib['value']
            for child in traces[0]
            if 'key' in child.attrib
        }
        assert values['concept:name'] == 'V1'
        assert values['lineName'] == 'Line X (EN)'

        events = traces[0].findall('xes:event', NS)
        event_values = {child.attrib['key']: child.attrib['value'] for child in events[0]}
        assert event_values == {
            'concept:name': 'currentStopSequenceChanged',
            'time:timestamp': '1970-01-01T00:03:20.000Z',
            'stopSequence': '2',
            'stopId': 'S2',
            'stopName': 'Stop B (EN)',
        }

    def test_convert_from_static_zip(self, workspace):
        zip_path = workspace / 'ToeiTrain.zip'
        with zipfile.ZipFile(zip_path, 'w') as zf:
            for name, content in STATIC_FILES.items():
                zf.writestr(name, content)

        result = XESConverter(feed_config(workspace, static_source=zip_path)).convert()

        assert result.events == 1

    def test_bus_feed_uses_headsign(self, workspace):
        output_dir = workspace / 'output'
        for path in list(output_dir.glob('*ToeiTrain.jsonl')):
            path.rename(output_dir / path.name.replace('ToeiTrain', 'ToeiBus'))

        config = feed_config(
            workspace,
            name='ToeiBus',
            output_path=output_dir / 'ToeiBus.xes'
        )
        result = XESConverter(config).convert()

        root = ET.parse(result.output_path).getroot()
        line_name = root.find("xes:trace/xes:string[@key='lineName']", NS)
        assert line_name.attrib['value'] == 'For Shinjuku'

    def test_injected_reader(self, workspace):
        snapshots = [
            Snapshot('V9', 'T1', '', 1, '10'),
            Snapshot('V9', 'T1', '', 2, '20'),
        ]

        result = XESConverter(feed_config(workspace), reader=snapshots).convert()

        assert result.traces == 1
        assert result.stats['snapshots'] == 2

    def test_invalid_output_directory_fails_before_io(self, workspace):
        config = feed_config(
            workspace,
            output_path=workspace / 'missing' / 'ToeiTrain.xes',
            static_source=workspace / 'does-not-exist'
        )

        with pytest.raises(ConfigurationError):
            XESConverter(config).convert()

    def test_missing_static_data(self, workspace):
        config = feed_config(workspace, static_source=workspace / 'does-not-exist')

        with pytest.raises(ReferenceDataError):
            XESConverter(config).convert()

        assert not (workspace / 'output' / 'ToeiTrain.xes').exists()

    def test_corrupt_snapshot_file_aborts(self, workspace):
        (workspace / 'output' / '2025-11-01-ToeiTrain.jsonl').write_text('{"entity": [\n')

        with pytest.raises(SnapshotParseError):
            XESConverter(feed_config(workspace)).convert()

        assert not (workspace / 'output' / 'ToeiTrain.xes').exists()


class TestCommandLine:
    """Test suite for the single-feed CLI."""

    def test_main_converts_feed(self, workspace, monkeypatch):
        monkeypatch.chdir(workspace)
        argv = [
            'xes_converter',
            '--feed', 'ToeiTrain',
            '--input-dir', 'output',
            '--no-progress',
        ]

        with patch.object(sys, 'argv', argv), patch.object(xes_converter, 'configure_logging'):
            xes_converter.main()

        assert (workspace / 'output' / 'ToeiTrain.xes').exists()

    def test_main_exits_on_error(self, workspace, monkeypatch):
        monkeypatch.chdir(workspace)
        argv = ['xes_converter', '--feed', 'ToeiTrain', '--input-dir', 'nowhere']

        with patch.object(sys, 'argv', argv), patch.object(xes_converter, 'configure_logging'):
            with pytest.raises(SystemExit) as exc_info:
                xes_converter.main()

        assert exc_info.value.code == 1
