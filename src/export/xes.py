"""
XES Log Serializer
==================
Renders reconstructed traces as an IEEE XES event log for process-mining tools
(ProM, PM4Py, Disco).

Document layout::

    <log xes.version="1.0" xes.features="nested-attributes"
         openxes.version="1.0RC7" xmlns="http://www.xes-standard.org/">
      <extension name="Time" prefix="time" uri=".../time.xesext"/>
      <extension name="Concept" prefix="concept" uri=".../concept.xesext"/>
      <string key="concept:name" value="ToeiBus"/>
      <trace>
        <string key="concept:name" value="<vehicle id>"/>
        <string key="tripId" .../> <string key="routeId" .../>
        <string key="lineName" .../>
        <event>
          <string key="concept:name" value="currentStopSequenceChanged"/>
          <date key="time:timestamp" value="2025-10-30T13:21:00.000Z"/>
          <int key="stopSequence" value="2"/>
          <string key="stopId" .../> <string key="stopName" .../>
        </event>
      </trace>
    </log>
"""

import os
import tempfile
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

import structlog

from src.engine.traces import EVENT_NAME, Trace

logger = structlog.get_logger(__name__)

XES_NAMESPACE = "http://www.xes-standard.org/"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

EXTENSIONS = (
    ("Time", "time", "http://www.xes-standard.org/time.xesext"),
    ("Concept", "concept", "http://www.xes-standard.org/concept.xesext"),
)


def to_iso8601(epoch_seconds: str) -> str:
    """Epoch seconds (text) to UTC ISO-8601 with milliseconds, e.g. ``1970-01-01T00:03:20.000Z``."""
    moment = datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f"{moment.microsecond // 1000:03d}Z"


def _attribute(parent: ET.Element, kind: str, key: str, value: object) -> ET.Element:
    return ET.SubElement(parent, kind, {'key': key, 'value': str(value)})


def build_xes_document(feed_name: str, traces: Iterable[Trace]) -> ET.Element:
    """
    Build the XES element tree for one feed.

    Traces without events are left out.
    """
    log = ET.Element('log', {
        'xes.version': '1.0',
        'xes.features': 'nested-attributes',
        'openxes.version': '1.0RC7',
        'xmlns': XES_NAMESPACE,
    })

    for name, prefix, uri in EXTENSIONS:
        ET.SubElement(log, 'extension', {'name': name, 'prefix': prefix, 'uri': uri})

    _attribute(log, 'string', 'concept:name', feed_name)

    for trace in traces:
        if not trace.events:
            continue

        trace_element = ET.SubElement(log, 'trace')
        _attribute(trace_element, 'string', 'concept:name', trace.trace_id)
        _attribute(trace_element, 'string', 'tripId', trace.trip_id)
        _attribute(trace_element, 'string', 'routeId', trace.route_id)
        _attribute(trace_element, 'string', 'lineName', trace.line_name)

        for event in trace.events:
            event_element = ET.SubElement(trace_element, 'event')
            _attribute(event_element, 'string', 'concept:name', EVENT_NAME)
            _attribute(event_element, 'date', 'time:timestamp', to_iso8601(event.timestamp))
            _attribute(event_element, 'int', 'stopSequence', event.stop_sequence)
            _attribute(event_element, 'string', 'stopId', event.stop_id)
            _attribute(event_element, 'string', 'stopName', event.stop_name)

    return log


def render_xes(feed_name: str, traces: Iterable[Trace]) -> str:
    """Indented XES document with a UTF-8 XML declaration."""
    log = build_xes_document(feed_name, traces)
    ET.indent(log, space="  ")
    return XML_DECLARATION + ET.tostring(log, encoding='unicode') + '\n'


def write_xes(output_path: Path, feed_name: str, traces: Iterable[Trace]) -> Path:
    """
    Write the XES document for one feed in a single write.

    The document goes to a temporary file next to ``output_path`` that is
    then renamed over it, so a failed write never leaves a truncated log.

    Returns:
        The path written.
    """
    traces = list(traces)
    document = render_xes(feed_name, traces)

    output_path = Path(output_path)
    temp_file = tempfile.NamedTemporaryFile(
        'w',
        encoding='utf-8',
        dir=output_path.parent,
        prefix=f".{output_path.name}.",
        suffix='.tmp',
        delete=False
    )
    temp_path = Path(temp_file.name)
    try:
        with temp_file:
            temp_file.write(document)
        os.replace(temp_path, output_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

    logger.info(
        "xes_written",
        feed=feed_name,
        path=str(output_path),
        traces=sum(1 for trace in traces if trace.events),
        events=sum(len(trace.events) for trace in traces)
    )
    return output_path
