"""
Trace Reconstruction Engine
===========================
Turns an ordered stream of vehicle snapshots into per-vehicle traces of
"current stop sequence changed" events, joined against the static GTFS
reference index for English stop and line names.

Per snapshot, in input order:

1. Snapshots without a trip id are ignored.
2. The first snapshot of a vehicle only records a baseline.
3. A snapshot with the same stop sequence as the previous one only refreshes
   the stored state.
4. A changed stop sequence is a transition: the event (and, for the vehicle's
   first resolved transition, the trace) is resolved against the reference
   index. A failed join skips this transition only.
5. The stored state always moves to the latest snapshot, whether or not the
   transition resolved.

Resolution functions are pure and return a :class:`Resolution`; the single
call site in :meth:`TraceReconstructionEngine.process` decides whether to skip
and logs the reason.

Feeds whose name contains ``"Bus"`` key stop translations by stop id and line
names by trip headsign. Every other feed keys both by the raw text being
translated (stop name, route long name). The static data published for the bus
and rail feeds is shaped differently, and no finer rule is evident in it.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Generic, Iterable, List, Optional, TypeVar

import structlog

from src.engine.reference_index import ReferenceIndex
from src.ingestion.snapshots import Snapshot

logger = structlog.get_logger(__name__)

EVENT_NAME = "currentStopSequenceChanged"

T = TypeVar('T')


class SkipReason(Enum):
    """Why a transition produced no event."""
    STOP_TIME_NOT_FOUND = "stop_time_not_found"
    STOP_NOT_FOUND = "stop_not_found"
    STOP_TRANSLATION_MISSING = "stop_translation_missing"
    TRIP_NOT_FOUND = "trip_not_found"
    ROUTE_MISMATCH = "route_mismatch"
    ROUTE_NOT_FOUND = "route_not_found"
    LINE_TRANSLATION_MISSING = "line_translation_missing"


@dataclass(frozen=True)
class Resolution(Generic[T]):
    """Outcome of a reference join: a value, or the reason there is none."""
    value: Optional[T] = None
    reason: Optional[SkipReason] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def success(cls, value: T) -> "Resolution[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, reason: SkipReason, detail: str = "") -> "Resolution[T]":
        return cls(reason=reason, detail=detail)


@dataclass(frozen=True)
class VehicleState:
    """Last seen position of a vehicle."""
    stop_sequence: int
    timestamp: str


@dataclass(frozen=True)
class Event:
    """A vehicle reaching a new stop sequence."""
    stop_sequence: int
    stop_id: str
    stop_name: str
    timestamp: str  # epoch seconds, as text


@dataclass(frozen=True)
class TraceHeader:
    """Case-level attributes resolved on a vehicle's first transition."""
    trip_id: str
    route_id: str
    line_name: str


@dataclass
class Trace:
    """All resolved stop transitions of one vehicle."""
    trace_id: str
    trip_id: str
    route_id: str
    line_name: str
    events: List[Event] = field(default_factory=list)


@dataclass
class ConversionStats:
    """Counters describing one engine run."""
    snapshots: int = 0
    without_trip: int = 0
    baselines: int = 0
    stationary: int = 0
    transitions: int = 0
    events: int = 0
    traces: int = 0
    skipped: Counter = field(default_factory=Counter)

    def as_dict(self) -> Dict[str, object]:
        return {
            'snapshots': self.snapshots,
            'without_trip': self.without_trip,
            'baselines': self.baselines,
            'stationary': self.stationary,
            'transitions': self.transitions,
            'events': self.events,
            'traces': self.traces,
            'skipped': {reason.value: count for reason, count in self.skipped.items()},
        }


def is_bus_feed(feed_name: str) -> bool:
    """Bus feeds are recognised by ``"Bus"`` appearing in the feed name."""
    return "Bus" in feed_name


def resolve_event(
    index: ReferenceIndex,
    bus_feed: bool,
    trip_id: str,
    state: VehicleState
) -> Resolution[Event]:
    """
    Join a transition to its stop and English stop name.

    Args:
        index: Reference lookups.
        bus_feed: Use the bus translation keys (see module docstring).
        trip_id: Trip the vehicle is serving.
        state: The vehicle's new position.
    """
    stop_id = index.stop_id_for(trip_id, state.stop_sequence)
    if stop_id is None:
        return Resolution.failure(
            SkipReason.STOP_TIME_NOT_FOUND,
            f"no stop_times row for sequence {state.stop_sequence}"
        )

    stop = index.stop(stop_id)
    if stop is None:
        return Resolution.failure(SkipReason.STOP_NOT_FOUND, f"stop {stop_id}")

    if bus_feed:
        stop_name = index.translation_by_record_id(stop_id)
    else:
        stop_name = index.translation_by_field_value(stop['stop_name'])
    if stop_name is None:
        return Resolution.failure(
            SkipReason.STOP_TRANSLATION_MISSING,
            f"stop {stop_id} ({stop['stop_name']})"
        )

    return Resolution.success(Event(
        stop_sequence=state.stop_sequence,
        stop_id=stop_id,
        stop_name=stop_name,
        timestamp=state.timestamp
    ))


def resolve_trace_header(
    index: ReferenceIndex,
    bus_feed: bool,
    snapshot: Snapshot
) -> Resolution[TraceHeader]:
    """
    Join a vehicle's trip to its route and English line name.

    A route id reported by the vehicle must agree with the static trip.
    """
    trip = index.trip(snapshot.trip_id)
    if trip is None:
        return Resolution.failure(SkipReason.TRIP_NOT_FOUND, f"trip {snapshot.trip_id}")

    route_id = trip['route_id']
    if snapshot.route_id and snapshot.route_id != route_id:
        return Resolution.failure(
            SkipReason.ROUTE_MISMATCH,
            f"vehicle reports route {snapshot.route_id}, static trip has {route_id}"
        )

    route = index.route(route_id)
    if route is None:
        return Resolution.failure(SkipReason.ROUTE_NOT_FOUND, f"route {route_id}")

    if bus_feed:
        source_text = trip['trip_headsign']
    else:
        source_text = route['route_long_name']
    line_name = index.translation_by_field_value(source_text)
    if line_name is None:
        return Resolution.failure(SkipReason.LINE_TRANSLATION_MISSING, source_text)

    return Resolution.success(TraceHeader(
        trip_id=snapshot.trip_id,
        route_id=route_id,
        line_name=line_name
    ))


class TraceReconstructionEngine:
    """
    Builds per-vehicle traces from an ordered snapshot stream.

    The engine performs no re-sorting: snapshots must arrive in
    non-decreasing time order. All traces are held in memory until the run
    ends, so memory grows with the number of vehicles and emitted events.

    Usage:
        engine = TraceReconstructionEngine("ToeiBus", index)
        traces = engine.run(reader)
    """

    def __init__(self, feed_name: str, index: ReferenceIndex) -> None:
        """
        Args:
            feed_name: Feed being converted; selects the translation keys.
            index: Reference lookups for this feed.
        """
        self.feed_name = feed_name
        self.index = index
        self.bus_feed = is_bus_feed(feed_name)
        self.stats = ConversionStats()
        self._last_state: Dict[str, VehicleState] = {}
        self._traces: Dict[str, Trace] = {}

    @property
    def traces(self) -> List[Trace]:
        """Traces in order of creation."""
        return list(self._traces.values())

    def last_state(self, vehicle_id: str) -> Optional[VehicleState]:
        return self._last_state.get(vehicle_id)

    def process(self, snapshot: Snapshot) -> Optional[Event]:
        """
        Apply one snapshot.

        Returns:
            The event appended to the vehicle's trace, or None.
        """
        self.stats.snapshots += 1

        if not snapshot.trip_id:
            self.stats.without_trip += 1
            return None

        next_state = VehicleState(snapshot.stop_sequence, snapshot.timestamp)
        previous = self._last_state.get(snapshot.vehicle_id)
        self._last_state[snapshot.vehicle_id] = next_state

        if previous is None:
            self.stats.baselines += 1
            return None

        if previous.stop_sequence == next_state.stop_sequence:
            self.stats.stationary += 1
            return None

        self.stats.transitions += 1
        return self._apply_transition(snapshot, next_state)

    def _apply_transition(self, snapshot: Snapshot, state: VehicleState) -> Optional[Event]:
        event = resolve_event(self.index, self.bus_feed, snapshot.trip_id, state)
        if not event.ok:
            self._skip(snapshot, event)
            return None

        trace = self._traces.get(snapshot.vehicle_id)
        if trace is None:
            header = resolve_trace_header(self.index, self.bus_feed, snapshot)
            if not header.ok:
                self._skip(snapshot, header)
                return None
            trace = Trace(
                trace_id=snapshot.vehicle_id,
                trip_id=header.value.trip_id,
                route_id=header.value.route_id,
                line_name=header.value.line_name
            )
            self._traces[snapshot.vehicle_id] = trace
            self.stats.traces += 1
            logger.debug(
                "trace_created",
                feed=self.feed_name,
                vehicle_id=trace.trace_id,
                trip_id=trace.trip_id,
                route_id=trace.route_id,
                line_name=trace.line_name
            )

        trace.events.append(event.value)
        self.stats.events += 1
        return event.value

    def _skip(self, snapshot: Snapshot, outcome: Resolution) -> None:
        self.stats.skipped[outcome.reason] += 1
        logger.warning(
            "transition_skipped",
            feed=self.feed_name,
            vehicle_id=snapshot.vehicle_id,
            trip_id=snapshot.trip_id,
            stop_sequence=snapshot.stop_sequence,
            timestamp=snapshot.timestamp,
            reason=outcome.reason.value,
            detail=outcome.detail
        )

    def run(self, snapshots: Iterable[Snapshot]) -> List[Trace]:
        """Process every snapshot in order and return the resulting traces."""
        for snapshot in snapshots:
            self.process(snapshot)
        return self.traces
