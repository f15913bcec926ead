"""
Reference Index Builder
=======================
Compiles the loaded reference tables into constant-time lookups for the joins
the trace engine performs:

- trip by trip_id
- route by route_id
- stop by stop_id
- stop_id by (trip_id, stop_sequence)
- English translation by record_id
- English translation by field_value

A missing key is an ordinary outcome: every lookup returns ``None`` and the
caller decides what to do.

Duplicate keys resolve last-write-wins: the last row parsed for a key replaces
earlier ones. The tie-break lives in :func:`last_write_wins` and the number of
overwritten keys is reported per index when the index is built.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, Optional, Tuple, TypeVar

import structlog

from src.core.exceptions import ReferenceDataError
from src.engine.reference_tables import ReferenceTables, Row

logger = structlog.get_logger(__name__)

ENGLISH = "en"

K = TypeVar('K', bound=Hashable)
V = TypeVar('V')


def last_write_wins(pairs: Iterable[Tuple[K, V]]) -> Tuple[Dict[K, V], int]:
    """
    Collect key/value pairs into a dict, later pairs replacing earlier ones.

    Args:
        pairs: Key/value pairs in table order.

    Returns:
        The resulting mapping and the number of pairs that overwrote a key
        already present.
    """
    mapping: Dict[K, V] = {}
    overwritten = 0
    for key, value in pairs:
        if key in mapping:
            overwritten += 1
        mapping[key] = value
    return mapping, overwritten


def _stop_time_pairs(stop_times: Iterable[Row]) -> Iterable[Tuple[Tuple[str, int], str]]:
    for row in stop_times:
        raw_sequence = row['stop_sequence'].strip()
        try:
            sequence = int(raw_sequence)
        except ValueError:
            raise ReferenceDataError(
                f"stop_times.txt has non-integer stop_sequence {raw_sequence!r} "
                f"for trip {row['trip_id']}",
                table='stop_times'
            )
        yield (row['trip_id'], sequence), row['stop_id']


@dataclass(frozen=True)
class ReferenceIndex:
    """Read-only lookups over the static GTFS tables."""
    trips_by_id: Dict[str, Row]
    routes_by_id: Dict[str, Row]
    stops_by_id: Dict[str, Row]
    stop_ids_by_trip_sequence: Dict[Tuple[str, int], str]
    translations_by_record_id: Dict[str, str]
    translations_by_field_value: Dict[str, str]

    @classmethod
    def build(cls, tables: ReferenceTables) -> "ReferenceIndex":
        """
        Build every lookup from the parsed tables.

        Pure and deterministic: identical tables always produce equal indices.

        Raises:
            ReferenceDataError: If stop_times holds a non-integer stop_sequence.
        """
        english = [row for row in tables.translations if row['language'] == ENGLISH]

        builds = {
            'trips_by_id': last_write_wins(
                (row['trip_id'], row) for row in tables.trips
            ),
            'routes_by_id': last_write_wins(
                (row['route_id'], row) for row in tables.routes
            ),
            'stops_by_id': last_write_wins(
                (row['stop_id'], row) for row in tables.stops
            ),
            'stop_ids_by_trip_sequence': last_write_wins(
                _stop_time_pairs(tables.stop_times)
            ),
            'translations_by_record_id': last_write_wins(
                (row['record_id'], row['translation']) for row in english
            ),
            'translations_by_field_value': last_write_wins(
                (row['field_value'], row['translation']) for row in english
            ),
        }

        index = cls(**{name: mapping for name, (mapping, _) in builds.items()})

        logger.info(
            "reference_index_built",
            sizes=index.summary(),
            overwritten_keys={
                name: overwritten
                for name, (_, overwritten) in builds.items()
                if overwritten
            }
        )

        return index

    def trip(self, trip_id: str) -> Optional[Row]:
        return self.trips_by_id.get(trip_id)

    def route(self, route_id: str) -> Optional[Row]:
        return self.routes_by_id.get(route_id)

    def stop(self, stop_id: str) -> Optional[Row]:
        return self.stops_by_id.get(stop_id)

    def stop_id_for(self, trip_id: str, stop_sequence: int) -> Optional[str]:
        """Stop served at ``stop_sequence`` of ``trip_id`` in the static schedule."""
        return self.stop_ids_by_trip_sequence.get((trip_id, stop_sequence))

    def translation_by_record_id(self, record_id: str) -> Optional[str]:
        return self.translations_by_record_id.get(record_id)

    def translation_by_field_value(self, field_value: str) -> Optional[str]:
        return self.translations_by_field_value.get(field_value)

    def summary(self) -> Dict[str, int]:
        """Number of keys held by each lookup."""
        return {
            'trips': len(self.trips_by_id),
            'routes': len(self.routes_by_id),
            'stops': len(self.stops_by_id),
            'stop_times': len(self.stop_ids_by_trip_sequence),
            'translations_by_record_id': len(self.translations_by_record_id),
            'translations_by_field_value': len(self.translations_by_field_value),
        }
