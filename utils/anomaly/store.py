"""
Collaborator contracts for the analysis engine and an in-memory store.

The engine reads sightings and exclusion membership through these
protocols and hands finished anomaly records to a sink.
"""

from __future__ import annotations

import threading
from typing import Iterable, Optional, Protocol, runtime_checkable

from .models import AnomalyDetection, DeviceCategory, Sighting


@runtime_checkable
class SightingSource(Protocol):
    """Read access to sighting history."""

    def sightings_for_device(
        self, address: str, start_time: int, end_time: int,
    ) -> list[Sighting]: ...

    def all_sightings_for_category_in_range(
        self, category: DeviceCategory, start_time: int, end_time: int,
    ) -> list[Sighting]: ...

    def distinct_device_addresses(self, category: DeviceCategory) -> set[str]: ...


@runtime_checkable
class ExclusionList(Protocol):
    """User-managed set of devices exempt from analysis."""

    def is_excluded(self, address: str) -> bool: ...


@runtime_checkable
class AnomalySink(Protocol):
    """Fire-and-forget destination for anomaly records."""

    def insert(self, anomaly: AnomalyDetection) -> Optional[int]: ...


class InMemorySightingStore:
    """
    Thread-safe in-memory implementation of every collaborator protocol.

    Used by tests and by callers that feed sightings directly without a
    database.
    """

    def __init__(
        self,
        sightings: Optional[Iterable[Sighting]] = None,
        excluded: Optional[Iterable[str]] = None,
    ):
        # address -> sightings in insertion order
        self._sightings: dict[str, list[Sighting]] = {}
        self._excluded: set[str] = set(excluded or ())
        self._anomalies: list[AnomalyDetection] = []
        self._lock = threading.Lock()

        if sightings:
            self.add_sightings(sightings)

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def add_sighting(self, sighting: Sighting) -> None:
        with self._lock:
            self._sightings.setdefault(sighting.address, []).append(sighting)

    def add_sightings(self, sightings: Iterable[Sighting]) -> int:
        """Add sightings and return how many were stored."""
        count = 0
        with self._lock:
            for sighting in sightings:
                self._sightings.setdefault(sighting.address, []).append(sighting)
                count += 1
        return count

    # -------------------------------------------------------------------------
    # SightingSource
    # -------------------------------------------------------------------------

    def sightings_for_device(
        self, address: str, start_time: int, end_time: int,
    ) -> list[Sighting]:
        with self._lock:
            return [
                s for s in self._sightings.get(address, ())
                if start_time <= s.timestamp <= end_time
            ]

    def all_sightings_for_category_in_range(
        self, category: DeviceCategory, start_time: int, end_time: int,
    ) -> list[Sighting]:
        with self._lock:
            result = [
                s for device in self._sightings.values() for s in device
                if s.category == category and start_time <= s.timestamp <= end_time
            ]
        result.sort(key=lambda s: s.timestamp)
        return result

    def distinct_device_addresses(self, category: DeviceCategory) -> set[str]:
        with self._lock:
            return {
                address for address, device in self._sightings.items()
                if any(s.category == category for s in device)
            }

    # -------------------------------------------------------------------------
    # ExclusionList
    # -------------------------------------------------------------------------

    def is_excluded(self, address: str) -> bool:
        with self._lock:
            return address in self._excluded

    def exclude(self, address: str) -> None:
        with self._lock:
            self._excluded.add(address)

    def include(self, address: str) -> None:
        with self._lock:
            self._excluded.discard(address)

    # -------------------------------------------------------------------------
    # AnomalySink
    # -------------------------------------------------------------------------

    def insert(self, anomaly: AnomalyDetection) -> int:
        with self._lock:
            self._anomalies.append(anomaly)
            anomaly.id = len(self._anomalies)
            return anomaly.id

    @property
    def anomalies(self) -> list[AnomalyDetection]:
        """Snapshot of inserted anomaly records."""
        with self._lock:
            return list(self._anomalies)

    def clear(self) -> None:
        """Drop all sightings, exclusions and anomalies."""
        with self._lock:
            self._sightings.clear()
            self._excluded.clear()
            self._anomalies.clear()
