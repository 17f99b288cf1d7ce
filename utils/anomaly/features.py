"""
Feature extraction for the isolation forest.

Turns a device's sighting history into a fixed-size vector summarising
temporal, geographic and signal behaviour.
"""

from __future__ import annotations

import math
import statistics
from collections import Counter
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from .constants import (
    FEATURE_SCALE_COUNT,
    FEATURE_SCALE_DISTANCE_M,
    FEATURE_SCALE_ENTROPY,
    FEATURE_SCALE_FREQUENCY,
    FEATURE_SCALE_INTERVAL_MS,
    FEATURE_SCALE_LOCATIONS,
    FEATURE_SCALE_SIGNAL_DB,
    HOURS_PER_DAY,
    MS_PER_HOUR,
)
from .distance import consecutive_distances
from .models import Sighting

FEATURE_NAMES = (
    'detection_count',
    'mean_interval',
    'std_dev_interval',
    'frequency',
    'unique_locations',
    'mean_distance',
    'max_distance',
    'mean_signal_strength',
    'std_dev_signal_strength',
    'hour_entropy',
)


def sort_sightings(sightings: Iterable[Sighting]) -> list[Sighting]:
    """Return sightings ordered by timestamp (storage order is not trusted)."""
    return sorted(sightings, key=lambda s: s.timestamp)


@dataclass(frozen=True)
class DeviceFeatures:
    """Behavioural summary of one device's sightings."""

    detection_count: float
    mean_interval: float
    std_dev_interval: float
    frequency: float  # sightings per hour
    unique_locations: float
    mean_distance: float
    max_distance: float
    mean_signal_strength: float
    std_dev_signal_strength: float
    hour_entropy: float

    def to_array(self) -> np.ndarray:
        """
        Normalize into a vector with every component in [0, 1].

        Each feature is scaled by a fixed constant for its expected
        real-world range and then clipped.
        """
        raw = np.array([
            self.detection_count / FEATURE_SCALE_COUNT,
            self.mean_interval / FEATURE_SCALE_INTERVAL_MS,
            self.std_dev_interval / FEATURE_SCALE_INTERVAL_MS,
            self.frequency / FEATURE_SCALE_FREQUENCY,
            self.unique_locations / FEATURE_SCALE_LOCATIONS,
            self.mean_distance / FEATURE_SCALE_DISTANCE_M,
            self.max_distance / FEATURE_SCALE_DISTANCE_M,
            abs(self.mean_signal_strength) / FEATURE_SCALE_SIGNAL_DB,
            abs(self.std_dev_signal_strength) / FEATURE_SCALE_SIGNAL_DB,
            self.hour_entropy / FEATURE_SCALE_ENTROPY,
        ], dtype=float)
        return np.clip(np.nan_to_num(raw, nan=0.0), 0.0, 1.0)

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in FEATURE_NAMES}


def hour_entropy(timestamps: Iterable[int]) -> float:
    """
    Shannon entropy (nats) of the hour-of-day distribution.

    Returns 0.0 when there are no timestamps.
    """
    hours = [(ts // MS_PER_HOUR) % HOURS_PER_DAY for ts in timestamps]
    if not hours:
        return 0.0

    total = len(hours)
    entropy = 0.0
    for count in Counter(hours).values():
        probability = count / total
        entropy -= probability * math.log(probability)
    return entropy


def _mean_and_pstdev(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    mean = statistics.fmean(values)
    return mean, statistics.pstdev(values, mu=mean)


def extract_device_features(sightings: Iterable[Sighting]) -> DeviceFeatures:
    """
    Extract features from one device's sightings.

    Args:
        sightings: At least one sighting of the same device, in any order.

    Returns:
        DeviceFeatures for the device.
    """
    ordered = sort_sightings(sightings)
    count = len(ordered)

    # Temporal
    intervals = [
        float(abs(b.timestamp - a.timestamp))
        for a, b in zip(ordered, ordered[1:])
    ]
    mean_interval, std_interval = _mean_and_pstdev(intervals)

    # Frequency
    time_span = ordered[-1].timestamp - ordered[0].timestamp if count > 1 else 0
    frequency = count / time_span * MS_PER_HOUR if time_span > 0 else 0.0

    # Geographic
    located = [s for s in ordered if s.has_location]
    distances = consecutive_distances(located)
    unique_locations = len({(s.latitude, s.longitude) for s in located})
    mean_distance = statistics.fmean(distances) if distances else 0.0
    max_distance = max(distances) if distances else 0.0

    # Signal
    signals = [float(s.signal_strength) for s in ordered if s.signal_strength is not None]
    mean_signal, std_signal = _mean_and_pstdev(signals)

    return DeviceFeatures(
        detection_count=float(count),
        mean_interval=mean_interval,
        std_dev_interval=std_interval,
        frequency=frequency,
        unique_locations=float(unique_locations),
        mean_distance=mean_distance,
        max_distance=max_distance,
        mean_signal_strength=mean_signal,
        std_dev_signal_strength=std_signal,
        hour_entropy=hour_entropy(s.timestamp for s in ordered),
    )


def group_by_address(sightings: Iterable[Sighting]) -> dict[str, list[Sighting]]:
    """Group sightings per device address, keeping first-seen order of devices."""
    groups: dict[str, list[Sighting]] = {}
    for sighting in sightings:
        groups.setdefault(sighting.address, []).append(sighting)
    return groups


def extract_features(sightings: Iterable[Sighting]) -> list[DeviceFeatures]:
    """Extract one feature record per device present in the sightings."""
    return [
        extract_device_features(device_sightings)
        for device_sightings in group_by_address(sightings).values()
    ]
