"""
Great-circle distance helpers for location-bearing sightings.
"""

from __future__ import annotations

import math
from typing import Iterable

from .constants import EARTH_RADIUS_METERS
from .models import Sighting


def haversine_distance(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
) -> float:
    """
    Calculate the great-circle distance between two coordinates.

    Args:
        lat1: Latitude of the first point (degrees).
        lon1: Longitude of the first point (degrees).
        lat2: Latitude of the second point (degrees).
        lon2: Longitude of the second point (degrees).

    Returns:
        Distance in metres.
    """
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    # Rounding can push a fraction past 1.0 for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def sighting_distance(a: Sighting, b: Sighting) -> float:
    """Distance in metres between two location-bearing sightings."""
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def consecutive_distances(sightings: Iterable[Sighting]) -> list[float]:
    """
    Distances between consecutive location-bearing sightings.

    Sightings without coordinates are skipped; callers pass them in
    timestamp order.
    """
    located = [s for s in sightings if s.has_location]
    return [sighting_distance(a, b) for a, b in zip(located, located[1:])]
