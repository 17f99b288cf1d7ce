"""
Anomaly record construction and severity classification.

Every detector builds its output through build_anomaly() so scores,
confidence and severity are handled the same way everywhere.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from .constants import SEVERITY_CRITICAL, SEVERITY_HIGH, SEVERITY_MEDIUM
from .features import sort_sightings
from .models import (
    AnomalyDetection,
    AnomalySeverity,
    AnomalyType,
    DeviceCategory,
    LocationPoint,
    Sighting,
)

DESCRIPTION_TEMPLATES: dict[AnomalyType, str] = {
    AnomalyType.TEMPORAL_CLUSTERING: 'Device detected {count} times in rapid succession',
    AnomalyType.GEOGRAPHIC_TRACKING: 'Device detected at {locations} different locations',
    AnomalyType.FREQUENCY_ANOMALY: 'Device detected {count} times ({rate:.1f}/hour)',
    AnomalyType.CORRELATION_PATTERN: (
        'Devices {first} and {second} appeared together {co_occurrences} times '
        '(correlation {coefficient:.2f})'
    ),
    AnomalyType.SIGNAL_STRENGTH_ANOMALY: 'Unusual signal strength pattern across {count} sightings',
    AnomalyType.NEW_DEVICE_CLUSTER: '{count} new devices appeared within {minutes:.0f} minutes',
    AnomalyType.ML_BASED_ANOMALY: 'Behavior deviates from learned baseline (model score {score:.2f})',
}


def clamp_unit(value: float) -> float:
    """Clamp a value into [0, 1]; NaN becomes 0.0."""
    if value != value:
        return 0.0
    return min(max(value, 0.0), 1.0)


def classify_severity(score: float) -> AnomalySeverity:
    """
    Map an anomaly score to a severity.

    Boundaries are left-closed: [0.8, 1] critical, [0.6, 0.8) high,
    [0.4, 0.6) medium, below 0.4 low.
    """
    if score >= SEVERITY_CRITICAL:
        return AnomalySeverity.CRITICAL
    elif score >= SEVERITY_HIGH:
        return AnomalySeverity.HIGH
    elif score >= SEVERITY_MEDIUM:
        return AnomalySeverity.MEDIUM
    return AnomalySeverity.LOW


def describe(anomaly_type: AnomalyType, **details: Any) -> str:
    """
    Format the human-readable description for an anomaly type.

    Raises:
        ValueError: If the type has no description template.
    """
    try:
        template = DESCRIPTION_TEMPLATES[anomaly_type]
    except KeyError:
        raise ValueError(f'No description for anomaly type {anomaly_type!r}') from None
    return template.format(**details)


def location_points(sightings: Iterable[Sighting]) -> list[LocationPoint]:
    """Location points of the location-bearing sightings, in input order."""
    return [LocationPoint.from_sighting(s) for s in sightings if s.has_location]


def build_anomaly(
    anomaly_type: AnomalyType,
    score: float,
    confidence_multiplier: float,
    device_addresses: list[str],
    device_category: DeviceCategory,
    sightings: Iterable[Sighting],
    detected_at: int,
    description: str,
    detection_count: Optional[int] = None,
    geographic_spread: Optional[float] = None,
) -> AnomalyDetection:
    """
    Build a classified anomaly record from supporting sightings.

    Args:
        anomaly_type: Pattern category.
        score: Raw detector score; clamped into [0, 1].
        confidence_multiplier: Confidence is score * multiplier, clamped.
        device_addresses: Implicated devices.
        device_category: Category the devices were analysed under.
        sightings: Supporting sightings (any order).
        detected_at: Detection timestamp (epoch ms).
        description: Human-readable summary.
        detection_count: Supporting count; defaults to the number of sightings.
        geographic_spread: Optional spread in metres.

    Returns:
        A new AnomalyDetection.
    """
    ordered = sort_sightings(sightings)
    score = clamp_unit(score)
    first_seen = ordered[0].timestamp if ordered else detected_at
    last_seen = ordered[-1].timestamp if ordered else detected_at

    return AnomalyDetection(
        detected_at=detected_at,
        anomaly_type=anomaly_type,
        severity=classify_severity(score),
        device_addresses=list(device_addresses),
        device_category=device_category,
        anomaly_score=score,
        confidence_level=clamp_unit(score * confidence_multiplier),
        description=description,
        detection_count=len(ordered) if detection_count is None else detection_count,
        locations=location_points(ordered),
        geographic_spread=geographic_spread,
        time_span=last_seen - first_seen,
        first_seen=first_seen,
        last_seen=last_seen,
    )
