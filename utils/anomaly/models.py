"""
Data models for sighting history and anomaly records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class DeviceCategory(str, Enum):
    """Kind of wireless device a sighting belongs to."""
    WIFI_NETWORK = 'wifi_network'
    BLUETOOTH_DEVICE = 'bluetooth_device'
    NETWORK_MAC_ADDRESS = 'network_mac_address'

    def __str__(self) -> str:
        return self.value


class AnomalyType(str, Enum):
    """Detected pattern categories."""
    TEMPORAL_CLUSTERING = 'temporal_clustering'      # Bursts of sightings
    GEOGRAPHIC_TRACKING = 'geographic_tracking'      # Device follows user across locations
    FREQUENCY_ANOMALY = 'frequency_anomaly'          # Unusually frequent appearances
    CORRELATION_PATTERN = 'correlation_pattern'      # Devices appearing together
    SIGNAL_STRENGTH_ANOMALY = 'signal_strength_anomaly'
    NEW_DEVICE_CLUSTER = 'new_device_cluster'        # Several new devices at once
    ML_BASED_ANOMALY = 'ml_based_anomaly'            # Isolation forest outlier

    def __str__(self) -> str:
        return self.value


class AnomalySeverity(str, Enum):
    """Severity classification of an anomaly record."""
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Sighting:
    """A single observation of a wireless device."""

    address: str
    category: DeviceCategory
    timestamp: int  # epoch milliseconds

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None  # metres

    signal_strength: Optional[int] = None  # dBm
    frequency: Optional[int] = None  # MHz, WiFi only
    capabilities: Optional[str] = None
    name: Optional[str] = None  # SSID or advertised name
    is_connected: bool = False

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'address': self.address,
            'category': self.category.value,
            'timestamp': self.timestamp,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': self.accuracy,
            'signal_strength': self.signal_strength,
            'frequency': self.frequency,
            'capabilities': self.capabilities,
            'name': self.name,
            'is_connected': self.is_connected,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'Sighting':
        """
        Build a sighting from a JSON-style dict.

        Raises:
            KeyError: If address or timestamp is missing.
            ValueError: If the category is unknown.
        """
        return cls(
            address=str(data['address']),
            category=DeviceCategory(data.get('category', DeviceCategory.WIFI_NETWORK.value)),
            timestamp=int(data['timestamp']),
            latitude=_optional_float(data.get('latitude')),
            longitude=_optional_float(data.get('longitude')),
            accuracy=_optional_float(data.get('accuracy')),
            signal_strength=_optional_int(data.get('signal_strength')),
            frequency=_optional_int(data.get('frequency')),
            capabilities=data.get('capabilities'),
            name=data.get('name'),
            is_connected=bool(data.get('is_connected', False)),
        )


@dataclass(frozen=True)
class LocationPoint:
    """Location attached to an anomaly record."""

    latitude: float
    longitude: float
    timestamp: int
    accuracy: Optional[float] = None

    @classmethod
    def from_sighting(cls, sighting: Sighting) -> 'LocationPoint':
        return cls(
            latitude=sighting.latitude,
            longitude=sighting.longitude,
            timestamp=sighting.timestamp,
            accuracy=sighting.accuracy,
        )

    def to_dict(self) -> dict:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'timestamp': self.timestamp,
            'accuracy': self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'LocationPoint':
        return cls(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            timestamp=int(data['timestamp']),
            accuracy=_optional_float(data.get('accuracy')),
        )


@dataclass
class AnomalyDetection:
    """
    A scored, severity-classified suspicious pattern.

    Created by a detector; the user-action fields at the bottom are only
    changed later by the storage/UI layer.
    """

    detected_at: int
    anomaly_type: AnomalyType
    severity: AnomalySeverity

    device_addresses: list[str]
    device_category: DeviceCategory

    anomaly_score: float  # 0.0 to 1.0, higher = more anomalous
    confidence_level: float  # 0.0 to 1.0

    description: str
    detection_count: int

    locations: list[LocationPoint] = field(default_factory=list)
    geographic_spread: Optional[float] = None  # metres

    time_span: int = 0  # milliseconds
    first_seen: int = 0
    last_seen: int = 0

    # User actions
    is_acknowledged: bool = False
    is_false_positive: bool = False
    user_notes: Optional[str] = None

    id: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'detected_at': self.detected_at,
            'anomaly_type': self.anomaly_type.value,
            'severity': self.severity.value,
            'device_addresses': list(self.device_addresses),
            'device_category': self.device_category.value,
            'anomaly_score': round(self.anomaly_score, 4),
            'confidence_level': round(self.confidence_level, 4),
            'description': self.description,
            'detection_count': self.detection_count,
            'locations': [loc.to_dict() for loc in self.locations],
            'geographic_spread': self.geographic_spread,
            'time_span': self.time_span,
            'first_seen': self.first_seen,
            'last_seen': self.last_seen,
            'is_acknowledged': self.is_acknowledged,
            'is_false_positive': self.is_false_positive,
            'user_notes': self.user_notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'AnomalyDetection':
        return cls(
            id=data.get('id'),
            detected_at=int(data['detected_at']),
            anomaly_type=AnomalyType(data['anomaly_type']),
            severity=AnomalySeverity(data['severity']),
            device_addresses=list(data.get('device_addresses', [])),
            device_category=DeviceCategory(data['device_category']),
            anomaly_score=float(data['anomaly_score']),
            confidence_level=float(data['confidence_level']),
            description=data.get('description', ''),
            detection_count=int(data.get('detection_count', 0)),
            locations=[LocationPoint.from_dict(loc) for loc in data.get('locations', [])],
            geographic_spread=_optional_float(data.get('geographic_spread')),
            time_span=int(data.get('time_span', 0)),
            first_seen=int(data.get('first_seen', 0)),
            last_seen=int(data.get('last_seen', 0)),
            is_acknowledged=bool(data.get('is_acknowledged', False)),
            is_false_positive=bool(data.get('is_false_positive', False)),
            user_notes=data.get('user_notes'),
        )


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)
