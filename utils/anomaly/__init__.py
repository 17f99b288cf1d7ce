"""
Anomaly detection package for TailGuard.

Finds sighting patterns consistent with a device following the user:
bursts, repeated appearances across locations, high frequency, devices
travelling together, clusters of new devices, and isolation-forest
outliers.
"""

from .analyzer import (
    AnalysisConfig,
    AnalysisPassError,
    AnomalyAnalyzer,
    TimeBucket,
    detect_correlation_patterns,
    detect_frequency_anomaly,
    detect_geographic_tracking,
    detect_ml_anomaly,
    detect_new_device_clusters,
    detect_temporal_clustering,
    time_buckets,
)
from .distance import consecutive_distances, haversine_distance, sighting_distance
from .features import (
    FEATURE_NAMES,
    DeviceFeatures,
    extract_device_features,
    extract_features,
    group_by_address,
    hour_entropy,
)
from .isolation_forest import IsolationForest, IsolationTree, average_path_length
from .ml_detector import MLAnomalyDetector, get_ml_detector, reset_ml_detector
from .models import (
    AnomalyDetection,
    AnomalySeverity,
    AnomalyType,
    DeviceCategory,
    LocationPoint,
    Sighting,
)
from .records import build_anomaly, clamp_unit, classify_severity, describe
from .store import AnomalySink, ExclusionList, InMemorySightingStore, SightingSource

__all__ = [
    # Analysis
    'AnomalyAnalyzer',
    'AnalysisConfig',
    'AnalysisPassError',
    'TimeBucket',
    'time_buckets',

    # Detectors
    'detect_temporal_clustering',
    'detect_geographic_tracking',
    'detect_frequency_anomaly',
    'detect_correlation_patterns',
    'detect_new_device_clusters',
    'detect_ml_anomaly',

    # Models
    'Sighting',
    'LocationPoint',
    'AnomalyDetection',
    'AnomalyType',
    'AnomalySeverity',
    'DeviceCategory',

    # Features
    'FEATURE_NAMES',
    'DeviceFeatures',
    'extract_device_features',
    'extract_features',
    'group_by_address',
    'hour_entropy',

    # Distance
    'haversine_distance',
    'sighting_distance',
    'consecutive_distances',

    # Machine learning
    'IsolationForest',
    'IsolationTree',
    'average_path_length',
    'MLAnomalyDetector',
    'get_ml_detector',
    'reset_ml_detector',

    # Records
    'build_anomaly',
    'classify_severity',
    'clamp_unit',
    'describe',

    # Collaborators
    'SightingSource',
    'ExclusionList',
    'AnomalySink',
    'InMemorySightingStore',
]
