"""
Anomaly engine constants.

All durations are in milliseconds unless stated otherwise.
"""

from __future__ import annotations

# =============================================================================
# TIME UNITS
# =============================================================================

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR

# =============================================================================
# ANALYSIS WINDOW
# =============================================================================

# Trailing window of history analysed per pass
ANALYSIS_WINDOW_MS = 7 * MS_PER_DAY

# Minimum sightings before a device is analysed at all
MIN_SIGHTINGS_FOR_ANALYSIS = 3

# Minimum sightings for frequency analysis
MIN_SIGHTINGS_FOR_FREQUENCY = 5

# Records are emitted only when their score exceeds this
ANOMALY_THRESHOLD = 0.5

# =============================================================================
# PER-DEVICE DETECTORS
# =============================================================================

# Temporal clustering: gaps shorter than mean - 2 * stddev join a cluster
CLUSTER_STDDEV_MULTIPLIER = 2.0
MIN_CLUSTER_SIZE = 3

# Used instead of mean - 2 * stddev when that bound is not positive
CLUSTER_FALLBACK_RATIO = 0.1

# Geographic tracking
SIGNIFICANT_DISTANCE_METERS = 500.0
MIN_SIGNIFICANT_DISTANCES = 2

# Frequency anomaly
SUSPICIOUS_FREQUENCY_PER_HOUR = 10.0
FREQUENCY_SCORE_SCALE = 20.0

# =============================================================================
# CROSS-DEVICE DETECTORS
# =============================================================================

# Correlation pattern
CORRELATION_WINDOW_MS = 5 * MS_PER_MINUTE
MIN_CO_OCCURRENCES = 3
MIN_CORRELATION_COEFFICIENT = 0.5

# New-device cluster
CLUSTER_ANALYSIS_WINDOW_MS = 24 * MS_PER_HOUR
CLUSTER_BUCKET_MS = 10 * MS_PER_MINUTE
NEW_DEVICE_THRESHOLD_MS = MS_PER_HOUR
MIN_DEVICES_FOR_CLUSTER = 3

# =============================================================================
# CONFIDENCE MULTIPLIERS (confidence = score * multiplier, clamped)
# =============================================================================

CONFIDENCE_TEMPORAL = 1.2
CONFIDENCE_GEOGRAPHIC = 1.1
CONFIDENCE_FREQUENCY = 1.15
CONFIDENCE_CORRELATION = 1.1
CONFIDENCE_DEVICE_CLUSTER = 1.2
CONFIDENCE_ML = 1.1

# =============================================================================
# SEVERITY BOUNDARIES (left-closed)
# =============================================================================

SEVERITY_CRITICAL = 0.8
SEVERITY_HIGH = 0.6
SEVERITY_MEDIUM = 0.4

# =============================================================================
# ISOLATION FOREST
# =============================================================================

DEFAULT_NUMBER_OF_TREES = 100
DEFAULT_SUBSAMPLE_SIZE = 256
EULER_GAMMA = 0.5772156649

# Forest scores sit near 0.5 for ordinary devices
ML_SCORE_THRESHOLD = 0.6

# =============================================================================
# GEODESY
# =============================================================================

EARTH_RADIUS_METERS = 6371000.0

# =============================================================================
# FEATURE NORMALIZATION SCALES
# Changing any of these changes model behaviour.
# =============================================================================

FEATURE_SCALE_COUNT = 100.0
FEATURE_SCALE_INTERVAL_MS = float(MS_PER_HOUR)
FEATURE_SCALE_FREQUENCY = 20.0        # sightings per hour
FEATURE_SCALE_LOCATIONS = 10.0
FEATURE_SCALE_DISTANCE_M = 10000.0    # 10 km
FEATURE_SCALE_SIGNAL_DB = 100.0
FEATURE_SCALE_ENTROPY = 4.0           # max ~3.18 nats for 24 bins

HOURS_PER_DAY = 24

# =============================================================================
# WORKER POOL
# =============================================================================

DEFAULT_MAX_WORKERS = 4

# =============================================================================
# SETTINGS KEYS
# =============================================================================

SETTINGS_PREFIX = 'anomaly.'
