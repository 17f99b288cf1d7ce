"""
Statistical anomaly analysis over sighting history.

Runs rule-based detectors per device (temporal clustering, geographic
tracking, frequency) and per device category (correlation, new-device
clusters), optionally adds isolation-forest scores, and hands every
record to the anomaly sink.

These are heuristics. A record indicates a pattern CONSISTENT with
tracking, not proof of it.
"""

from __future__ import annotations

import logging
import statistics
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, fields, replace
from itertools import combinations
from typing import Any, Callable, Iterable, Optional

from .constants import (
    ANALYSIS_WINDOW_MS,
    ANOMALY_THRESHOLD,
    CLUSTER_ANALYSIS_WINDOW_MS,
    CLUSTER_BUCKET_MS,
    CLUSTER_FALLBACK_RATIO,
    CLUSTER_STDDEV_MULTIPLIER,
    CONFIDENCE_CORRELATION,
    CONFIDENCE_DEVICE_CLUSTER,
    CONFIDENCE_FREQUENCY,
    CONFIDENCE_GEOGRAPHIC,
    CONFIDENCE_ML,
    CONFIDENCE_TEMPORAL,
    CORRELATION_WINDOW_MS,
    DEFAULT_MAX_WORKERS,
    DEFAULT_NUMBER_OF_TREES,
    DEFAULT_SUBSAMPLE_SIZE,
    FREQUENCY_SCORE_SCALE,
    MIN_CLUSTER_SIZE,
    MIN_CO_OCCURRENCES,
    MIN_CORRELATION_COEFFICIENT,
    MIN_DEVICES_FOR_CLUSTER,
    MIN_SIGHTINGS_FOR_ANALYSIS,
    MIN_SIGHTINGS_FOR_FREQUENCY,
    MIN_SIGNIFICANT_DISTANCES,
    ML_SCORE_THRESHOLD,
    MS_PER_HOUR,
    MS_PER_MINUTE,
    NEW_DEVICE_THRESHOLD_MS,
    SETTINGS_PREFIX,
    SIGNIFICANT_DISTANCE_METERS,
    SUSPICIOUS_FREQUENCY_PER_HOUR,
)
from .distance import consecutive_distances
from .features import sort_sightings
from .ml_detector import MLAnomalyDetector
from .models import AnomalyDetection, AnomalyType, DeviceCategory, Sighting
from .records import build_anomaly, describe
from .store import AnomalySink, ExclusionList, SightingSource

logger = logging.getLogger('tailguard.anomaly.analyzer')


class AnalysisPassError(RuntimeError):
    """An analysis pass failed because a collaborator call failed."""


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class AnalysisConfig:
    """Pass-time constants for an analysis pass."""

    analysis_window_ms: int = ANALYSIS_WINDOW_MS
    min_sightings_for_analysis: int = MIN_SIGHTINGS_FOR_ANALYSIS
    min_sightings_for_frequency: int = MIN_SIGHTINGS_FOR_FREQUENCY
    anomaly_threshold: float = ANOMALY_THRESHOLD

    significant_distance_meters: float = SIGNIFICANT_DISTANCE_METERS
    suspicious_frequency_per_hour: float = SUSPICIOUS_FREQUENCY_PER_HOUR

    correlation_window_ms: int = CORRELATION_WINDOW_MS
    min_co_occurrences: int = MIN_CO_OCCURRENCES
    min_correlation_coefficient: float = MIN_CORRELATION_COEFFICIENT

    cluster_analysis_window_ms: int = CLUSTER_ANALYSIS_WINDOW_MS
    cluster_bucket_ms: int = CLUSTER_BUCKET_MS
    new_device_threshold_ms: int = NEW_DEVICE_THRESHOLD_MS
    min_devices_for_cluster: int = MIN_DEVICES_FOR_CLUSTER

    number_of_trees: int = DEFAULT_NUMBER_OF_TREES
    subsample_size: int = DEFAULT_SUBSAMPLE_SIZE
    enable_ml: bool = True
    retrain_each_pass: bool = True
    ml_score_threshold: float = ML_SCORE_THRESHOLD
    ml_random_state: Optional[int] = None

    categories: tuple[DeviceCategory, ...] = (
        DeviceCategory.WIFI_NETWORK,
        DeviceCategory.BLUETOOTH_DEVICE,
    )
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self):
        for name in _POSITIVE_FIELDS:
            if getattr(self, name) <= 0:
                raise ValueError(f'{name} must be positive, got {getattr(self, name)}')
        for name in _UNIT_FIELDS:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f'{name} must be between 0 and 1, got {value}')

    @classmethod
    def from_settings(cls, get_setting: Callable[[str, Any], Any]) -> 'AnalysisConfig':
        """
        Build a config from stored settings.

        Each field is looked up as 'anomaly.<field_name>'; missing keys keep
        their defaults.
        """
        overrides: dict[str, Any] = {}
        defaults = cls()
        for f in fields(cls):
            value = get_setting(f'{SETTINGS_PREFIX}{f.name}', None)
            if value is None:
                continue
            overrides[f.name] = _coerce_setting(f.name, value, getattr(defaults, f.name))
        return replace(defaults, **overrides)

    def to_dict(self) -> dict:
        result = {f.name: getattr(self, f.name) for f in fields(self)}
        result['categories'] = [c.value for c in self.categories]
        return result


_POSITIVE_FIELDS = (
    'analysis_window_ms',
    'min_sightings_for_analysis',
    'min_sightings_for_frequency',
    'significant_distance_meters',
    'suspicious_frequency_per_hour',
    'correlation_window_ms',
    'min_co_occurrences',
    'cluster_analysis_window_ms',
    'cluster_bucket_ms',
    'new_device_threshold_ms',
    'min_devices_for_cluster',
    'number_of_trees',
    'subsample_size',
    'max_workers',
)

_UNIT_FIELDS = (
    'anomaly_threshold',
    'min_correlation_coefficient',
    'ml_score_threshold',
)


def _coerce_setting(name: str, value: Any, default: Any) -> Any:
    if name == 'categories':
        if isinstance(value, str):
            value = [v.strip() for v in value.split(',') if v.strip()]
        return tuple(DeviceCategory(v) for v in value)
    if name == 'ml_random_state':
        return int(value)
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        return bool(value)
    return type(default)(value)


# =============================================================================
# WINDOWING
# =============================================================================

@dataclass
class TimeBucket:
    """Sightings grouped into one time window starting at `start`."""
    start: int
    sightings: list[Sighting] = field(default_factory=list)

    @property
    def addresses(self) -> set[str]:
        return {s.address for s in self.sightings}


def time_buckets(sightings: Iterable[Sighting], width_ms: int) -> list[TimeBucket]:
    """
    Partition sightings into disjoint, greedily re-based time buckets.

    A new bucket starts at the first sighting more than width_ms after the
    current bucket's start.
    """
    buckets: list[TimeBucket] = []
    current: Optional[TimeBucket] = None

    for sighting in sort_sightings(sightings):
        if current is None or sighting.timestamp - current.start > width_ms:
            current = TimeBucket(start=sighting.timestamp)
            buckets.append(current)
        current.sightings.append(sighting)

    return buckets


# =============================================================================
# PER-DEVICE DETECTORS
# =============================================================================

def detect_temporal_clustering(
    address: str,
    category: DeviceCategory,
    sightings: list[Sighting],
    detected_at: int,
    config: AnalysisConfig = AnalysisConfig(),
) -> list[AnomalyDetection]:
    """
    Find bursts of sightings much closer together than the device's norm.

    Consecutive sightings whose gap is below mean - 2 * stddev form a
    cluster. When that bound is not positive (a few very long gaps
    dominate the spread) a fraction of the mean interval is used instead.
    """
    ordered = sort_sightings(sightings)
    if len(ordered) < MIN_CLUSTER_SIZE:
        return []

    intervals = [b.timestamp - a.timestamp for a, b in zip(ordered, ordered[1:])]
    mean = statistics.fmean(intervals)
    std_dev = statistics.stdev(intervals) if len(intervals) > 1 else 0.0

    limit = mean - CLUSTER_STDDEV_MULTIPLIER * std_dev
    if limit <= 0:
        limit = mean * CLUSTER_FALLBACK_RATIO

    clusters: list[list[Sighting]] = []
    current = [ordered[0]]
    for previous, sighting in zip(ordered, ordered[1:]):
        if sighting.timestamp - previous.timestamp < limit:
            current.append(sighting)
        else:
            if len(current) >= MIN_CLUSTER_SIZE:
                clusters.append(current)
            current = [sighting]
    if len(current) >= MIN_CLUSTER_SIZE:
        clusters.append(current)

    anomalies = []
    for cluster in clusters:
        cluster_span = cluster[-1].timestamp - cluster[0].timestamp
        score = min(mean * len(cluster) / max(cluster_span, 1) / 10.0, 1.0)
        if score <= config.anomaly_threshold:
            continue

        anomalies.append(build_anomaly(
            anomaly_type=AnomalyType.TEMPORAL_CLUSTERING,
            score=score,
            confidence_multiplier=CONFIDENCE_TEMPORAL,
            device_addresses=[address],
            device_category=category,
            sightings=cluster,
            detected_at=detected_at,
            description=describe(AnomalyType.TEMPORAL_CLUSTERING, count=len(cluster)),
        ))

    return anomalies


def detect_geographic_tracking(
    address: str,
    category: DeviceCategory,
    sightings: list[Sighting],
    detected_at: int,
    config: AnalysisConfig = AnalysisConfig(),
) -> list[AnomalyDetection]:
    """Flag a device seen again after repeated large moves between locations."""
    located = [s for s in sort_sightings(sightings) if s.has_location]
    if len(located) < MIN_SIGNIFICANT_DISTANCES + 1:
        return []

    distances = consecutive_distances(located)
    significant = sum(1 for d in distances if d > config.significant_distance_meters)
    if significant < MIN_SIGNIFICANT_DISTANCES:
        return []

    score = min(significant / 5.0, 1.0)
    if score <= config.anomaly_threshold:
        return []

    return [build_anomaly(
        anomaly_type=AnomalyType.GEOGRAPHIC_TRACKING,
        score=score,
        confidence_multiplier=CONFIDENCE_GEOGRAPHIC,
        device_addresses=[address],
        device_category=category,
        sightings=located,
        detected_at=detected_at,
        description=describe(AnomalyType.GEOGRAPHIC_TRACKING, locations=significant),
        geographic_spread=sum(distances),
    )]


def detect_frequency_anomaly(
    address: str,
    category: DeviceCategory,
    sightings: list[Sighting],
    detected_at: int,
    config: AnalysisConfig = AnalysisConfig(),
) -> list[AnomalyDetection]:
    """Flag a device sighted more often per hour than the suspicious rate."""
    ordered = sort_sightings(sightings)
    if len(ordered) < config.min_sightings_for_frequency:
        return []

    time_span = ordered[-1].timestamp - ordered[0].timestamp
    if time_span <= 0:
        return []

    rate = len(ordered) / time_span * MS_PER_HOUR
    if rate <= config.suspicious_frequency_per_hour:
        return []

    score = min(rate / FREQUENCY_SCORE_SCALE, 1.0)
    if score <= config.anomaly_threshold:
        return []

    return [build_anomaly(
        anomaly_type=AnomalyType.FREQUENCY_ANOMALY,
        score=score,
        confidence_multiplier=CONFIDENCE_FREQUENCY,
        device_addresses=[address],
        device_category=category,
        sightings=ordered,
        detected_at=detected_at,
        description=describe(AnomalyType.FREQUENCY_ANOMALY, count=len(ordered), rate=rate),
    )]


def detect_ml_anomaly(
    address: str,
    category: DeviceCategory,
    sightings: list[Sighting],
    detected_at: int,
    ml_detector: MLAnomalyDetector,
    config: AnalysisConfig = AnalysisConfig(),
) -> list[AnomalyDetection]:
    """Flag a device whose isolation-forest score exceeds the ML threshold."""
    if not ml_detector.is_model_ready():
        return []

    score = ml_detector.predict_anomaly_score(sightings)
    if score <= config.ml_score_threshold:
        return []

    return [build_anomaly(
        anomaly_type=AnomalyType.ML_BASED_ANOMALY,
        score=score,
        confidence_multiplier=CONFIDENCE_ML,
        device_addresses=[address],
        device_category=category,
        sightings=sightings,
        detected_at=detected_at,
        description=describe(AnomalyType.ML_BASED_ANOMALY, score=score),
    )]


# =============================================================================
# CROSS-DEVICE DETECTORS
# =============================================================================

@dataclass
class _PairStats:
    co_occurrences: int = 0
    timestamps: list[int] = field(default_factory=list)
    samples: list[Sighting] = field(default_factory=list)


def detect_correlation_patterns(
    category: DeviceCategory,
    sightings: list[Sighting],
    detected_at: int,
    config: AnalysisConfig = AnalysisConfig(),
) -> list[AnomalyDetection]:
    """
    Find pairs of devices that keep appearing in the same time window.

    Sightings must already exclude exclusion-listed devices.
    """
    buckets = time_buckets(sightings, config.correlation_window_ms)

    bucket_counts: dict[str, int] = {}
    pairs: dict[tuple[str, str], _PairStats] = {}

    for bucket in buckets:
        present = sorted(bucket.addresses)
        for address in present:
            bucket_counts[address] = bucket_counts.get(address, 0) + 1

        for first, second in combinations(present, 2):
            stats = pairs.setdefault((first, second), _PairStats())
            stats.co_occurrences += 1
            pair_sightings = [s for s in bucket.sightings if s.address in (first, second)]
            stats.timestamps.extend(s.timestamp for s in pair_sightings)
            # One representative per co-occurrence, preferring one with a location
            sample = next((s for s in pair_sightings if s.has_location), pair_sightings[0])
            stats.samples.append(sample)

    anomalies = []
    for (first, second), stats in sorted(pairs.items()):
        if stats.co_occurrences < config.min_co_occurrences:
            continue

        coefficient = stats.co_occurrences / min(bucket_counts[first], bucket_counts[second])
        score = min(coefficient * stats.co_occurrences / 5.0, 1.0)
        if score <= config.anomaly_threshold or coefficient <= config.min_correlation_coefficient:
            continue

        anomaly = build_anomaly(
            anomaly_type=AnomalyType.CORRELATION_PATTERN,
            score=score,
            confidence_multiplier=CONFIDENCE_CORRELATION,
            device_addresses=[first, second],
            device_category=category,
            sightings=stats.samples,
            detected_at=detected_at,
            description=describe(
                AnomalyType.CORRELATION_PATTERN,
                first=first,
                second=second,
                co_occurrences=stats.co_occurrences,
                coefficient=coefficient,
            ),
            detection_count=stats.co_occurrences,
        )
        anomaly.first_seen = min(stats.timestamps)
        anomaly.last_seen = max(stats.timestamps)
        anomaly.time_span = anomaly.last_seen - anomaly.first_seen
        anomalies.append(anomaly)

    return anomalies


def detect_new_device_clusters(
    category: DeviceCategory,
    history: list[Sighting],
    now: int,
    detected_at: int,
    config: AnalysisConfig = AnalysisConfig(),
) -> list[AnomalyDetection]:
    """
    Find bursts of devices that were all seen for the first time together.

    First-seen times come from the whole history passed in, which should
    reach back to each device's first-ever sighting; only the last
    cluster_analysis_window_ms is bucketed. History must already exclude
    exclusion-listed devices.
    """
    first_seen: dict[str, int] = {}
    for sighting in history:
        known = first_seen.get(sighting.address)
        if known is None or sighting.timestamp < known:
            first_seen[sighting.address] = sighting.timestamp

    window_start = now - config.cluster_analysis_window_ms
    recent = [s for s in history if s.timestamp >= window_start]

    anomalies = []
    for bucket in time_buckets(recent, config.cluster_bucket_ms):
        new_devices = sorted(
            address for address in bucket.addresses
            if bucket.start - first_seen[address] <= config.new_device_threshold_ms
        )
        if len(new_devices) < config.min_devices_for_cluster:
            continue

        score = min(len(new_devices) / 5.0, 1.0)
        if score <= config.anomaly_threshold:
            continue

        supporting = [s for s in bucket.sightings if s.address in new_devices]
        span = supporting[-1].timestamp - supporting[0].timestamp
        anomalies.append(build_anomaly(
            anomaly_type=AnomalyType.NEW_DEVICE_CLUSTER,
            score=score,
            confidence_multiplier=CONFIDENCE_DEVICE_CLUSTER,
            device_addresses=new_devices,
            device_category=category,
            sightings=supporting,
            detected_at=detected_at,
            description=describe(
                AnomalyType.NEW_DEVICE_CLUSTER,
                count=len(new_devices),
                minutes=max(span / MS_PER_MINUTE, 1.0),
            ),
            detection_count=len(new_devices),
        ))

    return anomalies


# =============================================================================
# ANALYSIS PASS
# =============================================================================

def _epoch_millis() -> int:
    return int(time.time() * 1000)


class AnomalyAnalyzer:
    """
    Runs a full analysis pass over the sighting history.

    Per-device and per-category sub-tasks are independent and run on a
    bounded thread pool. Records are inserted into the sink as soon as each
    sub-task produces them.
    """

    def __init__(
        self,
        source: SightingSource,
        sink: AnomalySink,
        exclusions: ExclusionList,
        ml_detector: Optional[MLAnomalyDetector] = None,
        config: Optional[AnalysisConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize the analyzer.

        Args:
            source: Sighting history provider.
            sink: Destination for anomaly records.
            exclusions: Exclusion list lookup.
            ml_detector: Optional isolation-forest detector.
            config: Pass-time constants (defaults if omitted).
            clock: Returns the current time in epoch milliseconds.
        """
        self.source = source
        self.sink = sink
        self.exclusions = exclusions
        self.ml_detector = ml_detector
        self.config = config or AnalysisConfig()
        self._clock = clock or _epoch_millis

    @property
    def ml_enabled(self) -> bool:
        return self.ml_detector is not None and self.config.enable_ml

    def is_ml_model_ready(self) -> bool:
        return self.ml_enabled and self.ml_detector.is_model_ready()

    def run_analysis_pass(self) -> list[AnomalyDetection]:
        """
        Analyze every non-excluded device and every configured category.

        Returns:
            All anomaly records emitted (and already inserted) by this pass.

        Raises:
            AnalysisPassError: If a collaborator call fails. Records inserted
                before the failure are left in place.
        """
        now = self._clock()
        started = time.monotonic()
        logger.info("Starting anomaly analysis pass")

        emitted: list[AnomalyDetection] = []
        executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix='anomaly-analysis',
        )
        try:
            if self.ml_enabled and (self.config.retrain_each_pass or not self.ml_detector.is_model_ready()):
                self.train_ml_model(now)

            futures = []
            for category in self.config.categories:
                for address in sorted(self.source.distinct_device_addresses(category)):
                    futures.append(executor.submit(self.analyze_device, address, category, now))
                futures.append(executor.submit(self.analyze_category, category, now))

            for future in as_completed(futures):
                emitted.extend(future.result())
        except Exception as e:
            logger.error(f"Anomaly analysis pass failed: {e}")
            raise AnalysisPassError(f'Analysis pass failed: {e}') from e
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        logger.info(
            "Analysis pass completed in %.2fs: %d anomalies",
            time.monotonic() - started, len(emitted),
        )
        return emitted

    def train_ml_model(self, now: Optional[int] = None) -> bool:
        """
        Train the ML detector on the analysis-window snapshot.

        Returns:
            True if a model was trained.
        """
        if not self.ml_enabled:
            return False

        now = self._clock() if now is None else now
        start = now - self.config.analysis_window_ms
        history: list[Sighting] = []
        for category in self.config.categories:
            history.extend(self.source.all_sightings_for_category_in_range(category, start, now))

        return self.ml_detector.train_model(
            history,
            number_of_trees=self.config.number_of_trees,
            subsample_size=self.config.subsample_size,
            random_state=self.config.ml_random_state,
        )

    def analyze_device(
        self,
        address: str,
        category: DeviceCategory,
        now: Optional[int] = None,
    ) -> list[AnomalyDetection]:
        """Run the per-device detectors for one device and insert the results."""
        if self.exclusions.is_excluded(address):
            logger.debug(f"Skipping excluded device {address}")
            return []

        now = self._clock() if now is None else now
        sightings = sort_sightings(self.source.sightings_for_device(
            address, now - self.config.analysis_window_ms, now,
        ))
        if len(sightings) < self.config.min_sightings_for_analysis:
            return []

        anomalies = []
        anomalies.extend(detect_temporal_clustering(address, category, sightings, now, self.config))
        anomalies.extend(detect_geographic_tracking(address, category, sightings, now, self.config))
        anomalies.extend(detect_frequency_anomaly(address, category, sightings, now, self.config))
        if self.is_ml_model_ready():
            anomalies.extend(detect_ml_anomaly(
                address, category, sightings, now, self.ml_detector, self.config,
            ))

        return self._emit(anomalies)

    def analyze_category(
        self,
        category: DeviceCategory,
        now: Optional[int] = None,
    ) -> list[AnomalyDetection]:
        """Run the cross-device detectors for one category and insert the results."""
        now = self._clock() if now is None else now
        # Full history: new-device detection needs each device's first-ever sighting
        history = self.source.all_sightings_for_category_in_range(category, 0, now)

        excluded: dict[str, bool] = {}
        for sighting in history:
            if sighting.address not in excluded:
                excluded[sighting.address] = self.exclusions.is_excluded(sighting.address)
        history = sort_sightings(s for s in history if not excluded[s.address])

        window_start = now - self.config.analysis_window_ms
        windowed = [s for s in history if s.timestamp >= window_start]

        anomalies = []
        anomalies.extend(detect_correlation_patterns(category, windowed, now, self.config))
        anomalies.extend(detect_new_device_clusters(category, history, now, now, self.config))

        return self._emit(anomalies)

    def _emit(self, anomalies: list[AnomalyDetection]) -> list[AnomalyDetection]:
        for anomaly in anomalies:
            self.sink.insert(anomaly)
            logger.debug(
                f"{anomaly.anomaly_type.value} ({anomaly.severity.value}) "
                f"for {', '.join(anomaly.device_addresses)}"
            )
        return anomalies
