"""Tests for distance helpers and device feature extraction."""

import math

import numpy as np
import pytest

from utils.anomaly.constants import MS_PER_HOUR, MS_PER_MINUTE
from utils.anomaly.distance import consecutive_distances, haversine_distance
from utils.anomaly.features import (
    FEATURE_NAMES,
    extract_device_features,
    extract_features,
    group_by_address,
    hour_entropy,
)
from utils.anomaly.models import DeviceCategory, Sighting

BASE_TIME = 1_700_000_000_000


def make_sighting(address='AA:BB:CC:DD:EE:01', timestamp=BASE_TIME, **kwargs):
    return Sighting(
        address=address,
        category=kwargs.pop('category', DeviceCategory.WIFI_NETWORK),
        timestamp=timestamp,
        **kwargs,
    )


class TestHaversineDistance:
    """Tests for great-circle distance."""

    def test_san_francisco_to_los_angeles(self):
        distance = haversine_distance(37.7749, -122.4194, 34.0522, -118.2437)
        assert distance == pytest.approx(559_000, abs=10_000)

    def test_symmetric(self):
        forward = haversine_distance(51.5074, -0.1278, 48.8566, 2.3522)
        backward = haversine_distance(48.8566, 2.3522, 51.5074, -0.1278)
        assert forward == pytest.approx(backward)

    def test_same_point_is_zero(self):
        assert haversine_distance(10.0, 20.0, 10.0, 20.0) == 0.0

    def test_antipodal_points_do_not_fail(self):
        distance = haversine_distance(0.0, 0.0, 0.0, 180.0)
        assert distance == pytest.approx(math.pi * 6371000.0, rel=1e-6)

    def test_consecutive_distances_skip_missing_locations(self):
        sightings = [
            make_sighting(timestamp=BASE_TIME, latitude=37.0, longitude=-122.0),
            make_sighting(timestamp=BASE_TIME + 1000),
            make_sighting(timestamp=BASE_TIME + 2000, latitude=37.01, longitude=-122.0),
        ]
        distances = consecutive_distances(sightings)
        assert len(distances) == 1
        assert distances[0] == pytest.approx(1112, abs=5)


class TestHourEntropy:
    """Tests for hour-of-day entropy."""

    def test_empty(self):
        assert hour_entropy([]) == 0.0

    def test_single_hour_is_zero(self):
        assert hour_entropy([BASE_TIME, BASE_TIME + 1000, BASE_TIME + 2000]) == pytest.approx(0.0)

    def test_two_equal_hours(self):
        timestamps = [0, 1000, MS_PER_HOUR, MS_PER_HOUR + 1000]
        assert hour_entropy(timestamps) == pytest.approx(math.log(2))

    def test_uniform_day(self):
        timestamps = [h * MS_PER_HOUR for h in range(24)]
        assert hour_entropy(timestamps) == pytest.approx(math.log(24))


class TestExtractDeviceFeatures:
    """Tests for per-device feature extraction."""

    def test_single_sighting(self):
        features = extract_device_features([make_sighting(signal_strength=-60)])

        assert features.detection_count == 1.0
        assert features.mean_interval == 0.0
        assert features.std_dev_interval == 0.0
        assert features.frequency == 0.0
        assert features.unique_locations == 0.0
        assert features.mean_signal_strength == -60.0

    def test_unsorted_input_is_sorted(self):
        sightings = [
            make_sighting(timestamp=BASE_TIME + 2 * MS_PER_MINUTE),
            make_sighting(timestamp=BASE_TIME),
            make_sighting(timestamp=BASE_TIME + MS_PER_MINUTE),
        ]
        features = extract_device_features(sightings)

        assert features.mean_interval == pytest.approx(MS_PER_MINUTE)
        assert features.std_dev_interval == pytest.approx(0.0)

    def test_frequency_per_hour(self):
        sightings = [make_sighting(timestamp=BASE_TIME + i * 6 * MS_PER_MINUTE) for i in range(11)]
        features = extract_device_features(sightings)

        # 11 sightings over exactly one hour
        assert features.frequency == pytest.approx(11.0)

    def test_population_standard_deviation(self):
        sightings = [
            make_sighting(timestamp=BASE_TIME),
            make_sighting(timestamp=BASE_TIME + 1000),
            make_sighting(timestamp=BASE_TIME + 4000),
        ]
        features = extract_device_features(sightings)

        # intervals 1000 and 3000: mean 2000, population std 1000
        assert features.mean_interval == pytest.approx(2000.0)
        assert features.std_dev_interval == pytest.approx(1000.0)

    def test_locations_and_distances(self):
        sightings = [
            make_sighting(timestamp=BASE_TIME, latitude=37.0, longitude=-122.0),
            make_sighting(timestamp=BASE_TIME + 1000, latitude=37.0, longitude=-122.0),
            make_sighting(timestamp=BASE_TIME + 2000, latitude=37.1, longitude=-122.0),
        ]
        features = extract_device_features(sightings)

        assert features.unique_locations == 2.0
        assert features.max_distance == pytest.approx(11_120, abs=50)
        assert features.mean_distance == pytest.approx(features.max_distance / 2)

    def test_signal_statistics_ignore_missing(self):
        sightings = [
            make_sighting(timestamp=BASE_TIME, signal_strength=-50),
            make_sighting(timestamp=BASE_TIME + 1000),
            make_sighting(timestamp=BASE_TIME + 2000, signal_strength=-70),
        ]
        features = extract_device_features(sightings)

        assert features.mean_signal_strength == pytest.approx(-60.0)
        assert features.std_dev_signal_strength == pytest.approx(10.0)


class TestFeatureVector:
    """Tests for normalized feature vectors."""

    def test_vector_components_in_unit_range(self):
        sightings = [
            make_sighting(
                timestamp=BASE_TIME + i * 10,
                latitude=37.0 + i * 0.1,
                longitude=-122.0,
                signal_strength=-200,
            )
            for i in range(500)
        ]
        vector = extract_device_features(sightings).to_array()

        assert vector.shape == (len(FEATURE_NAMES),)
        assert np.all(vector >= 0.0)
        assert np.all(vector <= 1.0)

    def test_signal_uses_magnitude(self):
        vector = extract_device_features([make_sighting(signal_strength=-50)]).to_array()
        assert vector[FEATURE_NAMES.index('mean_signal_strength')] == pytest.approx(0.5)

    def test_to_dict_has_every_feature(self):
        features = extract_device_features([make_sighting()])
        assert set(features.to_dict()) == set(FEATURE_NAMES)


class TestExtractFeatures:
    """Tests for multi-device extraction."""

    def test_one_record_per_device_in_first_seen_order(self):
        sightings = [
            make_sighting(address='B', timestamp=BASE_TIME),
            make_sighting(address='A', timestamp=BASE_TIME + 1),
            make_sighting(address='B', timestamp=BASE_TIME + 2),
        ]

        assert list(group_by_address(sightings)) == ['B', 'A']
        features = extract_features(sightings)
        assert [f.detection_count for f in features] == [2.0, 1.0]

    def test_empty_input(self):
        assert extract_features([]) == []
