"""Tests for the ML anomaly detector."""

import threading
from unittest.mock import patch

import pytest

from utils.anomaly.constants import MS_PER_MINUTE
from utils.anomaly.ml_detector import MLAnomalyDetector, get_ml_detector, reset_ml_detector
from utils.anomaly.models import DeviceCategory, Sighting

BASE_TIME = 1_700_000_000_000


def device_history(address, count=6, interval=30 * MS_PER_MINUTE, signal=-60, start=BASE_TIME):
    return [
        Sighting(
            address=address,
            category=DeviceCategory.WIFI_NETWORK,
            timestamp=start + i * interval,
            latitude=37.0,
            longitude=-122.0,
            signal_strength=signal,
        )
        for i in range(count)
    ]


def baseline_device(i, address=None):
    """An ordinary device: a handful of sightings tens of minutes apart, one place."""
    return device_history(
        address or f'00:00:00:00:00:{i:02X}',
        count=5 + i % 6,
        interval=(20 + i) * MS_PER_MINUTE,
        signal=-55 - (i % 15),
    )


@pytest.fixture
def baseline():
    history = []
    for i in range(20):
        history.extend(baseline_device(i))
    return history


@pytest.fixture
def trained(baseline):
    detector = MLAnomalyDetector(random_state=42)
    assert detector.train_model(baseline, number_of_trees=50)
    return detector


class TestTraining:
    """Tests for model training."""

    def test_untrained_is_not_ready(self):
        detector = MLAnomalyDetector(random_state=1)

        assert not detector.is_model_ready()
        assert detector.predict_anomaly_score(device_history('AA')) == 0.0
        assert detector.score_devices(device_history('AA')) == {}

    def test_empty_history_skips_training(self):
        detector = MLAnomalyDetector(random_state=1)

        assert detector.train_model([]) is False
        assert not detector.is_model_ready()

    def test_training_makes_ready(self, trained):
        assert trained.is_model_ready()

    def test_seeded_training_is_reproducible(self, baseline):
        sample = device_history('FF', count=40, interval=1000, signal=-95)

        first = MLAnomalyDetector(random_state=9)
        first.train_model(baseline, number_of_trees=30)
        second = MLAnomalyDetector(random_state=9)
        second.train_model(baseline, number_of_trees=30)

        assert first.predict_anomaly_score(sample) == second.predict_anomaly_score(sample)

    def test_concurrent_training_leaves_a_usable_model(self, baseline):
        detector = MLAnomalyDetector(random_state=3)
        threads = [
            threading.Thread(target=detector.train_model, args=(baseline,), kwargs={'number_of_trees': 10})
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert detector.is_model_ready()
        assert 0.0 <= detector.predict_anomaly_score(baseline) <= 1.0


class TestScoring:
    """Tests for anomaly scoring."""

    def test_scores_in_unit_range(self, trained, baseline):
        score = trained.predict_anomaly_score(baseline)
        assert 0.0 <= score <= 1.0

    def test_unusual_device_scores_higher(self, trained):
        normal = baseline_device(10, address='00:00:00:00:AA:0A')
        unusual = [
            Sighting(
                address='DE:AD:BE:EF:00:01',
                category=DeviceCategory.WIFI_NETWORK,
                timestamp=BASE_TIME + i * 1000,
                latitude=37.0 + i * 0.05,
                longitude=-122.0,
                signal_strength=-30,
            )
            for i in range(60)
        ]

        assert trained.predict_anomaly_score(unusual) > trained.predict_anomaly_score(normal)

    def test_score_devices_per_address(self, trained, baseline):
        scores = trained.score_devices(baseline_device(0) + baseline_device(1))

        assert set(scores) == {'00:00:00:00:00:00', '00:00:00:00:00:01'}
        assert all(0.0 <= s <= 1.0 for s in scores.values())

    def test_empty_sightings_score_zero(self, trained):
        assert trained.predict_anomaly_score([]) == 0.0


class TestFeedback:
    """Tests for the feedback hook."""

    def test_feedback_does_not_change_model(self, trained, baseline):
        sample = device_history('AB', count=10, interval=2000)
        before = trained.predict_anomaly_score(sample)

        trained.update_with_feedback(sample, is_false_positive=True)

        assert trained.predict_anomaly_score(sample) == before

    def test_feedback_extracts_features_for_false_positives(self, trained):
        with patch('utils.anomaly.ml_detector.extract_features', return_value=[]) as mock_extract:
            trained.update_with_feedback(device_history('AB'), is_false_positive=True)
            mock_extract.assert_called_once()

    def test_confirmed_anomaly_is_ignored(self, trained):
        with patch('utils.anomaly.ml_detector.extract_features') as mock_extract:
            trained.update_with_feedback(device_history('AB'), is_false_positive=False)
            mock_extract.assert_not_called()


class TestSharedDetector:
    """Tests for the module-level instance."""

    def test_get_returns_same_instance(self):
        reset_ml_detector()
        try:
            assert get_ml_detector() is get_ml_detector()
        finally:
            reset_ml_detector()

    def test_reset_creates_new_instance(self):
        reset_ml_detector()
        first = get_ml_detector()
        reset_ml_detector()
        try:
            assert get_ml_detector() is not first
        finally:
            reset_ml_detector()
