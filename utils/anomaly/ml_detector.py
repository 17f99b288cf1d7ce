"""
Machine-learning anomaly detection using an on-device Isolation Forest.

The model is trained from a snapshot of recent history and replaced
wholesale on every training call.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

import numpy as np

from .constants import DEFAULT_NUMBER_OF_TREES, DEFAULT_SUBSAMPLE_SIZE
from .features import extract_device_features, extract_features, group_by_address
from .isolation_forest import IsolationForest
from .models import Sighting

logger = logging.getLogger('tailguard.anomaly.ml')


class MLAnomalyDetector:
    """
    Trains and queries an Isolation Forest over per-device features.

    Training is exclusive (guarded by a lock) and ends with a single
    reference swap; inference only reads the current forest reference, so
    it is safe from worker threads once training has finished.
    """

    def __init__(self, random_state: Optional[int] = None):
        """
        Args:
            random_state: Seed for tree construction. None draws fresh entropy.
        """
        self.random_state = random_state
        self._forest: Optional[IsolationForest] = None
        self._train_lock = threading.Lock()

    def train_model(
        self,
        history: Iterable[Sighting],
        number_of_trees: int = DEFAULT_NUMBER_OF_TREES,
        subsample_size: int = DEFAULT_SUBSAMPLE_SIZE,
        random_state: Optional[int] = None,
    ) -> bool:
        """
        Train a new forest on historical sightings of normal behaviour.

        Args:
            random_state: Seed for this training run; falls back to the
                detector's own seed when None.

        Returns:
            True if a model was trained, False if there was nothing to learn from.
        """
        features = extract_features(history)
        if not features:
            logger.debug("ML training skipped: no sightings")
            return False

        seed = self.random_state if random_state is None else random_state
        with self._train_lock:
            forest = IsolationForest(
                number_of_trees=number_of_trees,
                subsample_size=min(subsample_size, len(features)),
                rng=np.random.default_rng(seed),
            )
            forest.train([f.to_array() for f in features])
            self._forest = forest

        logger.info(
            "ML model trained on %d devices (%d trees, subsample %d)",
            len(features), number_of_trees, forest.subsample_size,
        )
        return True

    def predict_anomaly_score(self, sightings: Iterable[Sighting]) -> float:
        """
        Mean forest score across the devices present in the sightings.

        Returns 0.0 when the model is untrained or nothing can be extracted.
        """
        forest = self._forest
        if forest is None or not forest.is_trained:
            return 0.0

        features = extract_features(sightings)
        if not features:
            return 0.0

        return float(np.mean([forest.predict(f.to_array()) for f in features]))

    def score_devices(self, sightings: Iterable[Sighting]) -> dict[str, float]:
        """Per-device forest scores; empty when the model is untrained."""
        forest = self._forest
        if forest is None or not forest.is_trained:
            return {}

        return {
            address: forest.predict(extract_device_features(device_sightings).to_array())
            for address, device_sightings in group_by_address(sightings).items()
        }

    def update_with_feedback(
        self,
        sightings: Iterable[Sighting],
        is_false_positive: bool,
    ) -> None:
        """
        Accept user feedback on a batch of sightings.

        Features are extracted for later incorporation; the trained forest
        is never modified here.
        """
        if not is_false_positive or not self.is_model_ready():
            return

        features = extract_features(sightings)
        logger.debug("Feedback received for %d devices (model unchanged)", len(features))

    def is_model_ready(self) -> bool:
        forest = self._forest
        return forest is not None and forest.is_trained


# Module-level instance shared by the HTTP routes and the CLI
_detector: Optional[MLAnomalyDetector] = None
_detector_lock = threading.Lock()


def get_ml_detector(random_state: Optional[int] = None) -> MLAnomalyDetector:
    """Get or create the shared ML detector."""
    global _detector
    with _detector_lock:
        if _detector is None:
            _detector = MLAnomalyDetector(random_state=random_state)
        return _detector


def reset_ml_detector() -> None:
    """Drop the shared ML detector (used by tests)."""
    global _detector
    with _detector_lock:
        _detector = None
