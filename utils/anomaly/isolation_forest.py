"""
Isolation Forest anomaly model.

An ensemble of randomized binary partition trees. Points that are isolated
after few splits (short average path length) score close to 1.0.

Randomness comes only from the injected numpy Generator, so training with
the same seed and data always builds the same forest.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np

from .constants import (
    DEFAULT_NUMBER_OF_TREES,
    DEFAULT_SUBSAMPLE_SIZE,
    EULER_GAMMA,
)

RandomSource = Union[np.random.Generator, int, None]


def average_path_length(sample_size: int) -> float:
    """
    Expected path length of an unsuccessful BST search, c(n).

    c(n) = 2 * H(n - 1) - 2 * (n - 1) / n with H(i) ~ ln(i) + gamma.
    Returns 0.0 for n <= 1.
    """
    if sample_size <= 1:
        return 0.0
    harmonic = math.log(sample_size - 1.0) + EULER_GAMMA
    return 2.0 * harmonic - (2.0 * (sample_size - 1.0) / sample_size)


def _as_generator(rng: RandomSource) -> np.random.Generator:
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


@dataclass(frozen=True)
class IsolationLeaf:
    """External node holding the number of training samples that reached it."""
    size: int


@dataclass(frozen=True)
class IsolationSplit:
    """Internal node: values < threshold go left, the rest go right."""
    feature: int
    threshold: float
    left: 'IsolationNode'
    right: 'IsolationNode'


IsolationNode = Union[IsolationLeaf, IsolationSplit]


class IsolationTree:
    """A single height-bounded random partition tree."""

    def __init__(self, max_height: int):
        self.max_height = max_height
        self.root: Optional[IsolationNode] = None

    def build(self, data: np.ndarray, rng: np.random.Generator) -> 'IsolationTree':
        """
        Build the tree from a 2-D array of training vectors.

        Returns:
            self, for chaining.
        """
        self.root = self._build_node(data, 0, rng)
        return self

    def _build_node(
        self,
        data: np.ndarray,
        height: int,
        rng: np.random.Generator,
    ) -> IsolationNode:
        size = data.shape[0]
        if height >= self.max_height or size <= 1:
            return IsolationLeaf(size=size)

        feature = int(rng.integers(data.shape[1]))
        column = data[:, feature]
        low = float(column.min())
        high = float(column.max())

        # Degenerate split: chosen feature is constant in this partition
        if low >= high:
            return IsolationLeaf(size=size)

        threshold = float(rng.uniform(low, high))
        if threshold <= low:
            threshold = (low + high) / 2.0

        mask = column < threshold
        return IsolationSplit(
            feature=feature,
            threshold=threshold,
            left=self._build_node(data[mask], height + 1, rng),
            right=self._build_node(data[~mask], height + 1, rng),
        )

    def path_length(self, vector: Sequence[float]) -> float:
        """
        Depth at which the vector lands in a leaf, plus c(leaf size).

        An unbuilt tree returns 0.0.
        """
        node = self.root
        depth = 0
        while isinstance(node, IsolationSplit):
            node = node.left if vector[node.feature] < node.threshold else node.right
            depth += 1

        if node is None:
            return 0.0
        return depth + average_path_length(node.size)


class IsolationForest:
    """
    Ensemble of isolation trees.

    State is either untrained (no trees, every score is 0.0) or trained.
    Retraining replaces the whole tree collection.
    """

    def __init__(
        self,
        number_of_trees: int = DEFAULT_NUMBER_OF_TREES,
        subsample_size: int = DEFAULT_SUBSAMPLE_SIZE,
        rng: RandomSource = None,
    ):
        """
        Initialize the forest.

        Args:
            number_of_trees: Ensemble size.
            subsample_size: Training vectors drawn (without replacement) per tree.
            rng: numpy Generator or integer seed for reproducible training.
        """
        self.number_of_trees = number_of_trees
        self.subsample_size = subsample_size
        self._rng = _as_generator(rng)
        self._trees: tuple[IsolationTree, ...] = ()
        self._normalizer = 0.0

    @property
    def is_trained(self) -> bool:
        return bool(self._trees)

    @property
    def trees(self) -> tuple[IsolationTree, ...]:
        return self._trees

    def train(self, vectors: Sequence[Sequence[float]]) -> None:
        """
        Train on normalized feature vectors of normal behaviour.

        An empty input leaves the forest untrained.
        """
        data = np.asarray(vectors, dtype=float)
        if data.ndim != 2 or data.shape[0] == 0:
            self._trees = ()
            self._normalizer = 0.0
            return

        sample_size = min(self.subsample_size, data.shape[0])
        max_height = math.ceil(math.log2(sample_size)) if sample_size > 1 else 0

        trees = []
        for _ in range(self.number_of_trees):
            indices = self._rng.choice(data.shape[0], size=sample_size, replace=False)
            trees.append(IsolationTree(max_height).build(data[indices], self._rng))

        self._normalizer = average_path_length(sample_size)
        self._trees = tuple(trees)

    def average_path(self, vector: Sequence[float]) -> float:
        """Mean path length of the vector across all trees."""
        if not self._trees:
            return 0.0
        return float(np.mean([tree.path_length(vector) for tree in self._trees]))

    def predict(self, vector: Sequence[float]) -> float:
        """
        Anomaly score in [0, 1]; higher means more anomalous.

        Untrained forests, and forests trained on a single sample (where the
        normalizer c(1) is zero), return 0.0.
        """
        if not self._trees or self._normalizer <= 0.0:
            return 0.0

        score = 2.0 ** (-self.average_path(vector) / self._normalizer)
        return min(max(score, 0.0), 1.0)
