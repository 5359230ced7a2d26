"""Multi-class maximum-entropy (multinomial logistic regression) classifier.

Shares the optimization stack used for CRF training: a batch objective over the
training data plus an L2 prior, minimized with L-BFGS.
"""
import logging
from typing import BinaryIO, Callable, Generic, Hashable, Mapping, Sequence, TypeVar

import numpy as np

from chaincrf import io_utils
from chaincrf.config import MaxEntTrainConfig
from chaincrf.errors import ConfigurationError
from chaincrf.gradient_fn import CachingGradientFn, l2_regularizer
from chaincrf.indexer import Indexer
from chaincrf.numerics import log_sum_exp, sloppy_exp
from chaincrf.objective import BatchObjectiveFn, ExampleObjectiveFn
from chaincrf.optimize import LBFGS, NewtonMethod
from chaincrf.parallel import MapReduceExecutor

logger = logging.getLogger(__name__)

D = TypeVar("D")
L = TypeVar("L", bound=Hashable)

FeatureExtractor = Callable[[D], Mapping[str, float]]

# (class index, predicate indices, predicate values)
IndexedDatum = tuple[int, np.ndarray, np.ndarray]


def weight_index(pred_idx: int, class_idx: int, num_classes: int) -> int:
    return pred_idx * num_classes + class_idx


def class_probs(pred_indices: np.ndarray, pred_values: np.ndarray, weights: np.ndarray, num_classes: int) -> np.ndarray:
    """Posterior class distribution for one indexed feature vector."""
    log_scores = np.zeros(num_classes)
    for pred_idx, pred_val in zip(pred_indices, pred_values):
        start = weight_index(int(pred_idx), 0, num_classes)
        log_scores += weights[start : start + num_classes] * pred_val
    log_z = log_sum_exp(log_scores)
    return np.array([sloppy_exp(s - log_z) for s in log_scores])


class MaxEntObjective(ExampleObjectiveFn[IndexedDatum]):
    """Log-probability of the true class; gradient is observed minus expected features."""

    def __init__(self, num_classes: int):
        self.num_classes = num_classes

    def evaluate(self, example: IndexedDatum, weights: np.ndarray, out_grad: np.ndarray) -> float:
        true_class, pred_indices, pred_values = example
        probs = class_probs(pred_indices, pred_values, weights, self.num_classes)
        for pred_idx, pred_val in zip(pred_indices, pred_values):
            start = weight_index(int(pred_idx), 0, self.num_classes)
            out_grad[start + true_class] += pred_val
            out_grad[start : start + self.num_classes] -= probs * pred_val
        return float(np.log(probs[true_class]))


def _index_features(features: Mapping[str, float], indexer: Indexer[str]) -> tuple[np.ndarray, np.ndarray]:
    indices = []
    values = []
    for feat, val in features.items():
        idx = indexer.index_of(feat)
        if idx >= 0 and val != 0.0:
            indices.append(idx)
            values.append(val)
    return np.array(indices, dtype=np.int64), np.array(values, dtype=np.float64)


class MaxEntModel(Generic[L, D]):
    """Trained maximum-entropy classifier.

    Parameters
    ----------
    feature_indexer : Indexer[str]
        Index of feature names
    class_indexer : Indexer[L]
        Index of class labels
    weights : np.ndarray
        Weight per (feature, class), laid out by ``weight_index``
    feature_extractor : FeatureExtractor
        Maps a datum to named feature values
    """

    DATA_VERSION = "1.0"

    def __init__(
        self,
        feature_indexer: Indexer[str],
        class_indexer: Indexer[L],
        weights: np.ndarray,
        feature_extractor: FeatureExtractor,
    ):
        if weights.shape[0] != len(feature_indexer) * len(class_indexer):
            raise ConfigurationError(
                f"Expected {len(feature_indexer) * len(class_indexer)} weights, got {weights.shape[0]}"
            )
        self.feature_indexer = feature_indexer
        self.class_indexer = class_indexer
        self.weights = np.array(weights, dtype=np.float64, copy=True)
        self.feature_extractor = feature_extractor

    def probabilities(self, datum: D) -> dict[L, float]:
        indices, values = _index_features(self.feature_extractor(datum), self.feature_indexer)
        probs = class_probs(indices, values, self.weights, len(self.class_indexer))
        return {label: float(p) for label, p in zip(self.class_indexer, probs)}

    def best_guess(self, datum: D) -> L:
        probs = self.probabilities(datum)
        return max(probs, key=probs.get)

    def save(self, stream: BinaryIO) -> None:
        io_utils.write_version(stream, self.DATA_VERSION)
        self.feature_indexer.save(stream)
        self.class_indexer.save(stream)
        io_utils.save_doubles(stream, self.weights)

    @classmethod
    def load(cls, stream: BinaryIO, feature_extractor: FeatureExtractor) -> "MaxEntModel[str, D]":
        io_utils.ensure_version_match(stream, cls.DATA_VERSION)
        feature_indexer = Indexer.load(stream)
        class_indexer = Indexer.load(stream)
        weights = io_utils.load_doubles(stream)
        return cls(feature_indexer, class_indexer, weights, feature_extractor)

    @classmethod
    def train(
        cls,
        labeled_data: Sequence[tuple[D, L]],
        feature_extractor: FeatureExtractor,
        config: MaxEntTrainConfig | None = None,
    ) -> "MaxEntModel[L, D]":
        """Fit a classifier on (datum, label) pairs.

        Parameters
        ----------
        labeled_data : Sequence[tuple[D, L]]
            Training examples
        feature_extractor : FeatureExtractor
            Maps a datum to named feature values
        config : MaxEntTrainConfig | None
            Training settings

        Returns
        -------
        MaxEntModel
        """
        config = config if config is not None else MaxEntTrainConfig()
        rng = np.random.default_rng(config.random_seed)
        prob_accept = config.feature_acceptance_probability
        features = [feature_extractor(datum) for datum, _ in labeled_data]
        kept = (f for feats in features for f in sorted(feats) if prob_accept >= 1.0 or rng.random() < prob_accept)
        feature_indexer = Indexer(kept)
        class_indexer = Indexer(label for _, label in labeled_data)
        num_classes = len(class_indexer)
        logger.info(f"MaxEnt training with {len(feature_indexer)} features and {num_classes} classes")
        indexed_data = [
            (class_indexer.index_of(label), *_index_features(feats, feature_indexer))
            for feats, (_, label) in zip(features, labeled_data)
        ]
        executor = MapReduceExecutor(config.num_threads, name="max-ent-train")
        try:
            obj_fn = BatchObjectiveFn(
                indexed_data, MaxEntObjective(num_classes), len(feature_indexer) * num_classes, executor
            )
            cached_obj_fn = CachingGradientFn(
                config.lbfgs_history_size, obj_fn.add(l2_regularizer(obj_fn.dimension, config.sigma_sq))
            )
            history_size = config.lbfgs_history_size
            result = NewtonMethod(lambda _: LBFGS(history_size), config.optimizer).minimize(cached_obj_fn)
        finally:
            executor.shutdown()
        return cls(feature_indexer, class_indexer, result.x, feature_extractor)
