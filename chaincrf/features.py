import logging
from abc import ABC, abstractmethod
from typing import Generic, Hashable, Mapping, Sequence, TypeVar

import numpy as np

from chaincrf.config import FeatureIndexConfig
from chaincrf.encoding import CRFIndexedExample
from chaincrf.errors import DataError
from chaincrf.indexer import Indexer
from chaincrf.parallel import MapReduceDriver, map_reduce
from chaincrf.state_space import StateSpace

logger = logging.getLogger(__name__)

O = TypeVar("O")
F = TypeVar("F", bound=Hashable)


class CRFPredicateExtractor(ABC, Generic[O, F]):
    """Extracts named, real-valued predicates from a padded observation sequence."""

    @abstractmethod
    def node_predicates(self, elems: Sequence[O]) -> list[Mapping[F, float]]:
        """One predicate mapping per position."""

    @abstractmethod
    def edge_predicates(self, elems: Sequence[O]) -> list[Mapping[F, float]]:
        """One predicate mapping per adjacent pair of positions."""


def _index_features(feat_vecs: list[Mapping[F, float]], indexer: Indexer[F]) -> list[dict[int, float]]:
    indexed = []
    for feat_vec in feat_vecs:
        vec = {}
        for feat, val in feat_vec.items():
            idx = indexer.index_of(feat)
            if idx >= 0:
                vec[idx] = val
        indexed.append(vec)
    return indexed


class _IndexData:
    def __init__(self):
        self.node_features = set()
        self.edge_features = set()


class _IndexDriver(MapReduceDriver[tuple[int, Sequence[O]], _IndexData]):
    def __init__(self, predicate_extractor: CRFPredicateExtractor, config: FeatureIndexConfig):
        self.predicate_extractor = predicate_extractor
        self.config = config

    def new_data(self) -> _IndexData:
        return _IndexData()

    def update(self, data: _IndexData, elem: tuple[int, Sequence[O]]) -> None:
        example_idx, observations = elem
        # One stream per example position, independent of chunking
        rng = np.random.default_rng([self.config.random_seed, example_idx])
        self._stochastic_add_all(rng, data.node_features, self.predicate_extractor.node_predicates(observations))
        self._stochastic_add_all(rng, data.edge_features, self.predicate_extractor.edge_predicates(observations))

    def merge(self, a: _IndexData, b: _IndexData) -> None:
        a.node_features |= b.node_features
        a.edge_features |= b.edge_features

    def _stochastic_add_all(self, rng: np.random.Generator, feats: set, feat_vecs: list[Mapping]) -> None:
        prob = self.config.probability_to_accept
        for feat_vec in feat_vecs:
            for feat in sorted(feat_vec):
                if prob >= 1.0 or rng.random() < prob:
                    feats.add(feat)


class CRFFeatureEncoder(Generic[O, F]):
    """Turns observation sequences into ``CRFIndexedExample`` instances.

    Parameters
    ----------
    predicate_extractor : CRFPredicateExtractor[O, F]
        Source of named predicates
    state_space : StateSpace
        States used to index gold labels
    node_features : Indexer[F]
        Index of node predicates
    edge_features : Indexer[F]
        Index of edge predicates
    """

    def __init__(
        self,
        predicate_extractor: CRFPredicateExtractor[O, F],
        state_space: StateSpace,
        node_features: Indexer[F],
        edge_features: Indexer[F],
    ):
        self.predicate_extractor = predicate_extractor
        self.state_space = state_space
        self.node_features = node_features
        self.edge_features = edge_features

    def indexed_example(self, observations: Sequence[O]) -> CRFIndexedExample:
        """Index an unlabeled, start/stop padded observation sequence; unknown predicates are dropped."""
        observations = list(observations)
        node_preds = _index_features(self.predicate_extractor.node_predicates(observations), self.node_features)
        edge_preds = _index_features(self.predicate_extractor.edge_predicates(observations), self.edge_features)
        return CRFIndexedExample(node_preds, edge_preds)

    def index_labeled_example(self, labeled_example: Sequence[tuple[O, Hashable]]) -> CRFIndexedExample:
        """Index a start/stop padded sequence of (observation, label) pairs.

        Raises
        ------
        DataError
            If the sequence does not start with the start state and end with the
            stop state, or uses a label outside the state space
        """
        observations = [obs for obs, _ in labeled_example]
        labels = [label for _, label in labeled_example]
        gold_labels = [self.state_space.state_index(label) for label in labels]
        if not gold_labels or gold_labels[0] != StateSpace.START_INDEX:
            raise DataError(f"Must use StateSpace start state to start sequence, instead got {labels[:1]}")
        if gold_labels[-1] != StateSpace.STOP_INDEX:
            raise DataError(f"Must use StateSpace stop state to end sequence, instead got {labels[-1]}")
        unknown = [label for label, idx in zip(labels, gold_labels) if idx < 0]
        if unknown:
            raise DataError(f"Labels not in state space: {sorted(set(map(str, unknown)))}")
        node_preds = _index_features(self.predicate_extractor.node_predicates(observations), self.node_features)
        edge_preds = _index_features(self.predicate_extractor.edge_predicates(observations), self.edge_features)
        return CRFIndexedExample(node_preds, edge_preds, gold_labels)

    @classmethod
    def build(
        cls,
        examples: Sequence[Sequence[O]],
        predicate_extractor: CRFPredicateExtractor[O, F],
        state_space: StateSpace,
        config: FeatureIndexConfig | None = None,
    ) -> "CRFFeatureEncoder[O, F]":
        """Index every predicate seen in ``examples``.

        Each predicate occurrence is kept with probability
        ``config.probability_to_accept``, so rare predicates tend to be pruned.
        Draws for each example come from a generator seeded with
        ``(config.random_seed, example position)``, so the result does not depend
        on the number of threads. The resulting indices are sorted.

        Parameters
        ----------
        examples : Sequence[Sequence[O]]
            Padded observation sequences
        predicate_extractor : CRFPredicateExtractor[O, F]
            Source of named predicates
        state_space : StateSpace
            States used to index gold labels
        config : FeatureIndexConfig | None
            Indexing settings

        Returns
        -------
        CRFFeatureEncoder
        """
        config = config if config is not None else FeatureIndexConfig()
        logger.info(
            f"Indexing features with {config.probability_to_accept} prob to keep and {config.num_threads} threads"
        )
        index_data = map_reduce(
            list(enumerate(examples)),
            _IndexDriver(predicate_extractor, config),
            config.num_threads,
            name="feature-index",
        )
        return cls(
            predicate_extractor,
            state_space,
            Indexer(sorted(index_data.node_features)),
            Indexer(sorted(index_data.edge_features)),
        )
