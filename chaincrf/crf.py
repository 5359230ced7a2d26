import dataclasses
import logging
from enum import Enum
from typing import Generic, Hashable, Sequence, TypeVar

import numpy as np

from chaincrf.config import CRFTrainConfig
from chaincrf.encoding import CRFIndexedExample, CRFWeightsEncoder
from chaincrf.errors import DataError, InvariantViolationError
from chaincrf.features import CRFFeatureEncoder, CRFPredicateExtractor
from chaincrf.forward_backwards import ForwardBackwards
from chaincrf.gradient_fn import CachingGradientFn, l2_regularizer
from chaincrf.objective import BatchObjectiveFn, ExampleObjectiveFn
from chaincrf.optimize import LBFGS, MinimizeResult, NewtonMethod
from chaincrf.parallel import MapReduceExecutor
from chaincrf.state_space import StateSpace

logger = logging.getLogger(__name__)

O = TypeVar("O")
S = TypeVar("S", bound=Hashable)

# Slack allowed when checking probabilistic identities of inference results
MARGINAL_TOLERANCE = 1e-6
LOG_LIKELIHOOD_TOLERANCE = 1e-8


class CRFLogLikelihoodObjective(ExampleObjectiveFn[CRFIndexedExample]):
    """Log-probability of the gold label path under a linear-chain CRF.

    The value is the sum of gold transition potentials minus ``log Z``. The gradient
    is observed predicate counts on the gold path minus counts expected under the
    model's node and edge marginals.

    Parameters
    ----------
    weights_encoder : CRFWeightsEncoder
        Layout of the weight vector
    """

    def __init__(self, weights_encoder: CRFWeightsEncoder):
        self.weights_encoder = weights_encoder
        self.forward_backwards = ForwardBackwards(weights_encoder.state_space)

    def gold_transitions(self, example: CRFIndexedExample) -> np.ndarray:
        """Transition index between each consecutive pair of gold labels.

        Raises
        ------
        DataError
            If the example is unlabeled or a gold pair has no transition
        """
        if not example.is_labeled:
            raise DataError("Requires labeled example")
        state_space = self.weights_encoder.state_space
        gold = example.gold_labels
        transitions = np.empty(len(gold) - 1, dtype=np.int64)
        for idx in range(len(gold) - 1):
            transition = state_space.transition_for_indices(int(gold[idx]), int(gold[idx + 1]))
            if transition is None:
                states = state_space.states
                raise DataError(f"Gold transition doesn't exist [{states[gold[idx]]}, {states[gold[idx + 1]]}]")
            transitions[idx] = transition.index
        return transitions

    def evaluate(self, example: CRFIndexedExample, weights: np.ndarray, out_grad: np.ndarray) -> float:
        gold_transitions = self.gold_transitions(example)
        potentials = self.weights_encoder.fill_potentials(weights, example)
        fb_result = self.forward_backwards.compute(potentials)
        log_numerator = float(potentials[np.arange(len(gold_transitions)), gold_transitions].sum())
        log_denominator = fb_result.log_z
        node_marginals = fb_result.node_marginals
        interior_sums = node_marginals[1:-1].sum(axis=1)
        if np.any(np.abs(interior_sums - 1.0) > MARGINAL_TOLERANCE):
            raise InvariantViolationError(f"Node marginals don't sum to 1: {interior_sums}")
        if log_numerator > log_denominator + LOG_LIKELIHOOD_TOLERANCE * max(1.0, abs(log_denominator)):
            raise InvariantViolationError(
                f"Gold path score {log_numerator} exceeds log partition {log_denominator}"
            )
        self.weights_encoder.scatter_gradient(
            out_grad, example, gold_transitions, node_marginals, fb_result.edge_marginals
        )
        return log_numerator - log_denominator


class InferenceMode(Enum):
    VITERBI = "viterbi"
    MAX_TOKEN = "max_token"


class CRFModel(Generic[S, O]):
    """A trained linear-chain CRF.

    Parameters
    ----------
    feature_encoder : CRFFeatureEncoder
        Indexes observation sequences
    weights_encoder : CRFWeightsEncoder
        Layout of ``weights``
    weights : np.ndarray
        Trained weight vector; copied on construction
    inference_mode : InferenceMode
        VITERBI returns the best path; MAX_TOKEN returns the per-position argmax
        of node marginals
    """

    def __init__(
        self,
        feature_encoder: CRFFeatureEncoder,
        weights_encoder: CRFWeightsEncoder,
        weights: np.ndarray,
        inference_mode: InferenceMode = InferenceMode.VITERBI,
    ):
        self.feature_encoder = feature_encoder
        self.weights_encoder = weights_encoder
        self._weights = np.array(weights, dtype=np.float64, copy=True)
        self._weights.setflags(write=False)
        self.inference_mode = inference_mode
        self.forward_backwards = ForwardBackwards(feature_encoder.state_space)

    def weights(self) -> np.ndarray:
        """Copy of the weight vector."""
        return self._weights.copy()

    def best_guess(self, observations: Sequence[O]) -> list[S]:
        """Predict labels for a start/stop padded observation sequence.

        Parameters
        ----------
        observations : Sequence[O]
            Observations, including the padding at both ends

        Returns
        -------
        list[S]
            One label per interior position; the padding is not labeled

        Raises
        ------
        DataError
            If fewer than two observations are given
        """
        if len(observations) < 2:
            raise DataError(f"Need at least start and stop padding, got {len(observations)} observations")
        example = self.feature_encoder.indexed_example(observations)
        potentials = self.weights_encoder.fill_potentials(self._weights, example)
        fb_result = self.forward_backwards.compute(potentials)
        if self.inference_mode is InferenceMode.VITERBI:
            return fb_result.viterbi
        states = self.feature_encoder.state_space.states
        best = np.argmax(fb_result.node_marginals[1:-1], axis=1)
        return [states[idx] for idx in best]


class CRFTrainer(Generic[S, O]):
    """Builds the state space and feature indices, then fits CRF weights.

    Parameters
    ----------
    labeled_data : Sequence[Sequence[tuple[O, S]]]
        (observation, label) sequences padded with start/stop; used to derive the
        state space and predicate indices
    predicate_extractor : CRFPredicateExtractor
        Source of named predicates
    config : CRFTrainConfig | None
        Training settings

    Raises
    ------
    DataError
        If the data is empty or sequences disagree on start/stop padding
    """

    def __init__(
        self,
        labeled_data: Sequence[Sequence[tuple[O, S]]],
        predicate_extractor: CRFPredicateExtractor,
        config: CRFTrainConfig | None = None,
    ):
        self.config = config if config is not None else CRFTrainConfig()
        self.predicate_extractor = predicate_extractor
        self.last_result: MinimizeResult | None = None
        logger.info(f"CRF training with {self.config.num_threads} threads and {len(labeled_data)} labeled examples")
        if not labeled_data:
            raise DataError("No labeled examples to train on")
        just_labels = [[label for _, label in example] for example in labeled_data]
        first = just_labels[0]
        if len(first) < 2:
            raise DataError("Labeled sequences must include start and stop padding")
        start_state, stop_state = first[0], first[-1]
        self._ensure_start_stop_padded(just_labels, start_state, stop_state)
        state_space = StateSpace.build_from_sequences(just_labels, start_state, stop_state)
        logger.info(f"StateSpace: num states {state_space.num_states}, num transitions {state_space.num_transitions}")
        observations = [[obs for obs, _ in example] for example in labeled_data]
        self.feature_encoder = CRFFeatureEncoder.build(
            observations, predicate_extractor, state_space, self.config.feature_index_config()
        )
        logger.info(
            f"Number of node predicates: {len(self.feature_encoder.node_features)}, "
            f"edge predicates: {len(self.feature_encoder.edge_features)}"
        )
        self.weights_encoder = CRFWeightsEncoder(
            state_space, len(self.feature_encoder.node_features), len(self.feature_encoder.edge_features)
        )

    @staticmethod
    def _ensure_start_stop_padded(just_labels: list[list], start_state: Hashable, stop_state: Hashable) -> None:
        for labels in just_labels:
            if len(labels) < 2 or labels[0] != start_state or labels[-1] != stop_state:
                raise DataError("Not all sequences padded with the same start/stop states")

    def model_for_weights(self, weights: np.ndarray) -> CRFModel[S, O]:
        return CRFModel(self.feature_encoder, self.weights_encoder, weights)

    def train(self, labeled_data: Sequence[Sequence[tuple[O, S]]]) -> CRFModel[S, O]:
        """Fit weights by L-BFGS on the L2-regularized negative log-likelihood.

        Parameters
        ----------
        labeled_data : Sequence[Sequence[tuple[O, S]]]
            Start/stop padded (observation, label) sequences

        Returns
        -------
        CRFModel
            Model for the final weights
        """
        state_space = self.weights_encoder.state_space
        self._ensure_start_stop_padded(
            [[label for _, label in example] for example in labeled_data],
            state_space.start_state,
            state_space.stop_state,
        )
        indexed_data = [self.feature_encoder.index_labeled_example(example) for example in labeled_data]
        objective = CRFLogLikelihoodObjective(self.weights_encoder)
        optimizer_config = self.config.optimizer
        if self.config.iter_callback is not None:
            model_callback = self.config.iter_callback
            optimizer_config = dataclasses.replace(
                optimizer_config, iter_callback=lambda weights: model_callback(self.model_for_weights(weights))
            )
        executor = MapReduceExecutor(self.config.num_threads, name="crf-train")
        try:
            obj_fn = BatchObjectiveFn(
                indexed_data,
                objective,
                self.weights_encoder.num_parameters,
                executor,
                self.config.map_reduce_timeout,
            )
            regularizer = l2_regularizer(obj_fn.dimension, self.config.sigma_sq)
            cached_obj_fn = CachingGradientFn(self.config.lbfgs_history_size, obj_fn.add(regularizer))
            history_size = self.config.lbfgs_history_size
            optimizer = NewtonMethod(lambda _: LBFGS(history_size), optimizer_config)
            result = optimizer.minimize(cached_obj_fn)
        finally:
            executor.shutdown()
        self.last_result = result
        logger.info(f"Training finished after {result.num_iterations} iterations with objective {result.value}")
        return self.model_for_weights(result.x)


def train_crf(
    labeled_sequences: Sequence[Sequence[tuple[O, S]]],
    predicate_extractor: CRFPredicateExtractor,
    config: CRFTrainConfig | None = None,
) -> CRFModel[S, O]:
    """Train a CRF on start/stop padded (observation, label) sequences."""
    trainer = CRFTrainer(labeled_sequences, predicate_extractor, config)
    return trainer.train(labeled_sequences)
