import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np

from chaincrf.errors import ConfigurationError


@dataclass
class NewtonMethodConfig:
    """Settings for the quasi-Newton minimization loop.

    Parameters
    ----------
    max_iters : int
        Maximum number of iterations
    tolerance : float
        Stop once the relative change in function value falls below this
    alpha : float
        Line-search step shrink factor, in (0, 1)
    beta : float
        Line-search sufficient-decrease fraction, in (0, 1)
    step_len_tolerance : float
        Smallest step (and squared gradient norm) the line search will consider
    iter_callback : Callable[[np.ndarray], bool] | None
        Called with the new point after each iteration; returning False stops
        the loop early
    """

    max_iters: int = 150
    tolerance: float = 1.0e-10
    alpha: float = 0.5
    beta: float = 0.01
    step_len_tolerance: float = 1.0e-10
    iter_callback: Callable[[np.ndarray], bool] | None = None

    def __post_init__(self):
        if self.max_iters < 0:
            raise ConfigurationError(f"max_iters must be non-negative, got {self.max_iters}")
        if not 0.0 < self.alpha < 1.0:
            raise ConfigurationError(f"alpha must be in (0, 1), got {self.alpha}")
        if not 0.0 < self.beta < 1.0:
            raise ConfigurationError(f"beta must be in (0, 1), got {self.beta}")
        if self.step_len_tolerance <= 0.0:
            raise ConfigurationError(f"step_len_tolerance must be positive, got {self.step_len_tolerance}")


@dataclass
class FeatureIndexConfig:
    """Settings for building predicate indices from training observations.

    Parameters
    ----------
    random_seed : int
        Seed for the per-worker stochastic feature acceptance draws
    num_threads : int
        Number of map-reduce workers
    probability_to_accept : float
        Probability of keeping each predicate occurrence; lower values prune
        rare predicates more aggressively
    """

    random_seed: int = 0
    num_threads: int = 1
    probability_to_accept: float = 1.0

    def __post_init__(self):
        if self.num_threads < 1:
            raise ConfigurationError(f"num_threads must be at least 1, got {self.num_threads}")
        if not 0.0 < self.probability_to_accept <= 1.0:
            raise ConfigurationError(f"probability_to_accept must be in (0, 1], got {self.probability_to_accept}")


@dataclass
class CRFTrainConfig:
    """Settings for training a linear-chain CRF.

    Parameters
    ----------
    sigma_sq : float
        Variance of the Gaussian (L2) prior on weights
    feature_acceptance_probability : float
        Probability of keeping each predicate occurrence while indexing
    max_iterations : int | None
        Overrides ``optimizer.max_iters`` when set
    lbfgs_history_size : int
        Curvature pairs kept by L-BFGS; also the objective cache size
    num_threads : int
        Workers for feature indexing and batch gradient evaluation
    random_seed : int
        Seed for feature acceptance
    map_reduce_timeout : float | None
        Seconds to wait for one batch evaluation before failing
    optimizer : NewtonMethodConfig
        Settings for the minimization loop
    iter_callback : Callable[[Any], bool] | None
        Called with a ``CRFModel`` of the current weights after each iteration;
        returning False stops training
    """

    sigma_sq: float = 1.0
    feature_acceptance_probability: float = 1.0
    max_iterations: int | None = None
    lbfgs_history_size: int = 3
    num_threads: int = 1
    random_seed: int = 0
    map_reduce_timeout: float | None = None
    optimizer: NewtonMethodConfig = field(default_factory=NewtonMethodConfig)
    iter_callback: Callable[[Any], bool] | None = None

    def __post_init__(self):
        if self.sigma_sq <= 0.0:
            raise ConfigurationError(f"sigma_sq must be positive, got {self.sigma_sq}")
        if self.lbfgs_history_size < 0:
            raise ConfigurationError(f"lbfgs_history_size must be non-negative, got {self.lbfgs_history_size}")
        if self.num_threads < 1:
            raise ConfigurationError(f"num_threads must be at least 1, got {self.num_threads}")
        if self.max_iterations is not None:
            self.optimizer = dataclasses.replace(self.optimizer, max_iters=self.max_iterations)

    @classmethod
    def with_min_expected_feature_count(cls, min_expected_feature_count: int, **kwargs) -> "CRFTrainConfig":
        """Config whose acceptance probability keeps features seen about this many times."""
        prob = 1.0 / min_expected_feature_count if min_expected_feature_count >= 1 else 1.0
        return cls(feature_acceptance_probability=prob, **kwargs)

    def feature_index_config(self) -> FeatureIndexConfig:
        return FeatureIndexConfig(
            random_seed=self.random_seed,
            num_threads=self.num_threads,
            probability_to_accept=self.feature_acceptance_probability,
        )


@dataclass
class MaxEntTrainConfig:
    """Settings for training a maximum-entropy classifier.

    Parameters
    ----------
    sigma_sq : float
        Variance of the Gaussian (L2) prior on weights
    min_expected_feature_count : int
        Features are kept with probability ``1 / min_expected_feature_count``;
        values below 1 keep everything
    num_threads : int
        Workers for batch gradient evaluation
    random_seed : int
        Seed for feature acceptance
    lbfgs_history_size : int
        Curvature pairs kept by L-BFGS; also the objective cache size
    optimizer : NewtonMethodConfig
        Settings for the minimization loop
    """

    sigma_sq: float = 1.0
    min_expected_feature_count: int = 0
    num_threads: int = 1
    random_seed: int = 0
    lbfgs_history_size: int = 3
    optimizer: NewtonMethodConfig = field(default_factory=NewtonMethodConfig)

    @property
    def feature_acceptance_probability(self) -> float:
        if self.min_expected_feature_count > 0:
            return 1.0 / self.min_expected_feature_count
        return 1.0

    def __post_init__(self):
        if self.sigma_sq <= 0.0:
            raise ConfigurationError(f"sigma_sq must be positive, got {self.sigma_sq}")
        if self.num_threads < 1:
            raise ConfigurationError(f"num_threads must be at least 1, got {self.num_threads}")
