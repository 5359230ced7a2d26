import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable

import numpy as np

from chaincrf.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Squared L2 distance under which two inputs share a cached result
CACHE_TOLERANCE = 1e-10


@dataclass(frozen=True)
class GradientResult:
    """Value and gradient of a function at one point."""

    value: float
    grad: np.ndarray

    def merge(self, other: "GradientResult") -> "GradientResult":
        return GradientResult(self.value + other.value, self.grad + other.grad)


class GradientFn(ABC):
    """A function from a fixed-dimension real vector to ``(f(x), grad f(x))``.

    Subclasses implement ``apply``; callers go through ``__call__``, which checks the
    input dimension first.
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        pass

    @abstractmethod
    def apply(self, x: np.ndarray) -> GradientResult:
        pass

    @property
    def is_gradient_approximate(self) -> bool:
        return False

    def __call__(self, x: np.ndarray) -> GradientResult:
        x = np.asarray(x, dtype=np.float64)
        if x.ndim != 1 or x.shape[0] != self.dimension:
            raise ConfigurationError(f"Argument doesn't match dimension: {x.shape} != ({self.dimension},)")
        return self.apply(x)

    def add(self, other: "GradientFn") -> "GradientFn":
        """Compose two functions by summing their values and gradients.

        Raises
        ------
        ConfigurationError
            If the dimensions disagree
        """
        if self.dimension != other.dimension:
            raise ConfigurationError(f"Dimensions don't agree: {self.dimension} != {other.dimension}")
        return SumGradientFn(self, other)

    @staticmethod
    def from_function(dimension: int, fn: Callable[[np.ndarray], GradientResult]) -> "GradientFn":
        return FunctionGradientFn(dimension, fn)


class FunctionGradientFn(GradientFn):
    """Wraps a plain callable returning a ``GradientResult``."""

    def __init__(self, dimension: int, fn: Callable[[np.ndarray], GradientResult]):
        self._dimension = int(dimension)
        self.fn = fn

    @property
    def dimension(self) -> int:
        return self._dimension

    def apply(self, x: np.ndarray) -> GradientResult:
        return self.fn(x)


class SumGradientFn(GradientFn):
    def __init__(self, first: GradientFn, second: GradientFn):
        self.first = first
        self.second = second

    @property
    def dimension(self) -> int:
        return self.second.dimension

    @property
    def is_gradient_approximate(self) -> bool:
        return self.first.is_gradient_approximate or self.second.is_gradient_approximate

    def apply(self, x: np.ndarray) -> GradientResult:
        return self.first(x).merge(self.second(x))


@dataclass(frozen=True)
class _HistoryEntry:
    input: np.ndarray
    result: GradientResult


class CachingGradientFn(GradientFn):
    """Remembers the most recent evaluations of a wrapped function.

    The line search re-evaluates points it has just visited, so a short history
    avoids repeating expensive objective evaluations. History is kept most recent
    first; a request within ``CACHE_TOLERANCE`` (squared distance) of a cached input
    returns that result, otherwise the wrapped function is evaluated and the oldest
    entry beyond ``max_history`` is evicted.

    Cached gradients are read-only since the same array may be handed out repeatedly.

    Parameters
    ----------
    max_history : int
        Number of evaluations to remember
    fn : GradientFn
        Function to cache
    """

    def __init__(self, max_history: int, fn: GradientFn):
        if max_history < 0:
            raise ConfigurationError(f"max_history must be non-negative, got {max_history}")
        self.max_history = max_history
        self.fn = fn
        self.history: deque[_HistoryEntry] = deque(maxlen=max_history)

    @property
    def dimension(self) -> int:
        return self.fn.dimension

    @property
    def is_gradient_approximate(self) -> bool:
        return self.fn.is_gradient_approximate

    def apply(self, x: np.ndarray) -> GradientResult:
        for entry in self.history:
            diff = entry.input - x
            if float(diff @ diff) < CACHE_TOLERANCE:
                return entry.result
        result = self.fn(x)
        grad = np.array(result.grad, dtype=np.float64, copy=True)
        grad.setflags(write=False)
        result = GradientResult(float(result.value), grad)
        self.history.appendleft(_HistoryEntry(np.array(x, dtype=np.float64, copy=True), result))
        return result


class ApproximateGradientFn(GradientFn):
    """Forward-difference gradient of a scalar function.

    Useful for checking analytic gradients and for small problems without one.

    Parameters
    ----------
    dimension : int
        Input dimension
    epsilon : float
        Finite-difference step
    fn : Callable[[np.ndarray], float]
        Scalar function to differentiate
    """

    def __init__(self, dimension: int, epsilon: float, fn: Callable[[np.ndarray], float]):
        self._dimension = int(dimension)
        self.epsilon = epsilon
        self.fn = fn

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def is_gradient_approximate(self) -> bool:
        return True

    def apply(self, x: np.ndarray) -> GradientResult:
        x = np.array(x, dtype=np.float64, copy=True)
        fx = float(self.fn(x))
        grad = np.zeros(self._dimension)
        for idx in range(self._dimension):
            x[idx] += self.epsilon
            grad[idx] = (self.fn(x) - fx) / self.epsilon
            x[idx] -= self.epsilon
        return GradientResult(fx, grad)


def l2_regularizer(dimension: int, sigma_sq: float) -> GradientFn:
    """Gaussian prior penalty ``sum(x**2) / sigma_sq`` with gradient ``2 x / sigma_sq``."""
    if sigma_sq <= 0:
        raise ConfigurationError(f"sigma_sq must be positive, got {sigma_sq}")

    def _apply(x: np.ndarray) -> GradientResult:
        return GradientResult(float(x @ x) / sigma_sq, 2.0 * x / sigma_sq)

    return FunctionGradientFn(dimension, _apply)
