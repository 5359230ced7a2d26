import logging
from abc import ABC, abstractmethod
from typing import Generic, Sequence, TypeVar

import numpy as np

from chaincrf.gradient_fn import GradientFn, GradientResult
from chaincrf.parallel import MapReduceDriver, MapReduceExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExampleObjectiveFn(ABC, Generic[T]):
    """Per-example objective to be maximized."""

    @abstractmethod
    def evaluate(self, example: T, weights: np.ndarray, out_grad: np.ndarray) -> float:
        """Return the example's objective value and add its gradient into ``out_grad``."""


class _ObjectiveStats:
    def __init__(self, dimension: int):
        self.value = 0.0
        self.gradient = np.zeros(dimension)


class _ObjectiveDriver(MapReduceDriver[T, _ObjectiveStats]):
    def __init__(self, example_objective: ExampleObjectiveFn[T], weights: np.ndarray):
        self.example_objective = example_objective
        self.weights = weights

    def new_data(self) -> _ObjectiveStats:
        return _ObjectiveStats(self.weights.shape[0])

    def update(self, data: _ObjectiveStats, elem: T) -> None:
        data.value += self.example_objective.evaluate(elem, self.weights, data.gradient)

    def merge(self, a: _ObjectiveStats, b: _ObjectiveStats) -> None:
        a.value += b.value
        a.gradient += b.gradient


class BatchObjectiveFn(GradientFn, Generic[T]):
    """Sum of a per-example objective over a dataset, negated for minimization.

    Examples are split into contiguous chunks, one per worker of ``executor``.
    The weight vector is copied once per evaluation and made read-only, so every
    worker sees the same snapshot.

    Parameters
    ----------
    data : Sequence[T]
        Training examples
    example_objective : ExampleObjectiveFn[T]
        Objective to maximize for each example
    dimension : int
        Weight vector length
    executor : MapReduceExecutor
        Worker pool; owned by the caller
    timeout : float | None
        Seconds to wait for one evaluation before failing
    """

    def __init__(
        self,
        data: Sequence[T],
        example_objective: ExampleObjectiveFn[T],
        dimension: int,
        executor: MapReduceExecutor,
        timeout: float | None = None,
    ):
        self.data = list(data)
        self.example_objective = example_objective
        self._dimension = int(dimension)
        self.executor = executor
        self.timeout = timeout

    @property
    def dimension(self) -> int:
        return self._dimension

    def apply(self, x: np.ndarray) -> GradientResult:
        weights = np.array(x, dtype=np.float64, copy=True)
        weights.setflags(write=False)
        stats = self.executor.map_reduce(self.data, _ObjectiveDriver(self.example_objective, weights), self.timeout)
        return GradientResult(-stats.value, -stats.gradient)
