"""Token-level evaluation of sequence taggers and held-out early stopping."""

import logging
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Protocol, Sequence, TypeVar

import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score, precision_recall_fscore_support

from chaincrf.errors import DataError
from chaincrf.parallel import MapReduceDriver, MapReduceExecutor, map_reduce

logger = logging.getLogger(__name__)

M = TypeVar("M")


class SequenceTagger(Protocol):
    def best_guess(self, observations: Sequence) -> list: ...


class _Predictions:
    def __init__(self):
        self.gold = []
        self.guess = []


class _EvalDriver(MapReduceDriver[Sequence[tuple[Hashable, object]], _Predictions]):
    def __init__(self, tagger: SequenceTagger):
        self.tagger = tagger

    def new_data(self) -> _Predictions:
        return _Predictions()

    def update(self, data: _Predictions, elem: Sequence[tuple[Hashable, object]]) -> None:
        observations = [obs for _, obs in elem]
        gold = [label for label, _ in elem][1:-1]
        guess = self.tagger.best_guess(observations)
        if len(guess) != len(gold):
            raise DataError(f"Tagger returned {len(guess)} labels for {len(gold)} positions")
        data.gold.extend(gold)
        data.guess.extend(guess)

    def merge(self, a: _Predictions, b: _Predictions) -> None:
        a.gold.extend(b.gold)
        a.guess.extend(b.guess)


@dataclass
class Evaluation:
    """Token accuracy and per-state precision/recall/F1 of a tagger.

    Attributes
    ----------
    token_accuracy : float
        Fraction of interior positions labeled correctly
    num_tokens : int
        Number of interior positions evaluated
    state_metrics : pd.DataFrame
        One row per state with ``precision``, ``recall``, ``f1`` and ``support``
    """

    token_accuracy: float
    num_tokens: int
    state_metrics: pd.DataFrame

    @classmethod
    def compute(
        cls,
        tagger: SequenceTagger,
        data: Sequence[Sequence[tuple[Hashable, object]]],
        executor: MapReduceExecutor | None = None,
    ) -> "Evaluation":
        """Tag every sequence and score the interior positions.

        Parameters
        ----------
        tagger : SequenceTagger
            Anything with ``best_guess(observations) -> labels``
        data : Sequence[Sequence[tuple[Hashable, object]]]
            Start/stop padded (label, observation) sequences
        executor : MapReduceExecutor | None
            Worker pool to tag with; a single-threaded pool is used when omitted

        Returns
        -------
        Evaluation
        """
        driver = _EvalDriver(tagger)
        if executor is None:
            preds = map_reduce(data, driver, num_threads=1, name="eval")
        else:
            preds = executor.map_reduce(data, driver)
        if not preds.gold:
            return cls(0.0, 0, pd.DataFrame(columns=["state", "precision", "recall", "f1", "support"]))
        gold = np.array([str(x) for x in preds.gold])
        guess = np.array([str(x) for x in preds.guess])
        labels = sorted(set(gold) | set(guess))
        precision, recall, f1, support = precision_recall_fscore_support(
            gold, guess, labels=labels, zero_division=0
        )
        state_metrics = pd.DataFrame(
            {"state": labels, "precision": precision, "recall": recall, "f1": f1, "support": support}
        )
        return cls(float(accuracy_score(gold, guess)), len(gold), state_metrics)


class TrainCriterion(Generic[M]):
    """Held-out early stopping for use as a per-iteration training callback.

    Each call evaluates the candidate model. A drop of more than ``dip_tolerance``
    below the last accepted score counts as a dip; training is stopped (the call
    returns False) once more than ``max_num_dip_iters`` consecutive dips occur.
    The best model seen is kept in ``best_model``.

    Parameters
    ----------
    eval_fn : Callable[[M], float]
        Scores a model; higher is better
    dip_tolerance : float
        Smallest drop that counts as a dip
    max_num_dip_iters : int
        Consecutive dips tolerated before stopping; 0 stops at the first dip
    """

    def __init__(self, eval_fn: Callable[[M], float], dip_tolerance: float = 1.0e-4, max_num_dip_iters: int = 0):
        self.eval_fn = eval_fn
        self.dip_tolerance = dip_tolerance
        self.max_num_dip_iters = max_num_dip_iters
        self.best_model: M | None = None
        self.last_value = -np.inf
        self.num_iters = 0
        self.num_dip_iters = 0

    def __call__(self, model: M) -> bool:
        value = self.eval_fn(model)
        logger.info(f"[Iteration {self.num_iters}] Eval metric: {value:.3f}")
        self.num_iters += 1
        if self.last_value - value > self.dip_tolerance:
            self.num_dip_iters += 1
            if self.num_dip_iters > self.max_num_dip_iters:
                logger.info("Exceeded max dip iters, bailing")
                return False
            logger.info(f"Another down iteration, waiting {self.max_num_dip_iters - self.num_dip_iters} more iters")
            return True
        self.num_dip_iters = 0
        self.last_value = value
        self.best_model = model
        return True
