import numpy as np
import pytest

from chaincrf.evaluation import Evaluation, TrainCriterion
from chaincrf.parallel import MapReduceExecutor


class LookupTagger:
    """Tags each observation from a fixed table, falling back to "O"."""

    def __init__(self, table: dict[str, str]):
        self.table = table

    def best_guess(self, observations):
        return [self.table.get(obs, "O") for obs in observations[1:-1]]


def padded(pairs: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """Wrap (label, observation) pairs with start and stop padding."""
    return [("<s>", "<s>")] + pairs + [("</s>", "</s>")]


DATA = [
    padded([("PER", "alice"), ("O", "went"), ("LOC", "home")]),
    padded([("PER", "bob"), ("O", "left")]),
]


class TestEvaluation:
    def test_perfect_tagger(self):
        tagger = LookupTagger({"alice": "PER", "bob": "PER", "home": "LOC"})
        evaluation = Evaluation.compute(tagger, DATA)
        assert evaluation.token_accuracy == 1.0
        assert evaluation.num_tokens == 5
        assert list(evaluation.state_metrics.columns) == ["state", "precision", "recall", "f1", "support"]
        assert (evaluation.state_metrics["f1"] == 1.0).all()

    def test_per_state_metrics(self):
        # "bob" is mislabeled as LOC
        tagger = LookupTagger({"alice": "PER", "bob": "LOC", "home": "LOC"})
        evaluation = Evaluation.compute(tagger, DATA)
        assert evaluation.token_accuracy == pytest.approx(4 / 5)
        metrics = evaluation.state_metrics.set_index("state")
        assert metrics.loc["PER", "precision"] == 1.0
        assert metrics.loc["PER", "recall"] == 0.5
        assert metrics.loc["LOC", "precision"] == 0.5
        assert metrics.loc["LOC", "recall"] == 1.0
        assert metrics.loc["O", "support"] == 2

    def test_executor_gives_same_result(self):
        tagger = LookupTagger({"alice": "PER", "home": "LOC"})
        with MapReduceExecutor(2, name="eval-test") as executor:
            parallel = Evaluation.compute(tagger, DATA, executor)
        serial = Evaluation.compute(tagger, DATA)
        assert parallel.token_accuracy == serial.token_accuracy
        assert parallel.state_metrics.equals(serial.state_metrics)

    def test_empty_data(self):
        evaluation = Evaluation.compute(LookupTagger({}), [])
        assert evaluation.num_tokens == 0
        assert evaluation.state_metrics.empty

    def test_tagger_length_mismatch(self):
        class ShortTagger:
            def best_guess(self, observations):
                return []

        with pytest.raises(ValueError, match="Tagger returned 0 labels"):
            Evaluation.compute(ShortTagger(), DATA)


class TestTrainCriterion:
    def run(self, criterion: TrainCriterion, scores: list[float]) -> list[bool]:
        return [criterion(score) for score in scores]

    def test_keeps_best_model(self):
        criterion = TrainCriterion(lambda model: model)
        assert self.run(criterion, [0.5, 0.7, 0.9]) == [True, True, True]
        assert criterion.best_model == 0.9
        assert criterion.num_iters == 3

    def test_stops_on_first_dip_by_default(self):
        criterion = TrainCriterion(lambda model: model)
        assert self.run(criterion, [0.5, 0.8, 0.6]) == [True, True, False]
        assert criterion.best_model == 0.8

    def test_tolerates_consecutive_dips(self):
        criterion = TrainCriterion(lambda model: model, max_num_dip_iters=2)
        assert self.run(criterion, [0.8, 0.7, 0.6, 0.5]) == [True, True, True, False]
        assert criterion.best_model == 0.8

    def test_recovery_resets_dip_count(self):
        criterion = TrainCriterion(lambda model: model, max_num_dip_iters=1)
        assert self.run(criterion, [0.8, 0.7, 0.9, 0.85, 0.95]) == [True] * 5
        assert criterion.num_dip_iters == 0
        assert criterion.best_model == 0.95

    def test_small_drops_are_not_dips(self):
        criterion = TrainCriterion(lambda model: model, dip_tolerance=0.01)
        assert self.run(criterion, [0.8, 0.795]) == [True, True]
        assert criterion.best_model == 0.795
        assert criterion.last_value == pytest.approx(0.795)


def test_initial_state():
    criterion = TrainCriterion(lambda model: 0.0)
    assert criterion.best_model is None
    assert criterion.last_value == -np.inf
