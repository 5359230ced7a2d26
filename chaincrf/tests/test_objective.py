import numpy as np
import pytest

from chaincrf.gradient_fn import l2_regularizer
from chaincrf.objective import BatchObjectiveFn, ExampleObjectiveFn
from chaincrf.optimize import LBFGS, NewtonMethod
from chaincrf.parallel import MapReduceExecutor

# (features, target)
REGRESSION_EXAMPLES = [
    (np.array([0.5, 0.5]), 1.0),
    (np.array([1.0, 1.0]), 2.0),
    (np.array([1.5, 1.5]), 3.0),
]


class RegressionObjective(ExampleObjectiveFn[tuple[np.ndarray, float]]):
    """Negative half squared error of a linear model."""

    def evaluate(self, example, weights, out_grad):
        feats, target = example
        diff = float(feats @ weights) - target
        out_grad -= diff * feats
        return -0.5 * diff * diff


@pytest.fixture
def executor():
    executor = MapReduceExecutor(2, name="objective-test")
    yield executor
    executor.shutdown()


def test_value_and_gradient_at_zero(executor):
    fn = BatchObjectiveFn(REGRESSION_EXAMPLES, RegressionObjective(), 2, executor)
    result = fn(np.zeros(2))
    assert result.value == pytest.approx(0.5 * (1.0 + 4.0 + 9.0))
    # Gradient of the minimized (negated) objective
    np.testing.assert_allclose(result.grad, [-7.0, -7.0])


def test_linear_regression_converges(executor):
    fn = BatchObjectiveFn(REGRESSION_EXAMPLES, RegressionObjective(), 2, executor)
    result = NewtonMethod(lambda _: LBFGS(3)).minimize(fn)
    assert result.value == pytest.approx(0.0, abs=1e-4)
    np.testing.assert_allclose(result.x, [1.0, 1.0], atol=1e-3)


def test_thread_count_does_not_change_result():
    rng = np.random.default_rng(0)
    examples = [(rng.normal(size=3), float(rng.normal())) for _ in range(50)]
    weights = rng.normal(size=3)
    results = []
    for num_threads in [1, 4]:
        with MapReduceExecutor(num_threads, name="thread-count") as executor:
            results.append(BatchObjectiveFn(examples, RegressionObjective(), 3, executor)(weights))
    assert results[0].value == pytest.approx(results[1].value, rel=1e-12)
    np.testing.assert_allclose(results[0].grad, results[1].grad, rtol=1e-12, atol=1e-12)


def test_weights_are_not_writable_by_examples(executor):
    class MutatingObjective(ExampleObjectiveFn):
        def evaluate(self, example, weights, out_grad):
            weights[0] = 1.0
            return 0.0

    fn = BatchObjectiveFn([1], MutatingObjective(), 2, executor)
    with pytest.raises(ValueError):
        fn(np.zeros(2))


def test_composes_with_regularizer(executor):
    fn = BatchObjectiveFn(REGRESSION_EXAMPLES, RegressionObjective(), 2, executor)
    regularized = fn.add(l2_regularizer(2, 1.0))
    x = np.array([1.0, 1.0])
    result = regularized(x)
    assert result.value == pytest.approx(2.0)
    np.testing.assert_allclose(result.grad, [2.0, 2.0])
