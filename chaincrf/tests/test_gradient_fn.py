import numpy as np
import pytest

from chaincrf.errors import ConfigurationError
from chaincrf.gradient_fn import (
    ApproximateGradientFn,
    CachingGradientFn,
    GradientFn,
    GradientResult,
    l2_regularizer,
)


def squared_norm_fn(dimension: int) -> GradientFn:
    return GradientFn.from_function(dimension, lambda x: GradientResult(float(x @ x), 2.0 * x))


class CountingFn(GradientFn):
    def __init__(self, dimension: int):
        self._dimension = dimension
        self.num_calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def apply(self, x: np.ndarray) -> GradientResult:
        self.num_calls += 1
        return GradientResult(float(x.sum()), np.ones_like(x))


class TestCachingGradientFn:
    def test_reuses_recent_evaluations(self):
        fn = CountingFn(1)
        cached = CachingGradientFn(2, fn)
        cached(np.array([1.0]))
        cached(np.array([1.0]))
        assert fn.num_calls == 1
        cached(np.array([2.0]))
        cached(np.array([3.0]))
        assert fn.num_calls == 3
        # 2.0 is still among the two most recent inputs
        cached(np.array([2.0]))
        assert fn.num_calls == 3
        # 1.0 was evicted
        cached(np.array([1.0]))
        assert fn.num_calls == 4

    def test_history_is_most_recent_first(self):
        cached = CachingGradientFn(3, CountingFn(1))
        for v in [1.0, 2.0, 3.0, 4.0]:
            cached(np.array([v]))
        assert [float(entry.input[0]) for entry in cached.history] == [4.0, 3.0, 2.0]

    def test_nearby_inputs_hit_the_cache(self):
        fn = CountingFn(2)
        cached = CachingGradientFn(1, fn)
        cached(np.array([1.0, 1.0]))
        cached(np.array([1.0, 1.0 + 1e-7]))
        assert fn.num_calls == 1

    def test_cached_input_is_a_copy(self):
        fn = CountingFn(1)
        cached = CachingGradientFn(1, fn)
        x = np.array([1.0])
        cached(x)
        x[0] = 5.0
        cached(np.array([1.0]))
        assert fn.num_calls == 1

    def test_cached_gradient_is_read_only(self):
        result = CachingGradientFn(1, squared_norm_fn(2))(np.array([1.0, 2.0]))
        with pytest.raises(ValueError):
            result.grad[0] = 0.0


class TestComposition:
    def test_add_sums_values_and_gradients(self):
        fn = squared_norm_fn(2).add(squared_norm_fn(2))
        result = fn(np.array([1.0, 2.0]))
        assert result.value == pytest.approx(10.0)
        np.testing.assert_allclose(result.grad, [4.0, 8.0])

    def test_add_with_mismatched_dimensions_raises(self):
        with pytest.raises(ConfigurationError, match="Dimensions don't agree"):
            squared_norm_fn(2).add(squared_norm_fn(3))

    def test_call_checks_dimension(self):
        with pytest.raises(ConfigurationError, match="doesn't match dimension"):
            squared_norm_fn(2)(np.zeros(3))

    def test_approximate_flag_propagates(self):
        approx = ApproximateGradientFn(2, 1e-6, lambda x: float(x @ x))
        assert not squared_norm_fn(2).is_gradient_approximate
        assert squared_norm_fn(2).add(approx).is_gradient_approximate
        assert CachingGradientFn(1, approx).is_gradient_approximate


def test_approximate_gradient_matches_analytic():
    x = np.array([1.0, -2.0, 0.5])
    approx = ApproximateGradientFn(3, 1e-6, lambda v: float(v @ v))(x)
    exact = squared_norm_fn(3)(x)
    assert approx.value == pytest.approx(exact.value)
    np.testing.assert_allclose(approx.grad, exact.grad, atol=1e-4)


@pytest.mark.parametrize("sigma_sq", [0.5, 1.0, 4.0])
def test_l2_regularizer(sigma_sq):
    x = np.array([1.0, 2.0])
    result = l2_regularizer(2, sigma_sq)(x)
    assert result.value == pytest.approx(5.0 / sigma_sq)
    np.testing.assert_allclose(result.grad, 2.0 * x / sigma_sq)


def test_l2_regularizer_rejects_non_positive_variance():
    with pytest.raises(ConfigurationError, match="sigma_sq"):
        l2_regularizer(2, 0.0)
