"""Quasi-Newton minimization of a ``GradientFn``.

A ``NewtonMethod`` loop picks a descent direction by applying a ``QuasiNewton``
inverse-Hessian approximation to the gradient, then chooses a step length along it
with a ``BacktrackingLineMinimizer``. Plugging in ``GradientDescent`` gives plain
gradient descent and ``LBFGS`` gives limited-memory BFGS.
"""
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable

import numpy as np

from chaincrf.config import NewtonMethodConfig
from chaincrf.errors import InvariantViolationError
from chaincrf.gradient_fn import GradientFn

logger = logging.getLogger(__name__)

# Squared norms below this mean two successive iterates are indistinguishable
EPS = 1.0e-200


@dataclass(frozen=True)
class LineSearchResult:
    step_length: float
    value: float


class BacktrackingLineMinimizer:
    """Armijo backtracking line search.

    Starting from a unit step, shrink the step by ``alpha`` until
    ``f(x + step * dir) <= f(x) + step * beta * (grad . dir)``.

    Parameters
    ----------
    alpha : float
        Shrink factor applied after each rejected step
    beta : float
        Fraction of the predicted linear decrease that must be achieved
    min_step_len : float
        Smallest step tried; also the squared gradient norm below which no step is taken
    """

    def __init__(self, alpha: float = 0.5, beta: float = 0.01, min_step_len: float = 1.0e-10):
        self.alpha = alpha
        self.beta = beta
        self.min_step_len = min_step_len

    def minimize(self, fn: GradientFn, x: np.ndarray, direction: np.ndarray) -> LineSearchResult:
        """Find a step length along ``direction`` with sufficient decrease.

        Raises
        ------
        InvariantViolationError
            If the step underflows ``min_step_len`` without satisfying the condition
        """
        res = fn(x)
        f0 = res.value
        grad_norm_sq = float(res.grad @ res.grad)
        logger.debug(f"Starting line search with grad l2NormSquared: {grad_norm_sq}")
        if grad_norm_sq < self.min_step_len:
            return LineSearchResult(0.0, f0)
        delta = self.beta * float(res.grad @ direction)
        step_len = 1.0
        while step_len >= self.min_step_len:
            fx = fn(x + step_len * direction).value
            logger.debug(f"Step size: alpha {step_len}, new {fx}, old {f0}")
            if fx <= f0 + step_len * delta:
                return LineSearchResult(step_len, fx)
            step_len *= self.alpha
        raise InvariantViolationError("Step-size underflow: can't make the value smaller along direction")


class QuasiNewton(ABC):
    """Approximation of the inverse Hessian applied to a direction."""

    @abstractmethod
    def implicit_multiply(self, direction: np.ndarray) -> np.ndarray:
        pass

    def update(self, x_delta: np.ndarray, grad_delta: np.ndarray) -> None:
        """Incorporate the latest step; the default approximation keeps no state."""


class GradientDescent(QuasiNewton):
    """Identity inverse-Hessian approximation."""

    def implicit_multiply(self, direction: np.ndarray) -> np.ndarray:
        return np.array(direction, dtype=np.float64, copy=True)


class LBFGS(QuasiNewton):
    """Limited-memory BFGS inverse-Hessian approximation.

    Keeps the ``max_history_size`` most recent ``(x_delta, grad_delta)`` pairs,
    newest first, and applies them with the two-loop recursion. The initial
    Hessian scale is ``(s . y) / (y . y)`` from the newest pair. With an empty
    history (including ``max_history_size == 0``) this is gradient descent.
    """

    def __init__(self, max_history_size: int):
        self.max_history_size = max_history_size
        self.history: deque[tuple[np.ndarray, np.ndarray]] = deque()

    def initial_scale(self) -> float:
        if not self.history:
            return 1.0
        x_delta, grad_delta = self.history[0]
        return float(grad_delta @ x_delta) / float(grad_delta @ grad_delta)

    def implicit_multiply(self, direction: np.ndarray) -> np.ndarray:
        q = np.array(direction, dtype=np.float64, copy=True)
        rhos = []
        alphas = []
        for x_delta, grad_delta in self.history:
            rho = 1.0 / float(grad_delta @ x_delta)
            alpha = rho * float(x_delta @ q)
            q -= alpha * grad_delta
            rhos.append(rho)
            alphas.append(alpha)
        r = self.initial_scale() * q
        for i in range(len(self.history) - 1, -1, -1):
            x_delta, grad_delta = self.history[i]
            beta = rhos[i] * float(grad_delta @ r)
            r += (alphas[i] - beta) * x_delta
        return r

    def update(self, x_delta: np.ndarray, grad_delta: np.ndarray) -> None:
        """Prepend the newest pair and drop pairs beyond the history size.

        Raises
        ------
        InvariantViolationError
            If either delta has a near-zero squared norm; the optimizer should
            have converged before reaching such a step
        """
        if float(x_delta @ x_delta) < EPS or float(grad_delta @ grad_delta) < EPS:
            raise InvariantViolationError(
                "Too small a diff between successive input or gradient. Should have already converged"
            )
        self.history.appendleft((np.array(x_delta, dtype=np.float64), np.array(grad_delta, dtype=np.float64)))
        while len(self.history) > self.max_history_size:
            self.history.pop()


@dataclass(frozen=True)
class MinimizeResult:
    value: float
    x: np.ndarray
    num_iterations: int


class NewtonMethod:
    """Iterative minimizer driven by a quasi-Newton direction and a line search.

    Parameters
    ----------
    quasi_newton_factory : Callable[[GradientFn], QuasiNewton]
        Builds a fresh inverse-Hessian approximation for each ``minimize`` call
    config : NewtonMethodConfig | None
        Loop settings, defaults to ``NewtonMethodConfig()``
    """

    def __init__(
        self,
        quasi_newton_factory: Callable[[GradientFn], QuasiNewton],
        config: NewtonMethodConfig | None = None,
    ):
        self.quasi_newton_factory = quasi_newton_factory
        self.config = config if config is not None else NewtonMethodConfig()

    def line_minimizer(self) -> BacktrackingLineMinimizer:
        return BacktrackingLineMinimizer(self.config.alpha, self.config.beta, self.config.step_len_tolerance)

    def minimize(self, fn: GradientFn, init_guess: np.ndarray | None = None) -> MinimizeResult:
        """Minimize ``fn`` starting from ``init_guess`` (zeros by default).

        Parameters
        ----------
        fn : GradientFn
            Function to minimize
        init_guess : np.ndarray | None
            Starting point

        Returns
        -------
        MinimizeResult
            Value at the final point, the point itself and the number of iterations run

        Raises
        ------
        InvariantViolationError
            If a step increases the function value
        """
        qn = self.quasi_newton_factory(fn)
        line_minimizer = self.line_minimizer()
        if init_guess is None:
            x = np.zeros(fn.dimension)
        else:
            x = np.array(init_guess, dtype=np.float64, copy=True)
        logger.info(f"Optimization started with {x.shape[0]} parameters")
        num_iterations = 0
        for i in range(self.config.max_iters):
            num_iterations = i + 1
            start = time.time()
            cur = fn(x)
            direction = -qn.implicit_multiply(cur.grad)
            ls_result = line_minimizer.minimize(fn, x, direction)
            x_new = x + ls_result.step_length * direction
            new = fn(x_new)
            if new.value > cur.value:
                raise InvariantViolationError(
                    f"Step increased function value: old {cur.value:.3f} new: {new.value:.3f}"
                )
            smaller = min(abs(cur.value), abs(new.value))
            rel_diff = abs(new.value - cur.value) / max(smaller, EPS)
            elapsed_ms = (time.time() - start) * 1000
            logger.info(f"[Iteration {i}][{elapsed_ms:.0f} ms] Ended with value {new.value} and relDiff {rel_diff}")
            if rel_diff < self.config.tolerance:
                break
            qn.update(x_new - x, new.grad - cur.grad)
            x = x_new
            if self.config.iter_callback is not None and self.config.iter_callback(x) is False:
                logger.info(f"Iteration callback requested stop after iteration {i}")
                break
        return MinimizeResult(fn(x).value, x, num_iterations)
