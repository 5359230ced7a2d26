import math

import numpy as np
from numba import njit

# Terms this far below the running max contribute nothing measurable to a
# log-sum-exp and are skipped.
EXP_THRESH = -30.0


@njit(nogil=True)
def sloppy_exp(x: float) -> float:
    """Exponentiate, flushing anything below ``EXP_THRESH`` to zero."""
    if x > EXP_THRESH:
        return math.exp(x)
    return 0.0


@njit(nogil=True)
def log_sum_exp(values: np.ndarray) -> float:
    """Numerically stable ``log(sum(exp(values)))`` over a 1-D array.

    Parameters
    ----------
    values : np.ndarray
        Log-space terms; ``-inf`` entries are allowed

    Returns
    -------
    float
        ``max + log(sum(exp(x - max)))`` over terms above the underflow threshold,
        or ``max`` when that sum is zero (including the all ``-inf`` case)
    """
    n = values.shape[0]
    if n == 0:
        return -np.inf
    max_val = values[0]
    for i in range(1, n):
        if values[i] > max_val:
            max_val = values[i]
    if max_val == -np.inf:
        return max_val
    total = 0.0
    for i in range(n):
        diff = values[i] - max_val
        if diff > EXP_THRESH:
            total += math.exp(diff)
    if total > 0.0:
        return max_val + math.log(total)
    return max_val
