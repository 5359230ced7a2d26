import logging
from enum import IntEnum
from typing import Hashable

import numpy as np
from numba import njit

from chaincrf.errors import ConfigurationError, InvariantViolationError
from chaincrf.numerics import log_sum_exp, sloppy_exp
from chaincrf.state_space import StateSpace

logger = logging.getLogger(__name__)

VITERBI_TOLERANCE = 1e-8


class Combiner(IntEnum):
    """How scores of paths entering the same cell are combined."""

    MAX = 0
    LOG_SUM_EXP = 1


@njit(nogil=True)
def _combine(buf: np.ndarray, n: int, combiner: int) -> float:
    if n == 0:
        return -np.inf
    if combiner == 0:
        best = buf[0]
        for k in range(1, n):
            if buf[k] > best:
                best = buf[k]
        return best
    return log_sum_exp(buf[:n])


@njit(nogil=True)
def _forward_pass(
    potentials: np.ndarray,
    num_states: int,
    start_idx: int,
    to_offsets: np.ndarray,
    to_index: np.ndarray,
    trans_from: np.ndarray,
    combiner: int,
) -> np.ndarray:
    """Compute forward scores alpha of shape (seq_len, num_states)."""
    seq_len = potentials.shape[0] + 1
    alpha = np.full((seq_len, num_states), -np.inf)
    alpha[0, start_idx] = 0.0
    buf = np.empty(max(to_index.shape[0], 1))
    for i in range(1, seq_len):
        for s in range(num_states):
            n = 0
            for k in range(to_offsets[s], to_offsets[s + 1]):
                t = to_index[k]
                buf[n] = alpha[i - 1, trans_from[t]] + potentials[i - 1, t]
                n += 1
            alpha[i, s] = _combine(buf, n, combiner)
    return alpha


@njit(nogil=True)
def _backward_pass(
    potentials: np.ndarray,
    num_states: int,
    stop_idx: int,
    from_offsets: np.ndarray,
    from_index: np.ndarray,
    trans_to: np.ndarray,
    combiner: int,
) -> np.ndarray:
    """Compute backward scores beta of shape (seq_len, num_states)."""
    seq_len = potentials.shape[0] + 1
    beta = np.full((seq_len, num_states), -np.inf)
    beta[seq_len - 1, stop_idx] = 0.0
    buf = np.empty(max(from_index.shape[0], 1))
    for i in range(seq_len - 2, -1, -1):
        for s in range(num_states):
            n = 0
            for k in range(from_offsets[s], from_offsets[s + 1]):
                t = from_index[k]
                buf[n] = beta[i + 1, trans_to[t]] + potentials[i, t]
                n += 1
            beta[i, s] = _combine(buf, n, combiner)
    return beta


@njit(nogil=True)
def _edge_marginals(
    potentials: np.ndarray,
    alpha: np.ndarray,
    beta: np.ndarray,
    log_z: float,
    from_offsets: np.ndarray,
    from_index: np.ndarray,
    trans_to: np.ndarray,
) -> np.ndarray:
    num_positions, num_transitions = potentials.shape
    num_states = alpha.shape[1]
    edges = np.zeros((num_positions, num_transitions))
    for i in range(num_positions):
        for s in range(num_states):
            if alpha[i, s] == -np.inf:
                continue
            for k in range(from_offsets[s], from_offsets[s + 1]):
                t = from_index[k]
                pot = potentials[i, t]
                next_beta = beta[i + 1, trans_to[t]]
                if pot == -np.inf or next_beta == -np.inf:
                    continue
                edges[i, t] = sloppy_exp(alpha[i, s] + pot + next_beta - log_z)
    return edges


@njit(nogil=True)
def _node_marginals(
    edges: np.ndarray,
    alpha: np.ndarray,
    start_idx: int,
    stop_idx: int,
    from_offsets: np.ndarray,
    from_index: np.ndarray,
) -> np.ndarray:
    seq_len, num_states = alpha.shape
    nodes = np.zeros((seq_len, num_states))
    nodes[0, start_idx] = 1.0
    nodes[seq_len - 1, stop_idx] = 1.0
    for i in range(1, seq_len - 1):
        for s in range(num_states):
            if alpha[i, s] == -np.inf:
                continue
            total = 0.0
            for k in range(from_offsets[s], from_offsets[s + 1]):
                total += edges[i, from_index[k]]
            nodes[i, s] = total
    return nodes


@njit(nogil=True)
def _viterbi_backtrack(
    potentials: np.ndarray,
    max_alpha: np.ndarray,
    stop_idx: int,
    to_offsets: np.ndarray,
    to_index: np.ndarray,
    trans_from: np.ndarray,
    tolerance: float,
) -> np.ndarray:
    """Recover state indices of the best path, excluding start and stop.

    Returns the path of length seq_len - 2 and whether every position found a
    predecessor consistent with the max scores.
    """
    seq_len = potentials.shape[0] + 1
    path = np.full(seq_len - 2, -1, dtype=np.int64)
    target_state = stop_idx
    target = max_alpha[seq_len - 1, stop_idx]
    for pos in range(seq_len - 2, -1, -1):
        found = -1
        for k in range(to_offsets[target_state], to_offsets[target_state + 1]):
            t = to_index[k]
            prev = trans_from[t]
            if abs(potentials[pos, t] + max_alpha[pos, prev] - target) < tolerance:
                found = prev
                break
        if found < 0:
            return path, False
        target = max_alpha[pos, found]
        target_state = found
        if pos > 0:
            path[pos - 1] = found
    return path, True


class ForwardBackwardsResult:
    """Lazily evaluated inference quantities over one potentials table.

    Each quantity is held in its own slot, computed on first access after forcing
    its prerequisites, and returned as a read-only array on every later access.
    """

    def __init__(self, state_space: StateSpace, potentials: np.ndarray):
        self.state_space = state_space
        self.potentials = potentials
        self.seq_len = potentials.shape[0] + 1
        self._alpha = None
        self._beta = None
        self._log_z = None
        self._edge_marginals = None
        self._node_marginals = None
        self._max_alpha = None
        self._viterbi_indices = None

    def _forward(self, combiner: Combiner) -> np.ndarray:
        ss = self.state_space
        alpha = _forward_pass(
            self.potentials, ss.num_states, ss.START_INDEX, ss.to_offsets, ss.to_index, ss.trans_from, int(combiner)
        )
        alpha.setflags(write=False)
        return alpha

    @property
    def alpha(self) -> np.ndarray:
        if self._alpha is None:
            self._alpha = self._forward(Combiner.LOG_SUM_EXP)
        return self._alpha

    @property
    def beta(self) -> np.ndarray:
        if self._beta is None:
            ss = self.state_space
            beta = _backward_pass(
                self.potentials,
                ss.num_states,
                ss.STOP_INDEX,
                ss.from_offsets,
                ss.from_index,
                ss.trans_to,
                int(Combiner.LOG_SUM_EXP),
            )
            beta.setflags(write=False)
            self._beta = beta
        return self._beta

    @property
    def max_alpha(self) -> np.ndarray:
        if self._max_alpha is None:
            self._max_alpha = self._forward(Combiner.MAX)
        return self._max_alpha

    @property
    def log_z(self) -> float:
        """Log-partition: log-sum of exponentiated scores over all valid paths."""
        if self._log_z is None:
            self._log_z = float(self.alpha[self.seq_len - 1, self.state_space.STOP_INDEX])
        return self._log_z

    @property
    def edge_marginals(self) -> np.ndarray:
        """Transition probabilities of shape (seq_len - 1, num_transitions)."""
        if self._edge_marginals is None:
            ss = self.state_space
            edges = _edge_marginals(
                self.potentials, self.alpha, self.beta, self.log_z, ss.from_offsets, ss.from_index, ss.trans_to
            )
            edges.setflags(write=False)
            self._edge_marginals = edges
        return self._edge_marginals

    @property
    def node_marginals(self) -> np.ndarray:
        """State probabilities of shape (seq_len, num_states)."""
        if self._node_marginals is None:
            ss = self.state_space
            nodes = _node_marginals(
                self.edge_marginals, self.alpha, ss.START_INDEX, ss.STOP_INDEX, ss.from_offsets, ss.from_index
            )
            nodes.setflags(write=False)
            self._node_marginals = nodes
        return self._node_marginals

    @property
    def viterbi_indices(self) -> np.ndarray:
        """State indices of the highest-scoring path, excluding start and stop.

        Raises
        ------
        InvariantViolationError
            If backtracking finds no predecessor consistent with the max scores,
            which also happens when every path is forbidden
        """
        if self._viterbi_indices is None:
            ss = self.state_space
            path, consistent = _viterbi_backtrack(
                self.potentials,
                self.max_alpha,
                ss.STOP_INDEX,
                ss.to_offsets,
                ss.to_index,
                ss.trans_from,
                VITERBI_TOLERANCE,
            )
            if not consistent:
                raise InvariantViolationError("Viterbi backtrace found no consistent predecessor state")
            path.setflags(write=False)
            self._viterbi_indices = path
        return self._viterbi_indices

    @property
    def viterbi(self) -> list[Hashable]:
        """State values of the highest-scoring path, excluding start and stop."""
        states = self.state_space.states
        return [states[idx] for idx in self.viterbi_indices]


class ForwardBackwards:
    """Exact chain inference over a fixed state space.

    Parameters
    ----------
    state_space : StateSpace
        States and allowed transitions that the potentials columns refer to
    """

    def __init__(self, state_space: StateSpace):
        self.state_space = state_space

    def compute(self, potentials: np.ndarray) -> ForwardBackwardsResult:
        """Wrap a potentials table in a lazily evaluated result.

        Parameters
        ----------
        potentials : np.ndarray
            Log-space scores of shape (seq_len - 1, num_transitions); ``-inf`` marks
            a forbidden transition at that position

        Returns
        -------
        ForwardBackwardsResult

        Raises
        ------
        ConfigurationError
            If the table shape does not match the state space
        """
        potentials = np.ascontiguousarray(potentials, dtype=np.float64)
        if potentials.ndim != 2 or potentials.shape[0] < 1:
            raise ConfigurationError(f"potentials must be 2D with at least one row, got shape {potentials.shape}")
        if potentials.shape[1] != self.state_space.num_transitions:
            raise ConfigurationError(
                f"potentials has {potentials.shape[1]} columns but state space has "
                f"{self.state_space.num_transitions} transitions"
            )
        return ForwardBackwardsResult(self.state_space, potentials)
