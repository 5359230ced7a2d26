"""Compact per-position predicate storage and the CRF weight layout.

The weight vector has a node block followed by an edge block:

- node weight for (predicate ``p``, state ``s``) lives at ``p * num_states + s``
- edge weight for (predicate ``p``, transition ``t``) lives at
  ``num_node_predicates * num_states + p * num_transitions + t``

The same layout is used for scoring (``fill_potentials``) and for gradient scatter
(``scatter_gradient``).
"""
import logging
from typing import Mapping, Sequence

import numpy as np
from numba import njit

from chaincrf.errors import DataError
from chaincrf.state_space import StateSpace

logger = logging.getLogger(__name__)


class CRFIndexedExample:
    """Indexed predicates of one sequence, stored as flat arrays.

    Node predicates for every position come first, followed by edge predicates for
    every position but the last. ``offsets`` marks the start of each position's
    run, with a trailing sentinel equal to the total number of entries. Zero-valued
    predicates are dropped. All arrays are read-only.

    Parameters
    ----------
    node_predicates : Sequence[Mapping[int, float]]
        Predicate index to value, one mapping per position (``seq_len`` of them)
    edge_predicates : Sequence[Mapping[int, float]]
        Predicate index to value, one mapping per adjacent pair (``seq_len - 1``)
    gold_labels : Sequence[int] | None
        State index per position, for training examples

    Raises
    ------
    DataError
        If the node, edge and gold label lengths disagree
    """

    def __init__(
        self,
        node_predicates: Sequence[Mapping[int, float]],
        edge_predicates: Sequence[Mapping[int, float]],
        gold_labels: Sequence[int] | None = None,
    ):
        if len(node_predicates) != len(edge_predicates) + 1:
            raise DataError(
                f"Expected one more node than edge position, got {len(node_predicates)} and {len(edge_predicates)}"
            )
        if gold_labels is not None and len(gold_labels) != len(node_predicates):
            raise DataError(f"Gold labels length {len(gold_labels)} != sequence length {len(node_predicates)}")
        indices = []
        values = []
        offsets = []
        for pred_vec in list(node_predicates) + list(edge_predicates):
            offsets.append(len(indices))
            for pred_idx, pred_val in pred_vec.items():
                if pred_val != 0.0:
                    indices.append(pred_idx)
                    values.append(pred_val)
        offsets.append(len(indices))

        self.sequence_length = len(node_predicates)
        self.predicate_indices = np.array(indices, dtype=np.int64)
        self.predicate_values = np.array(values, dtype=np.float64)
        self.offsets = np.array(offsets, dtype=np.int64)
        self.gold_labels = None if gold_labels is None else np.array(gold_labels, dtype=np.int64)
        for arr in (self.predicate_indices, self.predicate_values, self.offsets, self.gold_labels):
            if arr is not None:
                arr.setflags(write=False)

    @property
    def is_labeled(self) -> bool:
        return self.gold_labels is not None

    def _slice(self, position: int) -> tuple[np.ndarray, np.ndarray]:
        start, stop = self.offsets[position], self.offsets[position + 1]
        return self.predicate_indices[start:stop], self.predicate_values[start:stop]

    def node_predicates(self, idx: int) -> tuple[np.ndarray, np.ndarray]:
        """Predicate indices and values at node position ``idx``."""
        if not 0 <= idx < self.sequence_length:
            raise IndexError(f"Invalid node predicate index {idx} for sequence length {self.sequence_length}")
        return self._slice(idx)

    def edge_predicates(self, idx: int) -> tuple[np.ndarray, np.ndarray]:
        """Predicate indices and values on the edge between positions ``idx`` and ``idx + 1``."""
        if not 0 <= idx < self.sequence_length - 1:
            raise IndexError(f"Invalid edge predicate index {idx} for sequence length {self.sequence_length}")
        return self._slice(self.sequence_length + idx)


@njit(nogil=True)
def _fill_row(
    weights: np.ndarray, indices: np.ndarray, values: np.ndarray, start: int, stop: int, num_values: int, offset: int
) -> np.ndarray:
    row = np.zeros(num_values)
    for k in range(start, stop):
        base = indices[k] * num_values + offset
        v = values[k]
        for i in range(num_values):
            row[i] += weights[base + i] * v
    return row


@njit(nogil=True)
def _fill_potentials(
    weights: np.ndarray,
    indices: np.ndarray,
    values: np.ndarray,
    offsets: np.ndarray,
    seq_len: int,
    num_states: int,
    num_transitions: int,
    edge_offset: int,
    trans_from: np.ndarray,
) -> np.ndarray:
    potentials = np.empty((seq_len - 1, num_transitions))
    for i in range(seq_len - 1):
        node = _fill_row(weights, indices, values, offsets[i], offsets[i + 1], num_states, 0)
        e = seq_len + i
        edge = _fill_row(weights, indices, values, offsets[e], offsets[e + 1], num_transitions, edge_offset)
        for t in range(num_transitions):
            potentials[i, t] = edge[t] + node[trans_from[t]]
    return potentials


@njit(nogil=True)
def _scatter_gradient(
    out_grad: np.ndarray,
    indices: np.ndarray,
    values: np.ndarray,
    offsets: np.ndarray,
    seq_len: int,
    num_states: int,
    num_transitions: int,
    edge_offset: int,
    gold_labels: np.ndarray,
    gold_transitions: np.ndarray,
    node_marginals: np.ndarray,
    edge_marginals: np.ndarray,
) -> None:
    for i in range(seq_len - 1):
        e = seq_len + i
        for k in range(offsets[i], offsets[i + 1]):
            base = indices[k] * num_states
            v = values[k]
            out_grad[base + gold_labels[i]] += v
            for s in range(num_states):
                out_grad[base + s] -= node_marginals[i, s] * v
        for k in range(offsets[e], offsets[e + 1]):
            base = edge_offset + indices[k] * num_transitions
            v = values[k]
            out_grad[base + gold_transitions[i]] += v
            for t in range(num_transitions):
                out_grad[base + t] -= edge_marginals[i, t] * v


class CRFWeightsEncoder:
    """Maps a flat weight vector and an indexed example to transition potentials.

    Parameters
    ----------
    state_space : StateSpace
        States and transitions the weights are laid out over
    num_node_predicates : int
        Size of the node predicate index
    num_edge_predicates : int
        Size of the edge predicate index
    """

    def __init__(self, state_space: StateSpace, num_node_predicates: int, num_edge_predicates: int):
        self.state_space = state_space
        self.num_node_predicates = num_node_predicates
        self.num_edge_predicates = num_edge_predicates

    @property
    def edge_block_offset(self) -> int:
        return self.num_node_predicates * self.state_space.num_states

    @property
    def num_parameters(self) -> int:
        return self.edge_block_offset + self.num_edge_predicates * self.state_space.num_transitions

    def node_weight_index(self, pred_idx: int, state_idx: int) -> int:
        return pred_idx * self.state_space.num_states + state_idx

    def edge_weight_index(self, pred_idx: int, transition_idx: int) -> int:
        return self.edge_block_offset + pred_idx * self.state_space.num_transitions + transition_idx

    @staticmethod
    def fill_row_potentials(
        weights: np.ndarray, pred_indices: np.ndarray, pred_values: np.ndarray, num_values: int, weight_offset: int
    ) -> np.ndarray:
        """Score one position: ``row[i] = sum_p weights[p * num_values + i + weight_offset] * value_p``."""
        pred_indices = np.asarray(pred_indices, dtype=np.int64)
        pred_values = np.asarray(pred_values, dtype=np.float64)
        return _fill_row(
            np.asarray(weights, dtype=np.float64),
            pred_indices,
            pred_values,
            0,
            pred_indices.shape[0],
            num_values,
            weight_offset,
        )

    def fill_potentials(self, weights: np.ndarray, example: CRFIndexedExample) -> np.ndarray:
        """Transition potentials of shape (seq_len - 1, num_transitions).

        ``potentials[i, t]`` is the edge score of ``t`` at position ``i`` plus the
        node score of the state ``t`` leaves, at position ``i``.
        """
        ss = self.state_space
        return _fill_potentials(
            weights,
            example.predicate_indices,
            example.predicate_values,
            example.offsets,
            example.sequence_length,
            ss.num_states,
            ss.num_transitions,
            self.edge_block_offset,
            ss.trans_from,
        )

    def scatter_gradient(
        self,
        out_grad: np.ndarray,
        example: CRFIndexedExample,
        gold_transitions: np.ndarray,
        node_marginals: np.ndarray,
        edge_marginals: np.ndarray,
    ) -> None:
        """Add observed minus expected predicate counts into ``out_grad``."""
        ss = self.state_space
        _scatter_gradient(
            out_grad,
            example.predicate_indices,
            example.predicate_values,
            example.offsets,
            example.sequence_length,
            ss.num_states,
            ss.num_transitions,
            self.edge_block_offset,
            example.gold_labels,
            gold_transitions,
            node_marginals,
            edge_marginals,
        )
