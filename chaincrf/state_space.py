import logging
from dataclasses import dataclass
from typing import BinaryIO, Hashable, Iterable, Sequence

import numpy as np

from chaincrf import io_utils
from chaincrf.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """An allowed move between two states, identified by its position in the state space."""

    from_state: int
    to_state: int
    index: int


def _adjacency(keys: np.ndarray, num_states: int) -> tuple[np.ndarray, np.ndarray]:
    """Group transition indices by ``keys`` in CSR form, preserving transition order."""
    counts = np.bincount(keys, minlength=num_states)
    offsets = np.zeros(num_states + 1, dtype=np.int64)
    np.cumsum(counts, out=offsets[1:])
    # Stable sort keeps transitions in index order within each state
    order = np.argsort(keys, kind="stable").astype(np.int64)
    return offsets, order


class StateSpace:
    """Finite label set with reserved start/stop states and the allowed transitions.

    States are indexed by position in ``states``; index 0 is the start state and
    index 1 is the stop state. Transitions are indexed in construction order, and
    adjacency lists in both directions are precomputed as CSR arrays
    (``from_offsets``/``from_index`` and ``to_offsets``/``to_index``) so that
    compiled inference kernels can iterate them directly.

    Parameters
    ----------
    states : Sequence[Hashable]
        All states, with ``states[0]`` the start state and ``states[1]`` the stop state
    transition_pairs : Iterable[tuple[Hashable, Hashable]]
        Allowed (from, to) pairs, including those leaving start and entering stop

    Raises
    ------
    ConfigurationError
        If states or transition pairs contain duplicates, fewer than two states are
        given, or a pair references an unknown state
    """

    START_INDEX = 0
    STOP_INDEX = 1
    DATA_VERSION = "1.0"

    def __init__(self, states: Sequence[Hashable], transition_pairs: Iterable[tuple[Hashable, Hashable]]):
        states = list(states)
        transition_pairs = [tuple(pair) for pair in transition_pairs]
        if len(states) < 2:
            raise ConfigurationError(f"State space needs start and stop states, got {states}")
        if len(set(states)) != len(states):
            raise ConfigurationError(f"Passed in duplicate states: {states}")
        if len(set(transition_pairs)) != len(transition_pairs):
            raise ConfigurationError("Passed in duplicate transition pairs")
        self._states = tuple(states)
        self._state_index = {state: idx for idx, state in enumerate(states)}

        transitions = []
        for from_state, to_state in transition_pairs:
            if from_state not in self._state_index or to_state not in self._state_index:
                raise ConfigurationError(f"Transition ({from_state}, {to_state}) references an unknown state")
            transitions.append(Transition(self._state_index[from_state], self._state_index[to_state], len(transitions)))
        self._transitions = tuple(transitions)
        self._pair_index = {(t.from_state, t.to_state): t for t in transitions}

        self.trans_from = np.array([t.from_state for t in transitions], dtype=np.int64)
        self.trans_to = np.array([t.to_state for t in transitions], dtype=np.int64)
        self.from_offsets, self.from_index = _adjacency(self.trans_from, len(states))
        self.to_offsets, self.to_index = _adjacency(self.trans_to, len(states))
        for arr in (self.trans_from, self.trans_to, self.from_offsets, self.from_index, self.to_offsets, self.to_index):
            arr.setflags(write=False)

        self._from_lists = tuple(
            tuple(transitions[i] for i in self.from_index[self.from_offsets[s] : self.from_offsets[s + 1]])
            for s in range(len(states))
        )
        self._to_lists = tuple(
            tuple(transitions[i] for i in self.to_index[self.to_offsets[s] : self.to_offsets[s + 1]])
            for s in range(len(states))
        )

    @property
    def states(self) -> tuple:
        return self._states

    @property
    def transitions(self) -> tuple[Transition, ...]:
        return self._transitions

    @property
    def num_states(self) -> int:
        return len(self._states)

    @property
    def num_transitions(self) -> int:
        return len(self._transitions)

    @property
    def start_state(self) -> Hashable:
        return self._states[self.START_INDEX]

    @property
    def stop_state(self) -> Hashable:
        return self._states[self.STOP_INDEX]

    def state_index(self, state: Hashable) -> int:
        """Index of ``state`` or -1 if it is not part of this state space."""
        return self._state_index.get(state, -1)

    def transition_for(self, from_state: Hashable, to_state: Hashable) -> Transition | None:
        """Transition between two state values, or None if it is not allowed."""
        from_idx = self.state_index(from_state)
        to_idx = self.state_index(to_state)
        if from_idx < 0 or to_idx < 0:
            return None
        return self.transition_for_indices(from_idx, to_idx)

    def transition_for_indices(self, from_idx: int, to_idx: int) -> Transition | None:
        return self._pair_index.get((from_idx, to_idx))

    def transitions_from(self, state_idx: int) -> tuple[Transition, ...]:
        """Transitions leaving ``state_idx`` in transition-index order."""
        return self._from_lists[state_idx]

    def transitions_to(self, state_idx: int) -> tuple[Transition, ...]:
        """Transitions entering ``state_idx`` in transition-index order."""
        return self._to_lists[state_idx]

    def transition_pair(self, transition_idx: int) -> tuple[Hashable, Hashable]:
        """State values (from, to) of the transition at ``transition_idx``."""
        t = self._transitions[transition_idx]
        return self._states[t.from_state], self._states[t.to_state]

    def __repr__(self) -> str:
        return f"StateSpace(num_states={self.num_states}, num_transitions={self.num_transitions})"

    @classmethod
    def build_full_state_space(cls, states: Iterable[Hashable], start: Hashable, stop: Hashable) -> "StateSpace":
        """Build a state space allowing every transition except into start or out of stop.

        Parameters
        ----------
        states : Iterable[Hashable]
            Non-start/stop states; start and stop are ignored if present
        start : Hashable
            Start state
        stop : Hashable
            Stop state

        Returns
        -------
        StateSpace
            State space with all ``(s, t)`` pairs where ``s != stop`` and ``t != start``
        """
        inner = sorted({s for s in states if s != start and s != stop}, key=str)
        all_states = [start, stop] + inner
        pairs = [(s, t) for s in all_states for t in all_states if s != stop and t != start]
        return cls(all_states, pairs)

    @classmethod
    def build_from_sequences(
        cls, sequences: Iterable[Sequence[Hashable]], start: Hashable, stop: Hashable
    ) -> "StateSpace":
        """Build the minimal state space observed in a set of label sequences.

        Sequences are padded with ``start``/``stop`` where those are missing, so the
        implicit start-to-first and last-to-stop transitions are always present.
        Inner states are ordered by first appearance and transitions are
        de-duplicated in encounter order, which keeps indices reproducible.

        Parameters
        ----------
        sequences : Iterable[Sequence[Hashable]]
            Label sequences, padded or not
        start : Hashable
            Start state
        stop : Hashable
            Stop state

        Returns
        -------
        StateSpace
        """
        padded = [_ensure_start_stop_padded(seq, start, stop) for seq in sequences]
        inner = {}
        pairs = {}
        for seq in padded:
            for state in seq:
                if state != start and state != stop:
                    inner.setdefault(state, None)
            for prev, cur in zip(seq[:-1], seq[1:]):
                pairs.setdefault((prev, cur), None)
        state_space = cls([start, stop] + list(inner), list(pairs))
        logger.debug(f"Built {state_space} from {len(padded)} sequences")
        return state_space

    def save(self, stream: BinaryIO) -> None:
        io_utils.write_version(stream, self.DATA_VERSION)
        io_utils.save_list(stream, [str(s) for s in self._states])
        io_utils.write_int(stream, self.num_transitions)
        for t in self._transitions:
            io_utils.write_int(stream, t.from_state)
            io_utils.write_int(stream, t.to_state)

    @classmethod
    def load(cls, stream: BinaryIO) -> "StateSpace":
        """Load a state space written by ``save``; states come back as strings."""
        io_utils.ensure_version_match(stream, cls.DATA_VERSION)
        states = io_utils.load_list(stream)
        num_transitions = io_utils.read_int(stream)
        pairs = []
        for _ in range(num_transitions):
            from_idx = io_utils.read_int(stream)
            to_idx = io_utils.read_int(stream)
            pairs.append((states[from_idx], states[to_idx]))
        return cls(states, pairs)


def _ensure_start_stop_padded(seq: Sequence[Hashable], start: Hashable, stop: Hashable) -> list:
    seq = list(seq)
    if len(seq) == 0 or seq[0] != start:
        seq.insert(0, start)
    if len(seq) < 2 or seq[-1] != stop:
        seq.append(stop)
    return seq
