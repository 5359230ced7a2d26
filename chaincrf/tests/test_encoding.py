import numpy as np
import pytest

from chaincrf.encoding import CRFIndexedExample, CRFWeightsEncoder
from chaincrf.errors import DataError
from chaincrf.forward_backwards import ForwardBackwards
from chaincrf.state_space import StateSpace

TOY_NODE_PREDS = [{1: 1.0, 2: 1.0}, {2: 1.0, 3: 1.0, 4: 1.0}, {3: 1.0, 4: 1.0}]
TOY_EDGE_PREDS = [{3: 1.0, 4: 1.0}, {2: 1.0, 5: 1.0}]


def toy_state_space() -> StateSpace:
    """State space for the regular expression a*b*."""
    return StateSpace(
        ["<s>", "</s>", "a", "b"],
        [("<s>", "a"), ("<s>", "b"), ("a", "a"), ("a", "b"), ("a", "</s>"), ("b", "</s>")],
    )


def as_dict(indices: np.ndarray, values: np.ndarray) -> dict[int, float]:
    return {int(i): float(v) for i, v in zip(indices, values)}


class TestCRFIndexedExample:
    def test_gold_labels(self):
        example = CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS, [0, 1, 2])
        assert example.is_labeled
        np.testing.assert_array_equal(example.gold_labels, [0, 1, 2])

    def test_predicates_are_recovered_per_position(self):
        example = CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS)
        assert not example.is_labeled
        assert example.sequence_length == 3
        assert [as_dict(*example.node_predicates(i)) for i in range(3)] == TOY_NODE_PREDS
        assert [as_dict(*example.edge_predicates(i)) for i in range(2)] == TOY_EDGE_PREDS

    def test_flat_layout(self):
        example = CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS)
        np.testing.assert_array_equal(example.offsets, [0, 2, 5, 7, 9, 11])
        assert example.predicate_indices.shape == (11,)
        with pytest.raises(ValueError):
            example.predicate_values[0] = 2.0

    def test_zero_values_are_dropped(self):
        example = CRFIndexedExample([{0: 0.0, 1: 2.0}, {}], [{3: 0.0}])
        assert as_dict(*example.node_predicates(0)) == {1: 2.0}
        assert as_dict(*example.node_predicates(1)) == {}
        assert as_dict(*example.edge_predicates(0)) == {}

    @pytest.mark.parametrize("idx", [-1, 3])
    def test_node_index_out_of_range(self, idx):
        example = CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS)
        with pytest.raises(IndexError, match="Invalid node predicate index"):
            example.node_predicates(idx)

    def test_edge_index_out_of_range(self):
        example = CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS)
        with pytest.raises(IndexError, match="Invalid edge predicate index"):
            example.edge_predicates(2)

    def test_length_mismatch(self):
        with pytest.raises(DataError, match="one more node than edge"):
            CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS[:1])
        with pytest.raises(DataError, match="Gold labels length"):
            CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS, [0, 1])


class TestCRFWeightsEncoder:
    def test_row_filler(self):
        # 2 values per predicate, 2 predicates and 2 leading offset weights
        weights = np.array([0.0, 0.0, 1.0, 2.0, 3.0, 4.0])
        row = CRFWeightsEncoder.fill_row_potentials(weights, np.array([0, 1]), np.array([1.0, 2.0]), 2, 2)
        # row[0] = 1.0 * 1.0 + 3.0 * 2.0 and row[1] = 2.0 * 1.0 + 4.0 * 2.0
        np.testing.assert_allclose(row, [7.0, 10.0])

    def test_weight_layout(self):
        ss = toy_state_space()
        encoder = CRFWeightsEncoder(ss, 5, 6)
        assert encoder.num_parameters == 5 * 4 + 6 * 6
        assert encoder.node_weight_index(4, 3) == 19
        assert encoder.edge_weight_index(0, 0) == 20
        assert encoder.edge_weight_index(5, 5) == encoder.num_parameters - 1
        node_slots = {encoder.node_weight_index(p, s) for p in range(5) for s in range(4)}
        edge_slots = {encoder.edge_weight_index(p, t) for p in range(6) for t in range(6)}
        assert not node_slots & edge_slots
        assert len(node_slots | edge_slots) == encoder.num_parameters

    def test_potentials_add_source_node_score(self):
        ss = toy_state_space()
        encoder = CRFWeightsEncoder(ss, 10, 10)
        example = CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS)
        weights = np.zeros(encoder.num_parameters)
        weights[encoder.node_weight_index(2, ss.state_index("a"))] = 0.5
        weights[encoder.edge_weight_index(3, ss.transition_for("<s>", "b").index)] = 2.0
        potentials = encoder.fill_potentials(weights, example)
        assert potentials.shape == (2, ss.num_transitions)
        assert potentials[0, ss.transition_for("<s>", "b").index] == 2.0
        # predicate 2 fires at node position 1, adding to transitions leaving a
        for t in ss.transitions_from(ss.state_index("a")):
            assert potentials[1, t.index] == 0.5
        assert potentials[1, ss.transition_for("b", "</s>").index] == 0.0

    @pytest.mark.parametrize("spiked", ["a", "b"])
    def test_spiked_edge_weights_steer_viterbi(self, spiked):
        ss = toy_state_space()
        encoder = CRFWeightsEncoder(ss, 10, 10)
        example = CRFIndexedExample(TOY_NODE_PREDS, TOY_EDGE_PREDS)
        weights = np.zeros(encoder.num_parameters)
        transition = ss.transition_for("<s>", spiked)
        for pred_idx in range(encoder.num_edge_predicates):
            weights[encoder.edge_weight_index(pred_idx, transition.index)] = 1.0
        potentials = encoder.fill_potentials(weights, example)
        assert ForwardBackwards(ss).compute(potentials).viterbi == [spiked]
