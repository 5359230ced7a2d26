import io

import numpy as np
import pytest

from chaincrf import io_utils
from chaincrf.config import FeatureIndexConfig
from chaincrf.errors import ConfigurationError, DataError
from chaincrf.features import CRFFeatureEncoder, CRFPredicateExtractor
from chaincrf.indexer import BloomFilter, Indexer
from chaincrf.state_space import StateSpace


class FixedPredicates(CRFPredicateExtractor[str, str]):
    """Same predicates for every five-element sequence."""

    def node_predicates(self, elems):
        return [{"<s>": 1.0}, {"a": 1.0}, {"b": 1.0}, {"c": 1.0}, {"</s>": 1.0}]

    def edge_predicates(self, elems):
        return [{"#bias": 1.0}] * 4


class ObservationPredicates(CRFPredicateExtractor[str, str]):
    def node_predicates(self, elems):
        return [{f"w={w}": 1.0, f"len={len(w)}": 0.5} for w in elems]

    def edge_predicates(self, elems):
        return [{f"pair={a}_{b}": 1.0} for a, b in zip(elems[:-1], elems[1:])]


def full_state_space() -> StateSpace:
    return StateSpace.build_full_state_space({"s1", "s2", "s3"}, "<s>", "</s>")


class TestCRFFeatureEncoder:
    def test_build_and_index_labeled_example(self):
        observations = [["o1", "o2", "o3"], ["o2", "o1", "o3"]]
        ss = full_state_space()
        encoder = CRFFeatureEncoder.build(observations, FixedPredicates(), ss, FeatureIndexConfig(num_threads=1))
        assert len(encoder.node_features) == 5
        assert len(encoder.edge_features) == 1

        example = encoder.index_labeled_example(
            [("<s>", "<s>"), ("o1", "s1"), ("o2", "s2"), ("o3", "s3"), ("</s>", "</s>")]
        )
        assert example.is_labeled
        expected = [ss.state_index(s) for s in ["<s>", "s1", "s2", "s3", "</s>"]]
        np.testing.assert_array_equal(example.gold_labels, expected)

    def test_indices_are_sorted(self):
        encoder = CRFFeatureEncoder.build([["x", "y"]], FixedPredicates(), full_state_space())
        assert list(encoder.node_features) == sorted(["<s>", "a", "b", "c", "</s>"])

    def test_unknown_predicates_are_dropped(self):
        ss = full_state_space()
        encoder = CRFFeatureEncoder.build([["<s>", "dog", "</s>"]], ObservationPredicates(), ss)
        example = encoder.indexed_example(["<s>", "cat", "</s>"])
        indices, values = example.node_predicates(1)
        # only the length predicate of "cat" is known
        assert [encoder.node_features[i] for i in indices] == ["len=3"]
        np.testing.assert_allclose(values, [0.5])
        assert example.edge_predicates(0)[0].shape == (0,)

    def test_same_result_with_multiple_threads(self):
        data = [["<s>", w, "</s>"] for w in ["dog", "cat", "bird", "fish", "ox", "emu"]]
        ss = full_state_space()
        one = CRFFeatureEncoder.build(data, ObservationPredicates(), ss, FeatureIndexConfig(num_threads=1))
        three = CRFFeatureEncoder.build(data, ObservationPredicates(), ss, FeatureIndexConfig(num_threads=3))
        assert list(one.node_features) == list(three.node_features)
        assert list(one.edge_features) == list(three.edge_features)

    def test_stochastic_acceptance_is_seeded(self):
        data = [["<s>", f"w{i}", "</s>"] for i in range(200)]
        ss = full_state_space()
        config = FeatureIndexConfig(random_seed=7, probability_to_accept=0.3)
        first = CRFFeatureEncoder.build(data, ObservationPredicates(), ss, config)
        second = CRFFeatureEncoder.build(data, ObservationPredicates(), ss, config)
        assert list(first.node_features) == list(second.node_features)
        # pruning keeps some but not all of the 200 distinct words
        num_words = sum(1 for f in first.node_features if f.startswith("w=w"))
        assert 0 < num_words < 200

    def test_stochastic_acceptance_ignores_thread_count(self):
        data = [["<s>", f"w{i}", "</s>"] for i in range(200)]
        ss = full_state_space()
        one = CRFFeatureEncoder.build(
            data, ObservationPredicates(), ss, FeatureIndexConfig(random_seed=7, probability_to_accept=0.3)
        )
        four = CRFFeatureEncoder.build(
            data,
            ObservationPredicates(),
            ss,
            FeatureIndexConfig(random_seed=7, num_threads=4, probability_to_accept=0.3),
        )
        assert list(one.node_features) == list(four.node_features)
        assert list(one.edge_features) == list(four.edge_features)

    def test_stochastic_acceptance_depends_on_seed(self):
        data = [["<s>", f"w{i}", "</s>"] for i in range(200)]
        ss = full_state_space()
        first = CRFFeatureEncoder.build(
            data, ObservationPredicates(), ss, FeatureIndexConfig(random_seed=1, probability_to_accept=0.5)
        )
        second = CRFFeatureEncoder.build(
            data, ObservationPredicates(), ss, FeatureIndexConfig(random_seed=2, probability_to_accept=0.5)
        )
        assert list(first.node_features) != list(second.node_features)

    @pytest.mark.parametrize(
        "labels, match",
        [
            (["s1", "s1", "s2", "s3", "</s>"], "start state"),
            (["<s>", "s1", "s2", "s3", "s3"], "stop state"),
            (["<s>", "s1", "s9", "s3", "</s>"], "not in state space"),
        ],
    )
    def test_bad_labels_raise(self, labels, match):
        encoder = CRFFeatureEncoder.build([["x"] * 5], FixedPredicates(), full_state_space())
        with pytest.raises(DataError, match=match):
            encoder.index_labeled_example(list(zip(["x"] * 5, labels)))

    def test_config_validation(self):
        with pytest.raises(ConfigurationError, match="probability_to_accept"):
            FeatureIndexConfig(probability_to_accept=0.0)
        with pytest.raises(ConfigurationError, match="num_threads"):
            FeatureIndexConfig(num_threads=0)


class TestIndexer:
    def test_drops_duplicates(self):
        indexer = Indexer(["cap", "iron-man", "hulk", "cap"])
        assert len(indexer) == 3
        assert indexer.index_of("cap") == 0
        assert indexer.index_of("hulk") == 2
        assert indexer.index_of("thor") == -1
        assert indexer[1] == "iron-man"
        assert list(indexer) == ["cap", "iron-man", "hulk"]
        assert "hulk" in indexer

    def test_bloom_filter_front(self):
        indexer = Indexer(f"feat{i}" for i in range(100))
        indexer.add_bloom_filter(0.01)
        assert all(indexer.index_of(f"feat{i}") == i for i in range(100))
        assert indexer.index_of("missing") == -1

    def test_save_load_roundtrip(self):
        indexer = Indexer(["cap", "iron-man", "hulk"])
        buf = io.BytesIO()
        indexer.save(buf)
        buf.seek(0)
        assert list(Indexer.load(buf)) == ["cap", "iron-man", "hulk"]


def test_bloom_filter_has_no_false_negatives():
    bloom = BloomFilter(500, 0.05)
    for i in range(500):
        bloom.add(("key", i))
    assert all(bloom.might_contain(("key", i)) for i in range(500))
    false_positives = sum(bloom.might_contain(("other", i)) for i in range(2000))
    assert false_positives < 400


class TestIOUtils:
    def test_framing_roundtrip(self):
        buf = io.BytesIO()
        io_utils.write_version(buf, "1.0")
        io_utils.write_int(buf, -42)
        io_utils.save_list(buf, ["a", "ünï", ""])
        io_utils.save_doubles(buf, np.array([1.5, -np.inf, 3.0]))
        buf.seek(0)
        io_utils.ensure_version_match(buf, "1.0")
        assert io_utils.read_int(buf) == -42
        assert io_utils.load_list(buf) == ["a", "ünï", ""]
        np.testing.assert_array_equal(io_utils.load_doubles(buf), [1.5, -np.inf, 3.0])

    def test_big_endian_int(self):
        buf = io.BytesIO()
        io_utils.write_int(buf, 1)
        assert buf.getvalue() == b"\x00\x00\x00\x01"

    def test_version_mismatch(self):
        buf = io.BytesIO()
        io_utils.write_version(buf, "0.9")
        buf.seek(0)
        with pytest.raises(ConfigurationError, match="Data versions don't match"):
            io_utils.ensure_version_match(buf, "1.0")

    def test_truncated_stream(self):
        with pytest.raises(ConfigurationError, match="Bad model file"):
            io_utils.read_int(io.BytesIO(b"\x00\x01"))

    def test_lines_from_path(self, tmp_path):
        path = tmp_path / "lines.txt"
        path.write_text("first\r\nsecond\n\nthird", encoding="utf-8")
        assert list(io_utils.lines_from_path(str(path))) == ["first", "second", "", "third"]
