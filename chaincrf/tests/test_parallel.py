import threading

import pytest

from chaincrf.errors import ConfigurationError, MapReduceTimeoutError
from chaincrf.parallel import MapReduceDriver, MapReduceExecutor, map_reduce, partition


class CollectDriver(MapReduceDriver[int, list]):
    def new_data(self) -> list:
        return []

    def update(self, data: list, elem: int) -> None:
        data.append(elem)

    def merge(self, a: list, b: list) -> None:
        a.extend(b)


class BlockingDriver(CollectDriver):
    def __init__(self, release: threading.Event):
        self.release = release

    def update(self, data: list, elem: int) -> None:
        self.release.wait(10.0)
        data.append(elem)


def live_threads(prefix: str) -> list[threading.Thread]:
    return [t for t in threading.enumerate() if t.name.startswith(prefix)]


class TestPartition:
    def test_sizes_differ_by_at_most_one(self):
        parts = partition(list(range(10)), 3)
        assert [len(p) for p in parts] == [4, 3, 3]
        assert [x for p in parts for x in p] == list(range(10))

    def test_more_parts_than_elements(self):
        parts = partition([1, 2], 4)
        assert [list(p) for p in parts] == [[1], [2], [], []]

    def test_rejects_zero_parts(self):
        with pytest.raises(ConfigurationError, match="num_parts"):
            partition([1, 2, 3], 0)


class TestMapReduceExecutor:
    @pytest.mark.parametrize("num_threads", [1, 2, 7])
    def test_merges_in_chunk_order(self, num_threads):
        with MapReduceExecutor(num_threads, name="order") as executor:
            result = executor.map_reduce(list(range(100)), CollectDriver())
        assert result == list(range(100))

    def test_reusable_across_calls(self):
        with MapReduceExecutor(3, name="reuse") as executor:
            assert executor.map_reduce([1, 2, 3], CollectDriver()) == [1, 2, 3]
            assert executor.map_reduce([4, 5], CollectDriver()) == [4, 5]

    def test_worker_errors_propagate(self):
        class FailingDriver(CollectDriver):
            def update(self, data, elem):
                raise KeyError(elem)

        with MapReduceExecutor(2, name="fail") as executor:
            with pytest.raises(KeyError):
                executor.map_reduce([1, 2], FailingDriver())

    def test_timeout(self):
        release = threading.Event()
        executor = MapReduceExecutor(2, name="timeout")
        try:
            with pytest.raises(MapReduceTimeoutError, match="didn't finish"):
                executor.map_reduce([1, 2], BlockingDriver(release), timeout=0.05)
        finally:
            release.set()
            assert executor.shutdown()

    def test_shutdown_joins_worker_threads(self):
        executor = MapReduceExecutor(4, name="join")
        executor.map_reduce(list(range(20)), CollectDriver())
        assert live_threads(executor.thread_name_prefix + "_")
        assert executor.shutdown()
        assert not live_threads(executor.thread_name_prefix + "_")

    def test_thread_names(self):
        executor = MapReduceExecutor(1, name="named")
        assert executor.thread_name_prefix.startswith("mr-named-")
        executor.shutdown()

    def test_rejects_zero_threads(self):
        with pytest.raises(ConfigurationError, match="num_threads"):
            MapReduceExecutor(0)


def test_one_off_map_reduce_leaves_no_threads():
    assert map_reduce(list(range(10)), CollectDriver(), num_threads=3, name="one-off") == list(range(10))
    assert not live_threads("mr-one-off-")
