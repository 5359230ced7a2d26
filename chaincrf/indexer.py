import logging
import math
from typing import BinaryIO, Generic, Hashable, Iterable, Iterator, TypeVar

import numpy as np

from chaincrf import io_utils

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


class BloomFilter:
    """Probabilistic set membership backed by a numpy bit array.

    Uses double hashing of Python's ``hash`` so it is only meaningful within the
    process that built it.
    """

    def __init__(self, expected_size: int, false_positive_rate: float):
        expected_size = max(expected_size, 1)
        num_bits = int(math.ceil(-expected_size * math.log(false_positive_rate) / (math.log(2) ** 2)))
        self.num_bits = max(num_bits, 8)
        self.num_hashes = max(int(round(self.num_bits / expected_size * math.log(2))), 1)
        self.bits = np.zeros(self.num_bits, dtype=np.bool_)

    def _positions(self, item: Hashable) -> np.ndarray:
        h1 = hash(item) % self.num_bits
        h2 = (hash((item, 0x5BD1E995)) % self.num_bits) | 1
        return (h1 + np.arange(self.num_hashes, dtype=np.int64) * h2) % self.num_bits

    def add(self, item: Hashable) -> None:
        self.bits[self._positions(item)] = True

    def might_contain(self, item: Hashable) -> bool:
        return bool(self.bits[self._positions(item)].all())


class Indexer(Generic[T]):
    """Immutable list with O(1) ``index_of`` that drops duplicates.

    Parameters
    ----------
    elems : Iterable[T]
        Elements in index order; later duplicates are ignored
    """

    DATA_VERSION = "1.0"

    def __init__(self, elems: Iterable[T]):
        self._index = {}
        for elem in elems:
            self._index.setdefault(elem, len(self._index))
        self._list = tuple(self._index)
        self._filter = None

    def add_bloom_filter(self, false_positive_rate: float) -> None:
        """Put a Bloom filter in front of ``index_of`` for workloads with many misses."""
        bloom = BloomFilter(len(self._list), false_positive_rate)
        for elem in self._list:
            bloom.add(elem)
        self._filter = bloom

    def index_of(self, elem: T) -> int:
        """Index of ``elem`` or -1 if absent."""
        if self._filter is not None and not self._filter.might_contain(elem):
            return -1
        return self._index.get(elem, -1)

    def __len__(self) -> int:
        return len(self._list)

    def __getitem__(self, idx: int) -> T:
        return self._list[idx]

    def __iter__(self) -> Iterator[T]:
        return iter(self._list)

    def __contains__(self, elem: object) -> bool:
        return elem in self._index

    def __repr__(self) -> str:
        return f"Indexer(size={len(self)})"

    def save(self, stream: BinaryIO) -> None:
        io_utils.write_version(stream, self.DATA_VERSION)
        io_utils.save_list(stream, [str(elem) for elem in self._list])

    @classmethod
    def load(cls, stream: BinaryIO) -> "Indexer[str]":
        io_utils.ensure_version_match(stream, cls.DATA_VERSION)
        return cls(io_utils.load_list(stream))
