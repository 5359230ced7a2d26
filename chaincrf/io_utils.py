"""Big-endian binary framing shared by every persisted model component.

A persisted component starts with a short UTF-8 version string. Lists of strings
and float arrays are length-prefixed with a signed 32-bit count.
"""
import struct
from typing import BinaryIO, Iterator

import numpy as np

from chaincrf.errors import ConfigurationError

_INT = struct.Struct(">i")
_SHORT = struct.Struct(">H")


def _read_exact(stream: BinaryIO, num_bytes: int) -> bytes:
    data = stream.read(num_bytes)
    if len(data) != num_bytes:
        raise ConfigurationError(f"Bad model file, read {len(data)} bytes but expected {num_bytes}")
    return data


def write_int(stream: BinaryIO, value: int) -> None:
    stream.write(_INT.pack(value))


def read_int(stream: BinaryIO) -> int:
    return _INT.unpack(_read_exact(stream, _INT.size))[0]


def write_utf(stream: BinaryIO, value: str) -> None:
    encoded = value.encode("utf-8")
    stream.write(_SHORT.pack(len(encoded)))
    stream.write(encoded)


def read_utf(stream: BinaryIO) -> str:
    (length,) = _SHORT.unpack(_read_exact(stream, _SHORT.size))
    return _read_exact(stream, length).decode("utf-8")


def write_version(stream: BinaryIO, version: str) -> None:
    write_utf(stream, version)


def ensure_version_match(stream: BinaryIO, expected_version: str) -> None:
    """Read a version tag and fail if it differs from ``expected_version``.

    Raises
    ------
    ConfigurationError
        If the saved version is not the one this code writes
    """
    actual_version = read_utf(stream)
    if actual_version != expected_version:
        raise ConfigurationError(
            f"Data versions don't match. Saved is {actual_version} but current code is {expected_version}"
        )


def save_doubles(stream: BinaryIO, values: np.ndarray) -> None:
    values = np.asarray(values, dtype=np.float64)
    write_int(stream, values.shape[0])
    stream.write(values.astype(">f8").tobytes())


def load_doubles(stream: BinaryIO) -> np.ndarray:
    n = read_int(stream)
    raw = _read_exact(stream, 8 * n)
    return np.frombuffer(raw, dtype=">f8").astype(np.float64)


def save_list(stream: BinaryIO, elems: list[str]) -> None:
    write_int(stream, len(elems))
    for elem in elems:
        encoded = str(elem).encode("utf-8")
        write_int(stream, len(encoded))
        stream.write(encoded)


def load_list(stream: BinaryIO) -> list[str]:
    n = read_int(stream)
    elems = []
    for _ in range(n):
        length = read_int(stream)
        elems.append(_read_exact(stream, length).decode("utf-8"))
    return elems


def lines_from_path(path: str) -> Iterator[str]:
    """Yield lines of a UTF-8 text file without trailing newlines."""
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            yield line.rstrip("\n").rstrip("\r")
