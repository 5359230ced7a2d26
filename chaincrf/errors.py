"""Error categories raised by the chaincrf package.

Configuration and data errors are caller mistakes and subclass ``ValueError``.
Invariant violations indicate a broken numerical routine (a bad gradient or an
inconsistent inference table) and subclass ``RuntimeError`` so that callers can
tell "my training data is bad" apart from "the optimizer broke".
"""


class ChainCRFError(Exception):
    """Base class for all chaincrf errors."""


class ConfigurationError(ChainCRFError, ValueError):
    """Invalid construction arguments, dimension mismatch or model version mismatch."""


class MapReduceTimeoutError(ConfigurationError):
    """Workers did not finish within the configured timeout."""


class DataError(ChainCRFError, ValueError):
    """Training or inference data that the model cannot represent."""


class InvariantViolationError(ChainCRFError, RuntimeError):
    """A numerical invariant of inference or optimization does not hold."""
