"""
exceptions.py
~~~~~~~~~~~~~

Exception types raised by the network, trainer and persistence layers.

File access failures during save/load are not wrapped: the ``OSError``
raised by the filesystem reaches the caller unchanged.
"""


class NetworkError(Exception):
    """Base exception for all ffnet errors."""
    pass


class InputSizeMismatchError(NetworkError, ValueError):
    """Raised when an input vector does not match the input layer size."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Input layer size: {expected}; input vector size: {actual}"
        )
        self.expected = expected
        self.actual = actual


class NullActivationError(NetworkError, RuntimeError):
    """Raised when a pass runs before an activation function is attached."""
    pass


class PersistenceParseError(NetworkError, ValueError):
    """Raised when a persisted network document is malformed."""
    pass


class DatasetError(NetworkError, ValueError):
    """Raised when a dataset is empty or one of its records is malformed."""
    pass
